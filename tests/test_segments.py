from unittest import mock

import pytest

from conftest import FrozenClock, make_track
from tunecast.segments import (
    SegmentLookupFailed,
    SegmentSkipper,
    apply_segments,
    merge_segments,
    video_id,
)
from tunecast.track import SourceKind

pytestmark = pytest.mark.anyio


class TestVideoId:
    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/shorts/dQw4w9WgXcQ",
        "https://music.youtube.com/watch?v=dQw4w9WgXcQ&list=RD",
    ])
    def test_extracts(self, url):
        assert video_id(url) == "dQw4w9WgXcQ"

    def test_unknown_url(self):
        assert video_id("https://example.com/song.mp3") is None


class TestMerge:
    def test_overlapping_segments_merge(self):
        assert merge_segments([(10, 20), (0, 5), (15, 30)]) == [(0, 5), (10, 30)]

    def test_contained_segment_keeps_the_larger_end(self):
        assert merge_segments([(0, 50), (10, 20)]) == [(0, 50)]


class TestApplySegments:
    def test_intro_and_outro(self):
        track = make_track("song", length=200)
        trimmed = apply_segments(track, [(0, 12.7), (190, 200)])
        assert trimmed.offset_seconds == 12
        assert trimmed.length_seconds == 200 - 10 - 12

    def test_outro_close_to_the_end(self):
        trimmed = apply_segments(make_track("song", length=200), [(180, 199)])
        assert trimmed.offset_seconds == 0
        assert trimmed.length_seconds == 181

    def test_middle_segment_is_ignored(self):
        track = make_track("song", length=200)
        assert apply_segments(track, [(50, 60)]) == track

    def test_no_segments(self):
        track = make_track("song", length=200)
        assert apply_segments(track, []) is track


class TestSegmentSkipper:
    def make(self, **kwargs):
        kwargs.setdefault("enabled", True)
        kwargs.setdefault("clock", FrozenClock())
        return SegmentSkipper(**kwargs)

    async def test_applies_fetched_segments(self):
        skipper = self.make()
        with mock.patch.object(skipper, "_fetch_segments", return_value=[[0, 8], [170, 180]]) as fetch:
            trimmed = await skipper.adjust(make_track("dQw4w9WgXcQ", length=180))
        fetch.assert_awaited_once_with("dQw4w9WgXcQ")
        assert trimmed.offset_seconds == 8
        assert trimmed.length_seconds == 162

    async def test_disabled(self):
        skipper = self.make(enabled=False)
        track = make_track("dQw4w9WgXcQ")
        with mock.patch.object(skipper, "_fetch_segments") as fetch:
            assert await skipper.adjust(track) is track
        fetch.assert_not_called()

    @pytest.mark.parametrize("kind", [SourceKind.LIVE_STREAM, SourceKind.UPLOADED_FILE])
    async def test_only_provider_assets(self, kind):
        skipper = self.make()
        track = make_track("dQw4w9WgXcQ", source_kind=kind)
        with mock.patch.object(skipper, "_fetch_segments") as fetch:
            assert await skipper.adjust(track) is track
        fetch.assert_not_called()

    async def test_server_down_starts_cooldown(self):
        clock = FrozenClock()
        skipper = self.make(clock=clock, cooldown_minutes=5)
        track = make_track("dQw4w9WgXcQ")
        failing = mock.AsyncMock(side_effect=SegmentLookupFailed("HTTP 503", status=503))

        with mock.patch.object(skipper, "_fetch_segments", failing):
            assert await skipper.adjust(track) is track
            assert skipper.cooling_down
            assert await skipper.adjust(track) is track
        assert failing.await_count == 1

        clock.now += 5 * 60 + 1
        assert not skipper.cooling_down

    async def test_client_error_does_not_cool_down(self):
        skipper = self.make()
        failing = mock.AsyncMock(side_effect=SegmentLookupFailed("HTTP 400", status=400))
        with mock.patch.object(skipper, "_fetch_segments", failing):
            await skipper.adjust(make_track("dQw4w9WgXcQ"))
        assert not skipper.cooling_down

    async def test_lookups_are_cached(self, kv_cache):
        skipper = self.make(kv_cache=kv_cache)
        fetch = mock.AsyncMock(return_value=[[0, 5]])
        with mock.patch.object(skipper, "_fetch_segments", fetch):
            first = await skipper.adjust(make_track("dQw4w9WgXcQ"))
            second = await skipper.adjust(make_track("dQw4w9WgXcQ"))
        assert first == second
        assert fetch.await_count == 1
