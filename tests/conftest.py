"""
Shared fixtures: temporary storage, deterministic clocks and fake collaborators
(voice session, transcoder, provider) so nothing needs Discord, ffmpeg or network.
"""
import asyncio
from pathlib import Path
from tempfile import TemporaryDirectory
from types import SimpleNamespace

import discord
import pytest

from tunecast.errors import SourceUnavailable
from tunecast.file_cache import FileCache
from tunecast.kv_cache import KeyValueCache
from tunecast.player import GuildMusicPlayer
from tunecast.settings import GuildSettings, StaticSettingsStore
from tunecast.track import Playlist, SourceKind, TrackMetadata

GUILD_ID = 1234


class StepClock:
    """Strictly increasing: every call advances by `step`."""

    def __init__(self, start: float = 1_000.0, step: float = 1.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class FrozenClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeAudio(discord.AudioSource):
    def __init__(self, spec, finished_ok=None):
        self.spec = spec
        self.cleaned_up = False
        if finished_ok is not None:
            self.finished = asyncio.get_running_loop().create_future()
            self.finished.set_result(finished_ok)

    def read(self) -> bytes:
        return b""

    def is_opus(self) -> bool:
        return False

    def cleanup(self):
        self.cleaned_up = True


class FakeTranscoder:
    def __init__(self):
        self.specs = []
        self.opened = []
        self.fail_for = set()
        self.finished_ok = None

    async def open(self, spec, *, cache_writer=None):
        self.specs.append(spec)
        target = spec.path or spec.url or "-"
        if target in self.fail_for:
            if cache_writer:
                await cache_writer.abort()
            raise SourceUnavailable(f"cannot open {target}")
        if cache_writer is not None:
            async for chunk in spec.chunks:
                await cache_writer.write(chunk)
            await cache_writer.close()
        audio = FakeAudio(spec, self.finished_ok)
        self.opened.append(audio)
        return audio


class FakeProvider:
    def __init__(self, payload: bytes = b"\x01" * 64):
        self.payload = payload
        self.broken = set()
        self.streamed = []

    async def stream(self, track_url, kbps, offset_seconds=0):
        self.streamed.append(track_url)
        if track_url in self.broken:
            raise SourceUnavailable(f"HTTP 410 for {track_url}", status=410)
        for i in range(0, len(self.payload), 16):
            yield self.payload[i:i + 16]

    async def stream_url(self, url, headers=None):
        self.streamed.append(url)
        yield self.payload

    async def resolve_stream_url(self, track_url, kbps=320):
        return f"https://media.example/{track_url.rsplit('/', 1)[-1]}.m3u8", {}


class FakeSession:
    def __init__(self, channel_id: int):
        self.channel_id = channel_id
        self.connected = True
        self.attached = []
        self.on_end = None
        self.paused = 0
        self.resumed = 0
        self.stopped = 0
        self.disconnects = 0

    def is_connected(self) -> bool:
        return self.connected

    def attach(self, audio, on_end):
        self.attached.append(audio)
        self.on_end = on_end

    def pause(self):
        self.paused += 1

    def resume(self):
        self.resumed += 1

    def stop(self):
        self.stopped += 1

    async def disconnect(self):
        self.disconnects += 1
        self.connected = False

    async def finish(self, error=None):
        """What the voice thread does when the attached stream runs out."""
        await self.on_end(error)


class FakeConnector:
    def __init__(self):
        self.sessions = []

    async def __call__(self, channel, listener):
        session = FakeSession(channel.id)
        self.sessions.append(session)
        return session

    @property
    def last(self) -> FakeSession:
        return self.sessions[-1]


def make_track(name: str, length: int = 180, **kwargs) -> TrackMetadata:
    kwargs.setdefault("url", f"https://www.youtube.com/watch?v={name:_<11}"[:43])
    return TrackMetadata(title=name, artist="Artist", length_seconds=length, **kwargs)


def queued(name: str, **kwargs):
    return make_track(name, **kwargs).queued(channel_id=55, requested_by=66)


def playlist_track(name: str):
    return queued(name, playlist=Playlist(title="Mix", source="https://www.youtube.com/playlist?list=PL1"))


def live_track(name: str):
    return queued(name, length=0, is_live=True, source_kind=SourceKind.LIVE_STREAM)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def temp_dir():
    with TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir):
    return str(temp_dir / "tunecast.db")


@pytest.fixture
async def file_cache(temp_dir, db_path):
    cache = FileCache(str(temp_dir / "cache"), db_path, limit_bytes=10_000, clock=StepClock())
    await cache.init()
    return cache


@pytest.fixture
async def kv_cache(db_path):
    kv = KeyValueCache(db_path, clock=FrozenClock())
    await kv.init()
    return kv


@pytest.fixture
def settings():
    return GuildSettings(idle_disconnect_seconds=0, duck_enabled=True, duck_target=20)


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def channel():
    return SimpleNamespace(id=777, name="General")


@pytest.fixture
async def player(file_cache, transcoder, provider, connector, settings):
    p = GuildMusicPlayer(
        GUILD_ID,
        file_cache=file_cache,
        transcoder=transcoder,
        provider=provider,
        settings_store=StaticSettingsStore({GUILD_ID: settings}),
        connector=connector,
    )
    p.commit_poll_seconds = 0
    yield p
    await p.disconnect()
