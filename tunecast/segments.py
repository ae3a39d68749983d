# tunecast/segments.py
from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

import aiohttp

from .config import (
    ENABLE_SPONSORBLOCK,
    ONE_HOUR_IN_SECONDS,
    ONE_MINUTE_IN_SECONDS,
    SPONSORBLOCK_TIMEOUT,
    SPONSORBLOCK_URL,
)
from .kv_cache import KeyValueCache, cache_key
from .track import SourceKind, TrackMetadata

log = logging.getLogger("tunecast.segments")

SKIP_CATEGORY = "music_offtopic"
EDGE_TOLERANCE_SECONDS = 2

_VIDEO_ID = re.compile(r"(?:v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})")

Segment = Tuple[float, float]


class SegmentLookupFailed(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def server_down(self) -> bool:
        return self.status is None or self.status >= 500


def video_id(url: str) -> Optional[str]:
    m = _VIDEO_ID.search(url or "")
    return m.group(1) if m else None


def merge_segments(segments: List[Segment]) -> List[Segment]:
    merged: List[List[float]] = []
    for start, end in sorted(segments):
        if merged and merged[-1][1] > start:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(s, e) for s, e in merged]


def apply_segments(track: TrackMetadata, segments: List[Segment]) -> TrackMetadata:
    """Recorta la intro del principio y el outro del final. Los segmentos del medio quedan."""
    if not segments:
        return track

    merged = merge_segments(segments)
    length = track.length_seconds
    offset = track.offset_seconds

    outro_start, outro_end = merged[-1]
    if outro_end >= length - EDGE_TOLERANCE_SECONDS:
        length -= int(outro_end - outro_start)

    intro_start, intro_end = merged[0]
    if intro_start <= EDGE_TOLERANCE_SECONDS:
        offset = int(math.floor(intro_end))
        length -= offset

    return replace(track, length_seconds=max(0, length), offset_seconds=offset)


class SegmentSkipper:
    """
    Saca intros y outros sin música de las canciones del proveedor.
    Las consultas pasan por la caché clave/valor; si el servidor de segmentos se cae
    el skipper no consulta durante `cooldown_minutes`.
    """

    def __init__(
        self,
        enabled: bool = ENABLE_SPONSORBLOCK,
        cooldown_minutes: int = SPONSORBLOCK_TIMEOUT,
        kv_cache: Optional[KeyValueCache] = None,
        session_factory: Callable[..., aiohttp.ClientSession] = aiohttp.ClientSession,
        base_url: str = SPONSORBLOCK_URL,
        clock: Callable[[], float] = time.time,
    ):
        self.enabled = enabled
        self.cooldown_minutes = cooldown_minutes
        self.kv_cache = kv_cache
        self.session_factory = session_factory
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self.disabled_until: Optional[float] = None

    @property
    def cooling_down(self) -> bool:
        return self.disabled_until is not None and self.clock() < self.disabled_until

    async def adjust(self, track: TrackMetadata) -> TrackMetadata:
        if not self.enabled or self.cooling_down:
            return track
        if track.source_kind != SourceKind.PROVIDER_ASSET or track.is_live:
            return track

        vid = video_id(track.url)
        if not vid:
            return track

        try:
            if self.kv_cache is None:
                raw = await self._fetch_segments(vid)
            else:
                raw = await self.kv_cache.wrap(
                    self._fetch_segments,
                    vid,
                    expires_in=ONE_HOUR_IN_SECONDS,
                    key=cache_key(vid, SKIP_CATEGORY, namespace="segments"),
                )
        except SegmentLookupFailed as e:
            log.debug("No se pudieron traer los segmentos de %s: %s", track.url, e)
            if e.server_down:
                self.disabled_until = self.clock() + self.cooldown_minutes * ONE_MINUTE_IN_SECONDS
                log.warning("⚠️ Servidor de segmentos caído, se pausan las consultas por %s min", self.cooldown_minutes)
            return track

        return apply_segments(track, [(float(s), float(e)) for s, e in raw])

    async def _fetch_segments(self, vid: str) -> List[List[float]]:
        """404 quiere decir que el video no tiene segmentos."""
        url = f"{self.base_url}/api/skipSegments"
        params = {"videoID": vid, "categories": json.dumps([SKIP_CATEGORY])}
        timeout = aiohttp.ClientTimeout(total=10)

        try:
            async with self.session_factory(timeout=timeout) as session:
                async with session.get(url, params=params) as resp:
                    if resp.status == 404:
                        return []
                    if resp.status >= 400:
                        raise SegmentLookupFailed(f"HTTP {resp.status}", status=resp.status)
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SegmentLookupFailed(str(e) or type(e).__name__) from e

        out = []
        for item in data or []:
            seg = item.get("segment") or []
            if len(seg) == 2:
                out.append([float(seg[0]), float(seg[1])])
        return out
