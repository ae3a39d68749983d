# tunecast/downloader.py
from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
import yt_dlp
from mutagen import File as MutagenFile
from mutagen import MutagenError

from .config import (
    AUDIO_BITRATE_KBPS,
    MAX_PLAYLIST_ITEMS,
    ONE_HOUR_IN_SECONDS,
    YTDL_SEARCH_OPTIONS,
    YTDL_STREAM_OPTIONS,
)
from .errors import SourceUnavailable
from .kv_cache import KeyValueCache, cache_key
from .track import Playlist, SourceKind, TrackMetadata, track_from_dict, track_to_dict

log = logging.getLogger("tunecast.downloader")

STREAM_CHUNK = 64 * 1024


def _is_url(q: str) -> bool:
    return q.startswith("http://") or q.startswith("https://")


def _first_tag(audio, name: str) -> Optional[str]:
    values = audio.get(name) or []
    value = str(values[0]).strip() if values else ""
    return value or None


def read_upload_tags(data: bytes) -> Tuple[int, Optional[str], Optional[str]]:
    """(duración, título, artista) de un archivo subido. (0, None, None) si mutagen no lo entiende."""
    try:
        audio = MutagenFile(io.BytesIO(data), easy=True)
    except MutagenError as e:
        log.debug("mutagen no pudo leer el archivo: %s", e)
        return 0, None, None
    if audio is None:
        return 0, None, None

    length = int(getattr(audio.info, "length", 0) or 0)
    return length, _first_tag(audio, "title"), _first_tag(audio, "artist")


def entry_to_track(entry: Dict[str, Any], playlist: Optional[Playlist] = None) -> Optional[TrackMetadata]:
    if not entry:
        return None

    url = entry.get("webpage_url") or entry.get("url") or ""
    if not _is_url(url):
        vid = entry.get("id")
        if not vid:
            return None
        url = f"https://www.youtube.com/watch?v={vid}"

    is_live = bool(entry.get("is_live")) or entry.get("live_status") in ("is_live", "live")
    thumb = entry.get("thumbnail")
    if not thumb and entry.get("thumbnails"):
        thumb = (entry["thumbnails"][-1] or {}).get("url")

    return TrackMetadata(
        url=url,
        title=entry.get("title") or url,
        artist=entry.get("uploader") or entry.get("channel") or "",
        length_seconds=int(entry.get("duration") or 0),
        offset_seconds=0,
        is_live=is_live,
        thumbnail_url=thumb,
        playlist=playlist,
        source_kind=SourceKind.LIVE_STREAM if is_live else SourceKind.PROVIDER_ASSET,
    )


class YTDLProvider:
    """
    Metadatos + bytes de audio vía yt-dlp.
    - search() acepta una búsqueda o una URL (videos, playlists, directos)
    - stream() resuelve la URL directa del audio y la descarga con aiohttp
    """

    def __init__(self, kv_cache: Optional[KeyValueCache] = None):
        self.kv_cache = kv_cache

    # ---------- búsqueda ----------
    async def search(self, query: str, limit: int = 10) -> List[TrackMetadata]:
        q = (query or "").strip()
        if not q:
            return []

        if self.kv_cache is None:
            return await self._search(q, limit)

        raw = await self.kv_cache.wrap(
            self._search_raw,
            q,
            limit,
            expires_in=ONE_HOUR_IN_SECONDS,
            key=cache_key(q, limit, namespace="search"),
        )
        return [track_from_dict(d) for d in raw]

    async def _search_raw(self, query: str, limit: int) -> List[dict]:
        return [track_to_dict(t) for t in await self._search(query, limit)]

    async def _search(self, query: str, limit: int) -> List[TrackMetadata]:
        target = query if _is_url(query) else f"ytsearch{max(1, limit)}:{query}"

        def _extract():
            with yt_dlp.YoutubeDL(YTDL_SEARCH_OPTIONS) as ydl:
                return ydl.extract_info(target, download=False)

        try:
            info = await asyncio.to_thread(_extract)
        except yt_dlp.utils.DownloadError as e:
            raise SourceUnavailable(f"La búsqueda falló: {e}") from e

        if not info:
            return []

        if "entries" not in info:
            track = entry_to_track(info)
            return [track] if track else []

        playlist = None
        cap = limit
        if _is_url(query) and info.get("_type") == "playlist":
            playlist = Playlist(title=info.get("title") or "playlist", source=query)
            cap = MAX_PLAYLIST_ITEMS

        out = []
        for entry in info.get("entries") or []:
            track = entry_to_track(entry, playlist)
            if track:
                out.append(track)
            if len(out) >= cap:
                break
        return out

    # ---------- audio ----------
    async def resolve_stream_url(self, track_url: str, kbps: int = AUDIO_BITRATE_KBPS) -> Tuple[str, Dict[str, str]]:
        opts = dict(YTDL_STREAM_OPTIONS)
        opts["format"] = f"bestaudio[abr<={kbps}]/bestaudio/best"

        def _extract():
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(track_url, download=False)
                if isinstance(info, dict) and "entries" in info:
                    info = next((e for e in info["entries"] if e), None)
                return info

        try:
            info = await asyncio.to_thread(_extract)
        except yt_dlp.utils.DownloadError as e:
            raise SourceUnavailable(f"No se pudo resolver el audio de {track_url}: {e}") from e

        if not info or not info.get("url"):
            raise SourceUnavailable(f"No hay formato de audio para {track_url}")
        return info["url"], dict(info.get("http_headers") or {})

    async def stream(self, track_url: str, kbps: int = AUDIO_BITRATE_KBPS, offset_seconds: int = 0) -> AsyncIterator[bytes]:
        # el offset lo aplica ffmpeg (-ss), la copia en caché siempre es el archivo completo
        direct, headers = await self.resolve_stream_url(track_url, kbps)
        async for chunk in self.stream_url(direct, headers=headers):
            yield chunk

    async def stream_url(self, url: str, headers: Optional[Dict[str, str]] = None) -> AsyncIterator[bytes]:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=30)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.get(url) as resp:
                    if resp.status >= 400:
                        raise SourceUnavailable(f"HTTP {resp.status} al descargar el audio", status=resp.status)
                    async for chunk in resp.content.iter_chunked(STREAM_CHUNK):
                        yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceUnavailable(f"La descarga falló: {e}") from e
