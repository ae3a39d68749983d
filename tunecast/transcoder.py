# tunecast/transcoder.py
from __future__ import annotations

import asyncio
import concurrent.futures
import io
import logging
import shlex
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Tuple

import discord

from .config import (
    FFMPEG_BEFORE_OPTIONS,
    FFMPEG_OUTPUT_OPTIONS,
    FFMPEG_PATH,
    FFMPEG_STREAM_OPTIONS,
    FRAME_SIZE,
    TRANSCODER_STARTUP_TIMEOUT,
)
from .errors import CacheWriteFailed, SourceUnavailable
from .file_cache import CacheWriter

log = logging.getLogger("tunecast.transcoder")


@dataclass
class SourceSpec:
    """La entrada es path, url o chunks (uno de los tres)."""

    path: Optional[str] = None
    url: Optional[str] = None
    chunks: Optional[AsyncIterator[bytes]] = None  # se pasa por stdin
    seek_seconds: Optional[float] = None
    to_seconds: Optional[float] = None
    volume_filter: str = "1"
    is_live: bool = False

    @property
    def input(self) -> str:
        if self.path:
            return self.path
        if self.url:
            return self.url
        if self.chunks is not None:
            return "-"
        raise ValueError("SourceSpec necesita path, url o chunks")


def _fmt_seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.3f}"


def build_ffmpeg_options(spec: SourceSpec) -> Tuple[str, str]:
    """(before_options, options) para discord.FFmpegPCMAudio."""
    if not (spec.path or spec.url or spec.chunks is not None):
        raise ValueError("SourceSpec necesita path, url o chunks")

    before: List[str] = shlex.split(FFMPEG_BEFORE_OPTIONS)
    if spec.url:
        before += shlex.split(FFMPEG_STREAM_OPTIONS)
        if spec.is_live:
            before.append("-re")
    if spec.seek_seconds:
        before += ["-ss", _fmt_seconds(spec.seek_seconds)]
    if spec.to_seconds:
        before += ["-to", _fmt_seconds(spec.to_seconds)]

    options = shlex.split(FFMPEG_OUTPUT_OPTIONS) + ["-filter:a", f"volume={spec.volume_filter}"]
    return shlex.join(before), shlex.join(options)


class ChunkFeed(io.RawIOBase):
    """
    Vista bloqueante tipo archivo sobre un iterador async de chunks, la lee el
    hilo de discord que escribe en stdin. Cada chunk también va al cache writer.
    """

    def __init__(self, chunks: AsyncIterator[bytes], loop: asyncio.AbstractEventLoop,
                 cache_writer: Optional[CacheWriter] = None):
        super().__init__()
        self._chunks = chunks
        self._loop = loop
        self._writer = cache_writer
        self._lock = asyncio.Lock()
        self._pending = b""
        self._waiting: Optional[concurrent.futures.Future] = None
        self.exhausted = False
        self.error: Optional[str] = None

    def readable(self) -> bool:
        return True

    @property
    def caching(self) -> bool:
        return self._writer is not None and not self._writer.closed

    def read(self, size: int = -1) -> bytes:
        if not self._pending:
            if self.exhausted:
                return b""
            self._waiting = asyncio.run_coroutine_threadsafe(self._next(), self._loop)
            try:
                self._pending = self._waiting.result()
            except (concurrent.futures.CancelledError, RuntimeError):
                return b""
            finally:
                self._waiting = None
        if size is None or size < 0:
            size = len(self._pending)
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    async def _next(self) -> bytes:
        async with self._lock:
            while not self.exhausted:
                try:
                    chunk = await self._chunks.__anext__()
                except StopAsyncIteration:
                    self.exhausted = True
                    if self.caching:
                        await self._writer.close()
                    return b""
                except asyncio.CancelledError:
                    self.exhausted = True
                    await self._abort_writer()
                    raise
                except Exception as e:
                    log.warning("Falló la fuente: %s", e)
                    self.exhausted = True
                    self.error = f"falló la fuente: {e}"
                    await self._abort_writer()
                    return b""

                if not chunk:
                    continue
                if self.caching:
                    try:
                        await self._writer.write(chunk)
                    except (CacheWriteFailed, OSError) as e:
                        log.warning("Falló la copia en caché, se reproduce sin ella: %s", e)
                        await self._abort_writer()
                return chunk
            return b""

    async def _abort_writer(self):
        if self.caching:
            await self._writer.abort()
        self._writer = None

    async def drain(self):
        """Baja el resto de la fuente a la caché cuando ffmpeg ya no está."""
        try:
            while self.caching and await self._next():
                pass
        except asyncio.CancelledError:
            await self._abort_writer()
            raise
        log.debug("Copia en caché terminada después de que se fue el oyente")

    async def abort(self):
        self.exhausted = True
        if self._waiting is not None:
            self._waiting.cancel()
        await self._abort_writer()


class TranscodedAudio(discord.FFmpegPCMAudio):
    """
    discord.FFmpegPCMAudio más:
    - `finished` da True si ffmpeg salió bien, False si falló ffmpeg o la fuente
    - una fuente por chunks entra por stdin y se copia a la caché
    - cleanup() con la copia en curso deja que la descarga termine
    """

    def __init__(
        self,
        spec: SourceSpec,
        *,
        executable: str = FFMPEG_PATH,
        cache_writer: Optional[CacheWriter] = None,
        spawn: Optional[Callable] = None,
    ):
        self._loop = asyncio.get_running_loop()
        self._spawn = spawn
        self._closed = False
        self._first = b""
        self.finished: asyncio.Future = self._loop.create_future()
        self.returncode: Optional[int] = None
        self.error: Optional[str] = None
        self.bytes_delivered = 0
        self.args: List[str] = []
        self.feed: Optional[ChunkFeed] = None
        if spec.chunks is not None:
            self.feed = ChunkFeed(spec.chunks, self._loop, cache_writer)

        before, options = build_ffmpeg_options(spec)
        super().__init__(
            self.feed if self.feed is not None else spec.input,
            executable=executable,
            pipe=self.feed is not None,
            before_options=before,
            options=options,
        )

    def _spawn_process(self, args, **subprocess_kwargs):
        self.args = list(args)
        log.debug("Lanzando ffmpeg con %s", " ".join(self.args))
        if self._spawn is None:
            return super()._spawn_process(args, **subprocess_kwargs)
        return self._spawn(args, **subprocess_kwargs)

    @property
    def caching(self) -> bool:
        return self.feed is not None and self.feed.caching

    async def start(self, timeout: float = TRANSCODER_STARTUP_TIMEOUT):
        """Espera el primer frame. Falla si ffmpeg muere antes."""
        try:
            first = await asyncio.wait_for(asyncio.to_thread(self._stdout.read, FRAME_SIZE), timeout)
        except asyncio.TimeoutError:
            await self._abandon()
            raise SourceUnavailable("ffmpeg no produjo audio a tiempo")

        if len(first) != FRAME_SIZE:
            rc = await asyncio.to_thread(self._process.wait)
            feed_error = self.feed.error if self.feed else None
            await self._abandon()
            self.returncode = rc
            raise SourceUnavailable(
                f"ffmpeg salió con código {rc} antes de producir audio: {feed_error or 'sin salida'}"
            )
        self._first = first

    async def _abandon(self):
        self._closed = True
        self._stopped = True
        self._kill_process()
        if self.feed is not None:
            await self.feed.abort()
        if not self.finished.done():
            self.finished.set_result(False)

    async def wait_finished(self) -> bool:
        return await self.finished

    # ---------- lado del hilo del player ----------
    def read(self) -> bytes:
        if self._closed:
            return b""
        if self._first:
            frame, self._first = self._first, b""
        else:
            frame = super().read()
        if not frame:
            self._stream_ended()
            return b""
        self.bytes_delivered += len(frame)
        return frame

    def _stream_ended(self):
        process = self._process
        if not process:
            return
        try:
            rc = process.wait(timeout=5)
        except Exception as e:
            log.warning("ffmpeg no salió después de terminar su salida: %s", e)
            rc = None
        self._call_on_loop(self._resolve, rc, False)

    def _resolve(self, rc: Optional[int], stopped: bool):
        if self.finished.done():
            return
        self.returncode = rc
        if self.feed is not None and self.feed.error:
            self.error = self.feed.error
        elif not stopped and rc != 0:
            self.error = f"ffmpeg salió con código {rc}"
        self.finished.set_result(self.error is None)
        log.debug("ffmpeg terminó (código=%s, error=%s)", rc, self.error)

    def _call_on_loop(self, callback, *args):
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # el loop ya está cerrado
            pass

    def cleanup(self):
        """Seguro desde cualquier hilo y más de una vez."""
        if getattr(self, "_closed", True):
            return
        self._closed = True
        self._stopped = True
        # el hilo que escribe en stdin conserva sus pipes hasta que falle su próxima escritura
        self._kill_process()
        process = self._process
        self._call_on_loop(self._after_close, process.returncode if process else None)

    def _after_close(self, rc: Optional[int]):
        if self.caching:
            log.debug("Se fue el oyente, terminando la copia en caché sin ffmpeg")
            self._loop.create_task(self.feed.drain())
        elif self.feed is not None:
            self._loop.create_task(self.feed.abort())
        self._resolve(rc, True)


class Transcoder:
    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        spawn: Optional[Callable] = None,
        startup_timeout: float = TRANSCODER_STARTUP_TIMEOUT,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.spawn = spawn
        self.startup_timeout = startup_timeout

    async def open(self, spec: SourceSpec, *, cache_writer: Optional[CacheWriter] = None) -> TranscodedAudio:
        if cache_writer is not None and spec.chunks is None:
            raise ValueError("Para cachear hace falta una fuente por chunks")

        try:
            audio = TranscodedAudio(spec, executable=self.ffmpeg_path, cache_writer=cache_writer, spawn=self.spawn)
        except discord.ClientException as e:
            if cache_writer:
                await cache_writer.abort()
            raise SourceUnavailable(f"No se pudo iniciar ffmpeg: {e}") from e

        await audio.start(self.startup_timeout)
        return audio
