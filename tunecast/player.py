# tunecast/player.py
from __future__ import annotations

import asyncio
import enum
import functools
import logging
import random
from typing import Awaitable, Callable, Dict, List, Optional, Set

import discord

from .config import (
    AUDIO_BITRATE_KBPS,
    CACHE_COMMIT_POLL_SECONDS,
    CACHE_COMMIT_RETRIES,
    NOW_PLAYING_UPDATE_INTERVAL,
    VOLUME_MAX,
    VOLUME_MIN,
)
from .errors import (
    CacheWriteFailed,
    InvalidVolume,
    NoTrackToNavigateTo,
    NotConnected,
    NotPlaying,
    QueueEmpty,
    QueueIndexError,
    SeekOutOfRange,
    SourceUnavailable,
)
from .file_cache import CacheWriter, FileCache
from .kv_cache import cache_key
from .settings import DEFAULT_SETTINGS, GuildSettings, fetch_settings
from .track import QueuedTrack, SourceKind
from .transcoder import SourceSpec, Transcoder
from .views import build_player_embed
from .voice import DiscordVoiceSession

log = logging.getLogger("tunecast.player")

UNKNOWN_MESSAGE = 10008

StateCallback = Callable[[int], Awaitable[None]]
TrackCallback = Callable[[int, QueuedTrack], Awaitable[None]]


class PlayerStatus(enum.Enum):
    PLAYING = "playing"
    PAUSED = "paused"
    IDLE = "idle"


def file_hash_for(track) -> str:
    if track.source_kind == SourceKind.UPLOADED_FILE:
        return cache_key("upload", track.url, namespace="file")
    return cache_key("mp3", track.url, AUDIO_BITRATE_KBPS, namespace="file")


class GuildMusicPlayer:
    """
    Player por servidor.
    - cola + cursor: el historial queda antes de `position`, lo que viene después
    - las canciones del proveedor se descargan al FileCache antes de sonar
    - las operaciones que mutan corren de a una detrás de `_gate`
    - `disconnect()` es el corte duro: sin gate, idempotente, limpia todos los timers
    """

    def __init__(
        self,
        guild_id: int,
        *,
        file_cache: FileCache,
        transcoder: Transcoder,
        provider,
        settings_store=None,
        connector: Callable[..., Awaitable] = DiscordVoiceSession.connect,
        on_state_change: Optional[StateCallback] = None,
        on_track_started: Optional[TrackCallback] = None,
    ):
        self.guild_id = guild_id
        self.file_cache = file_cache
        self.transcoder = transcoder
        self.provider = provider
        self.settings_store = settings_store
        self.connector = connector
        self.on_state_change = on_state_change
        self.on_track_started = on_track_started

        self.session = None
        self.settings: GuildSettings = DEFAULT_SETTINGS

        self.queue: List[QueuedTrack] = []
        self.position = 0
        self.status = PlayerStatus.PAUSED
        self.position_seconds = 0
        self.volume: Optional[int] = None
        self.default_volume = DEFAULT_SETTINGS.default_volume

        self._loop_track = False
        self._loop_queue = False

        self.now_playing_message: Optional[discord.Message] = None
        self.speaking: Dict[int, Set[int]] = {}

        self._gate = asyncio.Lock()
        self._generation = 0
        self._last_url: Optional[str] = None
        self._audio = None
        self._volume_source: Optional[discord.PCMVolumeTransformer] = None

        self._clock_task: Optional[asyncio.Task] = None
        self._embed_task: Optional[asyncio.Task] = None
        self._idle_handle: Optional[asyncio.TimerHandle] = None

        self.commit_retries = CACHE_COMMIT_RETRIES
        self.commit_poll_seconds = CACHE_COMMIT_POLL_SECONDS

    # ---------- estado ----------
    @property
    def current(self) -> Optional[QueuedTrack]:
        if 0 <= self.position < len(self.queue):
            return self.queue[self.position]
        return None

    def is_connected(self) -> bool:
        return bool(self.session and self.session.is_connected())

    def upcoming(self) -> List[QueuedTrack]:
        return self.queue[self.position + 1:]

    def queue_size(self) -> int:
        return len(self.upcoming())

    def is_queue_empty(self) -> bool:
        return self.queue_size() == 0

    def can_go_forward(self, n: int = 1) -> bool:
        return n >= 1 and self.position + n < len(self.queue)

    def can_go_back(self) -> bool:
        return self.position > 0

    def get_position(self) -> int:
        return self.position_seconds

    def get_volume(self) -> int:
        # una reconexión conserva el volumen puesto a mano
        return self.volume if self.volume is not None else self.default_volume

    @property
    def loop_track(self) -> bool:
        return self._loop_track

    @loop_track.setter
    def loop_track(self, value: bool):
        self._loop_track = bool(value)
        if value:
            self._loop_queue = False

    @property
    def loop_queue(self) -> bool:
        return self._loop_queue

    @loop_queue.setter
    def loop_queue(self, value: bool):
        self._loop_queue = bool(value)
        if value:
            self._loop_track = False

    def toggle_loop_mode(self) -> str:
        if not self.loop_track and not self.loop_queue:
            self.loop_track = True
            return "Loop: Canción"
        if self.loop_track:
            self.loop_queue = True
            return "Loop: Cola"
        self.loop_queue = False
        return "Loop: OFF"

    # ---------- callbacks ----------
    async def _notify_state(self):
        if self.on_state_change:
            try:
                await self.on_state_change(self.guild_id)
            except Exception:
                log.exception("Falló el callback de cambio de estado en el servidor %s", self.guild_id)

    # ---------- conexión ----------
    async def connect(self, channel):
        async with self._gate:
            # settings frescos en cada conexión
            self.settings = await fetch_settings(self.settings_store, self.guild_id)
            self.default_volume = self.settings.default_volume

            if self.is_connected():
                if self.session.channel_id == channel.id:
                    return
                await self._drop_session()

            self.session = await self.connector(channel, self)
            self.speaking.clear()
            await self._notify_state()

    async def _drop_session(self):
        session, self.session = self.session, None
        self.speaking.clear()
        if session is not None:
            try:
                await session.disconnect()
            except discord.DiscordException as e:
                log.warning("Falló la desconexión de voz en el servidor %s: %s", self.guild_id, e)

    async def disconnect(self):
        """Se puede llamar cuantas veces sea."""
        if self.status == PlayerStatus.PLAYING:
            self.status = PlayerStatus.PAUSED

        self._loop_track = False
        self._stop_clock()
        self._stop_embed_updates()
        self._cancel_idle_timer()
        self._drop_audio()
        await self._drop_session()
        await self._notify_state()

    async def on_voice_disconnected(self):
        log.info("🔌 Se perdió la conexión de voz en el servidor %s", self.guild_id)
        await self.disconnect()

    # ---------- tiempo ----------
    async def _tick(self):
        while True:
            await asyncio.sleep(1)
            if self.status == PlayerStatus.PLAYING:
                self.position_seconds += 1

    def _start_clock(self, initial: Optional[int] = None):
        if initial is not None:
            self.position_seconds = initial
        self._stop_clock()
        self._clock_task = asyncio.get_running_loop().create_task(self._tick())

    def _stop_clock(self):
        if self._clock_task and not self._clock_task.done():
            self._clock_task.cancel()
        self._clock_task = None

    def _cancel_idle_timer(self):
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _arm_idle_timer(self, seconds: int):
        self._cancel_idle_timer()
        if seconds <= 0:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(seconds, lambda: loop.create_task(self._idle_disconnect()))

    async def _idle_disconnect(self):
        self._idle_handle = None
        if self.status == PlayerStatus.IDLE:
            log.info("💤 Demasiado tiempo inactivo, saliendo de voz en el servidor %s", self.guild_id)
            await self.disconnect()

    def set_now_playing_message(self, message: Optional[discord.Message]):
        self.now_playing_message = message

    async def _refresh_embed(self):
        while True:
            await asyncio.sleep(NOW_PLAYING_UPDATE_INTERVAL)
            message = self.now_playing_message
            if self.status != PlayerStatus.PLAYING or message is None or self.current is None:
                continue
            try:
                await message.edit(embed=build_player_embed(self))
            except discord.HTTPException as e:
                log.debug("No se pudo actualizar el embed de reproducción: %s", e)
                if getattr(e, "code", None) == UNKNOWN_MESSAGE or isinstance(e, discord.NotFound):
                    self.now_playing_message = None
                    self._embed_task = None
                    return

    def _start_embed_updates(self):
        self._stop_embed_updates()
        self._embed_task = asyncio.get_running_loop().create_task(self._refresh_embed())

    def _stop_embed_updates(self):
        if self._embed_task and not self._embed_task.done():
            self._embed_task.cancel()
        self._embed_task = None

    # ---------- volumen / ducking ----------
    @property
    def ducked(self) -> bool:
        if not self.settings.duck_enabled or self.session is None:
            return False
        return bool(self.speaking.get(self.session.channel_id))

    def _live_volume(self) -> int:
        return self.settings.duck_target if self.ducked else self.get_volume()

    def _apply_volume(self):
        if self._volume_source is not None:
            self._volume_source.volume = self._live_volume() / 100

    def set_volume(self, level: int):
        if not VOLUME_MIN <= level <= VOLUME_MAX:
            raise InvalidVolume(f"El volumen tiene que estar entre {VOLUME_MIN} y {VOLUME_MAX}.")
        self.volume = level
        # con ducking activo el nuevo nivel espera a que dejen de hablar
        if not self.ducked:
            self._apply_volume()

    def on_speaking(self, user_id: int, speaking: bool):
        if self.session is None:
            return
        users = self.speaking.setdefault(self.session.channel_id, set())
        was_speaking = bool(users)
        if speaking:
            users.add(user_id)
        else:
            users.discard(user_id)

        if bool(users) != was_speaking and self.settings.duck_enabled:
            self._apply_volume()

    # ---------- audio ----------
    def _drop_audio(self):
        """Corta el stream actual. Su aviso de fin queda obsoleto."""
        self._generation += 1
        if self.session is not None and self._audio is not None:
            self.session.stop()
        if self._audio is not None:
            self._audio.cleanup()
        self._audio = None
        self._volume_source = None

    async def _download_to_cache(self, track: QueuedTrack, hash: str) -> str:
        log.debug("Descargando %s a %skbps", track.title, AUDIO_BITRATE_KBPS)
        writer = self.file_cache.begin_write(hash)
        try:
            async for chunk in self.provider.stream(track.url, AUDIO_BITRATE_KBPS, track.offset_seconds):
                await writer.write(chunk)
        except asyncio.CancelledError:
            await writer.abort()
            raise
        except SourceUnavailable:
            await writer.abort()
            raise
        except Exception as e:
            await writer.abort()
            raise SourceUnavailable(f"Falló la descarga de {track.title}: {e}") from e

        await writer.close()
        try:
            path = await writer.committed
        except CacheWriteFailed as e:
            raise SourceUnavailable(f"No se pudo guardar {track.title} en caché: {e}") from e

        retries = self.commit_retries
        while not path and retries > 0:
            log.debug("Esperando el commit en caché de %s (quedan %d intentos)", track.title, retries)
            await asyncio.sleep(self.commit_poll_seconds)
            path = await self.file_cache.lookup(hash)
            retries -= 1

        if not path:
            raise SourceUnavailable(f"No se pudo cachear {track.title}, no se descargó nada")
        return path

    async def _source_for(self, track: QueuedTrack, seek: int) -> SourceSpec:
        spec = SourceSpec(seek_seconds=track.offset_seconds + seek, is_live=track.is_live)
        if track.length_seconds and not track.is_live:
            spec.to_seconds = track.offset_seconds + track.length_seconds

        if track.source_kind == SourceKind.LIVE_STREAM or track.is_live:
            spec.url, _ = await self.provider.resolve_stream_url(track.url, AUDIO_BITRATE_KBPS)
            spec.seek_seconds = None
            return spec

        hash = file_hash_for(track)
        path = await self.file_cache.lookup(hash)

        if track.source_kind == SourceKind.UPLOADED_FILE:
            if path:
                spec.path = path
            else:
                spec.chunks = self.provider.stream_url(track.url)
            return spec

        if path:
            log.debug("Usando audio en caché para %s", track.title)
        else:
            path = await self._download_to_cache(track, hash)
        spec.path = path
        return spec

    async def _start(self, track: QueuedTrack, seek: int, clock: int):
        """Abre un pipeline nuevo para `track` y lo conecta. Lanza SourceUnavailable."""
        self._drop_audio()

        spec = await self._source_for(track, seek)
        writer: Optional[CacheWriter] = None
        if spec.chunks is not None:
            writer = self.file_cache.begin_write(file_hash_for(track))

        audio = await self.transcoder.open(spec, cache_writer=writer)
        if self.session is None:
            audio.cleanup()
            raise NotConnected()

        self._audio = audio
        self._volume_source = discord.PCMVolumeTransformer(audio, volume=self._live_volume() / 100)
        self._generation += 1
        self.session.attach(self._volume_source, functools.partial(self._on_stream_end, self._generation))

        self.status = PlayerStatus.PLAYING
        self._last_url = track.url
        self._start_clock(clock)
        self._start_embed_updates()

    async def _start_or_advance(self, seek: int = 0, clock: int = 0) -> Optional[QueuedTrack]:
        """Reproduce la canción actual; las fuentes rotas se saltan. Devuelve lo que quedó sonando."""
        while self.current is not None:
            track = self.current
            try:
                await self._start(track, seek, clock)
                await self._notify_state()
                return track
            except SourceUnavailable as e:
                log.warning("⚠️ %s no está disponible, saltando: %s", track.title, e)
                self.position += 1
                seek = clock = 0
                self.position_seconds = 0

        await self._settle_idle()
        return None

    async def _settle_idle(self):
        self.status = PlayerStatus.IDLE
        self._stop_clock()
        self._stop_embed_updates()
        self._drop_audio()

        self.settings = await fetch_settings(self.settings_store, self.guild_id)
        if self.is_connected():
            self._arm_idle_timer(self.settings.idle_disconnect_seconds)
        await self._notify_state()

    # ---------- controles ----------
    async def play(self) -> Optional[QueuedTrack]:
        async with self._gate:
            return await self._play()

    async def _play(self) -> Optional[QueuedTrack]:
        track = self.current
        if track is None:
            raise QueueEmpty()
        if not self.is_connected():
            raise NotConnected()

        self._cancel_idle_timer()

        if self.status == PlayerStatus.PAUSED and track.url == self._last_url:
            if self._audio is not None:
                self.session.resume()
                self.status = PlayerStatus.PLAYING
                self._start_clock()
                self._start_embed_updates()
                await self._notify_state()
                return track

            # el pipeline ya no está (p. ej. reconexión): se rehace donde quedó
            if not track.is_live:
                return await self._start_or_advance(seek=self.position_seconds, clock=self.position_seconds)

        clock = self.position_seconds if track.url == self._last_url else 0
        return await self._start_or_advance(seek=0, clock=clock)

    async def pause(self):
        async with self._gate:
            if self.status != PlayerStatus.PLAYING:
                raise NotPlaying()
            self.status = PlayerStatus.PAUSED
            if self.session is not None:
                self.session.pause()
            self._stop_clock()
            self._stop_embed_updates()
            await self._notify_state()

    async def seek(self, target: int):
        async with self._gate:
            await self._seek(target)

    async def forward_seek(self, delta: int):
        async with self._gate:
            await self._seek(self.position_seconds + delta)

    async def _seek(self, target: int):
        if not self.is_connected():
            raise NotConnected()
        track = self.current
        if track is None:
            raise QueueEmpty("No hay ninguna canción reproduciéndose.")
        if track.is_live or target < 0:
            raise SeekOutOfRange()
        # archivos subidos sin duración conocida
        if track.length_seconds and target > track.length_seconds:
            raise SeekOutOfRange()

        self._cancel_idle_timer()
        await self._start_or_advance(seek=target, clock=target)

    async def forward(self, n: int = 1):
        async with self._gate:
            await self._forward(n)

    async def _forward(self, n: int):
        if not self.can_go_forward(n):
            raise NoTrackToNavigateTo("No hay canciones en la cola a las que avanzar.")

        previous = self.position
        self.position += n
        self.position_seconds = 0
        self._stop_clock()

        try:
            if self.status != PlayerStatus.PAUSED:
                await self._play()
            else:
                self._drop_audio()
                await self._notify_state()
        except Exception:
            self.position = previous
            raise

    async def back(self):
        async with self._gate:
            if not self.can_go_back():
                raise NoTrackToNavigateTo("No hay canciones anteriores en la cola.")

            previous = self.position
            self.position -= 1
            self.position_seconds = 0
            self._stop_clock()

            try:
                if self.status != PlayerStatus.PAUSED:
                    await self._play()
                else:
                    self._drop_audio()
                    await self._notify_state()
            except Exception:
                self.position = previous
                raise

    async def stop(self):
        async with self._gate:
            await self.disconnect()
            self.queue.clear()
            self.position = 0
            self.position_seconds = 0
            self._last_url = None
            self.status = PlayerStatus.IDLE
            await self._notify_state()

    async def _on_stream_end(self, generation: int, error: Optional[Exception]):
        announce = None
        async with self._gate:
            if generation != self._generation or self.status != PlayerStatus.PLAYING:
                return

            clean = await self._ended_cleanly(error)
            current = self.current
            log.debug("Terminó el stream en el servidor %s (limpio=%s)", self.guild_id, clean)

            if self.loop_track and clean and current is not None:
                await self._start_or_advance(seek=0, clock=0)
                return

            if self.loop_queue and current is not None:
                self.queue.append(current.copy())

            if self.can_go_forward(1):
                await self._forward(1)
            else:
                self.position = len(self.queue)
                self.position_seconds = 0
                await self._settle_idle()

            if self.status == PlayerStatus.PLAYING and self.current is not None and self.on_track_started:
                settings = await fetch_settings(self.settings_store, self.guild_id)
                if settings.auto_announce_next_track:
                    announce = self.current

        if announce is not None:
            try:
                await self.on_track_started(self.guild_id, announce)
            except Exception:
                log.exception("Falló el anuncio de canción en el servidor %s", self.guild_id)

    async def _ended_cleanly(self, error: Optional[Exception]) -> bool:
        if error is not None:
            log.warning("El reproductor de voz reportó un error: %s", error)
            return False
        finished = getattr(self._audio, "finished", None)
        if finished is None:
            return True
        try:
            return bool(await asyncio.wait_for(asyncio.shield(finished), timeout=5))
        except asyncio.TimeoutError:
            return True

    # ---------- cola ----------
    async def add(self, track: QueuedTrack, front: bool = False):
        async with self._gate:
            self._add(track, front)
            await self._notify_state()

    async def add_many(self, tracks: List[QueuedTrack], front: bool = False, shuffle: bool = False):
        """Agrega un lote en orden, justo después de la actual si `front` está activo."""
        tracks = list(tracks)
        if shuffle:
            random.shuffle(tracks)
        async with self._gate:
            insert_at = self.position + 1
            for track in tracks:
                if front and track.playlist is None:
                    self.queue.insert(insert_at, track)
                    insert_at += 1
                else:
                    self.queue.append(track)
            await self._notify_state()

    def _add(self, track: QueuedTrack, front: bool = False):
        if track.playlist is not None or not front:
            self.queue.append(track)
        else:
            self.queue.insert(self.position + 1, track)

    async def clear(self):
        """Deja solo la canción actual."""
        async with self._gate:
            current = self.current
            self.queue = [current] if current is not None else []
            self.position = 0
            await self._notify_state()

    async def shuffle(self):
        async with self._gate:
            rest = self.upcoming()
            random.shuffle(rest)
            self.queue = self.queue[:self.position + 1] + rest

    def _check_index(self, index: int):
        if not 1 <= index <= self.queue_size():
            raise QueueIndexError(f"La posición {index} está fuera de la cola.")

    async def move(self, src: int, dst: int) -> QueuedTrack:
        """Posiciones desde 1 sobre las próximas canciones."""
        async with self._gate:
            self._check_index(src)
            self._check_index(dst)
            track = self.queue.pop(self.position + src)
            self.queue.insert(self.position + dst, track)
            return track

    async def remove(self, index: int, amount: int = 1) -> List[QueuedTrack]:
        async with self._gate:
            self._check_index(index)
            if amount < 1:
                raise QueueIndexError("La cantidad tiene que ser al menos 1.")
            start = self.position + index
            removed = self.queue[start:start + amount]
            del self.queue[start:start + amount]
            await self._notify_state()
            return removed

    async def remove_current(self):
        async with self._gate:
            if self.current is not None:
                del self.queue[self.position]
                await self._notify_state()


class MusicService:
    """Un GuildMusicPlayer por servidor, compartiendo caché, transcoder y proveedor."""

    def __init__(
        self,
        file_cache: FileCache,
        transcoder: Transcoder,
        provider,
        settings_store=None,
        connector: Callable[..., Awaitable] = DiscordVoiceSession.connect,
        on_state_change: Optional[StateCallback] = None,
        on_track_started: Optional[TrackCallback] = None,
    ):
        self.file_cache = file_cache
        self.transcoder = transcoder
        self.provider = provider
        self.settings_store = settings_store
        self.connector = connector
        self.on_state_change = on_state_change
        self.on_track_started = on_track_started
        self.players: Dict[int, GuildMusicPlayer] = {}

    def get(self, guild_id: int) -> GuildMusicPlayer:
        if guild_id not in self.players:
            self.players[guild_id] = GuildMusicPlayer(
                guild_id,
                file_cache=self.file_cache,
                transcoder=self.transcoder,
                provider=self.provider,
                settings_store=self.settings_store,
                connector=self.connector,
                on_state_change=self.on_state_change,
                on_track_started=self.on_track_started,
            )
        return self.players[guild_id]

    async def remove(self, guild_id: int):
        player = self.players.pop(guild_id, None)
        if player is not None:
            await player.disconnect()
