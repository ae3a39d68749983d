# tunecast/voice.py
from __future__ import annotations

import asyncio
import ctypes.util
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import discord
from discord.voice_state import VoiceConnectionState

from .config import OPUS_OUTPUT_BITRATE_KBPS

log = logging.getLogger("tunecast.voice")

SPEAKING_OP = 5


class VoiceListener(Protocol):
    async def on_voice_disconnected(self) -> None: ...

    def on_speaking(self, user_id: int, speaking: bool) -> None: ...


def load_opus():
    """En hosts Linux/LXC discord.py no siempre encuentra libopus solo."""
    if discord.opus.is_loaded():
        return
    path = ctypes.util.find_library("opus")
    if not path:
        log.warning("No se encontró libopus, la reproducción de voz va a fallar")
        return
    try:
        discord.opus.load_opus(path)
    except OSError as e:
        log.warning("No se pudo cargar libopus desde %s: %s", path, e)


class ListeningVoiceClient(discord.VoiceClient):
    """
    VoiceClient que avisa a un listener de los cambios de speaking y las desconexiones.
    Los cambios de speaking llegan por el gateway de voz (op 5); discord.py no tiene
    hook público para eso, así que se engancha al estado de conexión acá
    y en ningún otro lado.
    """

    listener: Optional[VoiceListener] = None

    def create_connection_state(self) -> VoiceConnectionState:
        return VoiceConnectionState(self, hook=self._gateway_hook)

    async def _gateway_hook(self, ws, msg: Dict[str, Any]):
        if msg.get("op") != SPEAKING_OP or self.listener is None:
            return
        data = msg.get("d") or {}
        try:
            user_id = int(data.get("user_id"))
        except (TypeError, ValueError):
            return
        if user_id == getattr(self.user, "id", None):
            return
        self.listener.on_speaking(user_id, bool(data.get("speaking")))

    async def on_voice_state_update(self, data):
        await super().on_voice_state_update(data)
        if data.get("channel_id") is None and self.listener is not None:
            listener, self.listener = self.listener, None
            await listener.on_voice_disconnected()


class DiscordVoiceSession:
    """Conexión con la que habla el player. Todo lo específico de discord queda acá."""

    def __init__(self, client: ListeningVoiceClient):
        self.client = client

    @classmethod
    async def connect(cls, channel: discord.VoiceChannel, listener: VoiceListener) -> "DiscordVoiceSession":
        load_opus()
        client = await channel.connect(cls=ListeningVoiceClient, self_deaf=False)
        client.listener = listener
        log.info("🔊 Conectado a %s (%s)", channel.name, channel.guild.id)
        return cls(client)

    @property
    def channel_id(self) -> int:
        ch = self.client.channel
        return ch.id if ch else 0

    def is_connected(self) -> bool:
        return self.client.is_connected()

    def attach(self, audio: discord.AudioSource, on_end: Callable[[Optional[Exception]], Awaitable[None]]):
        loop = self.client.loop

        def _after(err: Optional[Exception]):
            fut = asyncio.run_coroutine_threadsafe(on_end(err), loop)
            fut.add_done_callback(_log_failure)

        if self.client.is_playing() or self.client.is_paused():
            self.client.stop()
        self.client.play(audio, after=_after, bitrate=OPUS_OUTPUT_BITRATE_KBPS)

    def pause(self):
        self.client.pause()

    def resume(self):
        self.client.resume()

    def stop(self):
        self.client.stop()

    async def disconnect(self):
        self.client.listener = None
        if self.client.is_connected():
            await self.client.disconnect(force=True)


def _log_failure(fut):
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        log.error("Falló el handler de fin de canción", exc_info=exc)
