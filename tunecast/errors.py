# tunecast/errors.py
from __future__ import annotations

import logging
import re
from typing import Optional

REDACTED = "[REDACTED]"

_REDACTION_PATTERNS = [
    (re.compile(r"([?&](?:key|api[_-]?key|token|access[_-]?token|refresh[_-]?token|sig|signature)=)([^&#\s]+)", re.I),
     r"\1" + REDACTED),
    (re.compile(r"""(["']?(?:x-api-key|api[_-]?key|token|access[_-]?token|refresh[_-]?token)["']?\s*[:=]\s*["']?)([^"',\s}&#]+)""", re.I),
     r"\1" + REDACTED),
    (re.compile(r"\b(Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.I), r"\1" + REDACTED),
]


def redact_secrets(text: str) -> str:
    for pattern, repl in _REDACTION_PATTERNS:
        text = pattern.sub(repl, text)
    return text


class RedactingFilter(logging.Filter):
    """Quita API keys / tokens de los logs antes de emitirlos."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.msg = redact_secrets(record.getMessage())
            record.args = None
        except Exception:
            # un %-format roto igual tiene que llegar al handler
            pass
        return True


# ==========================================
# ❌ ERRORES
# ==========================================
class MusicBotError(Exception):
    """Base de todos los errores de tunecast."""


class PlayerError(MusicBotError):
    """Errores de navegación o de forma de la petición. Se muestran al usuario, nunca se reintentan."""


class NotConnected(PlayerError):
    def __init__(self, message: str = "No estoy conectado a un canal de voz."):
        super().__init__(message)


class QueueEmpty(PlayerError):
    def __init__(self, message: str = "La cola está vacía."):
        super().__init__(message)


class NoTrackToNavigateTo(PlayerError):
    pass


class SeekOutOfRange(PlayerError):
    def __init__(self, message: str = "Esa posición está fuera de la duración de la canción."):
        super().__init__(message)


class NotPlaying(PlayerError):
    def __init__(self, message: str = "No se está reproduciendo nada."):
        super().__init__(message)


class QueueIndexError(PlayerError):
    pass


class InvalidVolume(PlayerError):
    pass


class SourceUnavailable(MusicBotError):
    """Falla de descarga, del proveedor o de ffmpeg."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CacheError(MusicBotError):
    pass


class InvalidCacheKey(CacheError):
    pass


class CacheWriteFailed(CacheError):
    pass


def format_error(error: Optional[BaseException | str] = None) -> str:
    """Mensaje corto para el chat."""
    if error is None:
        message = "error desconocido"
    elif isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
    else:
        message = str(error)
    return f"🚫 ups: {redact_secrets(message)}"
