# tunecast/config.py
from __future__ import annotations

import os
import re

from dotenv import load_dotenv

load_dotenv(os.getenv("ENV_FILE") or None)

_SIZE_RE = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[kmgt]?i?b?)\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


def parse_size(text: str) -> int:
    """'2GB' -> 2147483648. Unidades en base 1024."""
    m = _SIZE_RE.match(text or "")
    if not m:
        raise ValueError(f"Tamaño inválido: {text!r}")
    unit = m.group("unit").lower().rstrip("b").rstrip("i")
    if unit not in _SIZE_UNITS:
        raise ValueError(f"Unidad de tamaño inválida: {text!r}")
    return int(float(m.group("num")) * _SIZE_UNITS[unit])


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ==========================================
# ⚙️ ENTORNO
# ==========================================
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")
DEV_GUILD_ID = int(os.getenv("DEV_GUILD_ID", "0"))
COMMAND_PREFIX = os.getenv("COMMAND_PREFIX", ".")

DATA_DIR = os.path.abspath(os.getenv("DATA_DIR", "./data"))
CACHE_DIR = os.getenv("CACHE_DIR") or os.path.join(DATA_DIR, "cache")
CACHE_LIMIT_BYTES = parse_size(os.getenv("CACHE_LIMIT", "2GB"))
DB_PATH = os.getenv("DB_PATH") or os.path.join(DATA_DIR, "tunecast.db")

FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")

ENABLE_SPONSORBLOCK = _env_bool("ENABLE_SPONSORBLOCK")
SPONSORBLOCK_TIMEOUT = int(os.getenv("SPONSORBLOCK_TIMEOUT", "5"))  # minutos
SPONSORBLOCK_URL = os.getenv("SPONSORBLOCK_URL", "https://sponsor.ajay.app")

# ==========================================
# 🔊 AUDIO
# ==========================================
AUDIO_BITRATE_KBPS = 320          # bitrate de descarga, parte de la clave de caché
OPUS_OUTPUT_BITRATE_KBPS = 192    # encoder de voz

VOLUME_MIN = 0
VOLUME_MAX = 100
VOLUME_DEFAULT = 100

NOW_PLAYING_UPDATE_INTERVAL = 5.0
TRANSCODER_STARTUP_TIMEOUT = 30.0

# un frame de 20ms, 48kHz estéreo s16le (lo que entrega discord.FFmpegPCMAudio)
FRAME_SIZE = 3840

FFMPEG_BEFORE_OPTIONS = "-hide_banner"
FFMPEG_STREAM_OPTIONS = "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5"
FFMPEG_OUTPUT_OPTIONS = "-vn"

# ==========================================
# 💾 CACHE
# ==========================================
MIN_CACHE_HASH_LENGTH = 32
MIN_CACHE_KEY_LENGTH = 4
CACHE_COMMIT_RETRIES = 10
CACHE_COMMIT_POLL_SECONDS = 0.5
CACHE_SCAN_PAGE_SIZE = 50

ONE_MINUTE_IN_SECONDS = 60
ONE_HOUR_IN_SECONDS = 60 * 60

# ==========================================
# 📺 yt-dlp
# ==========================================
YTDL_SEARCH_OPTIONS = {
    "quiet": True,
    "no_warnings": True,
    "default_search": "ytsearch",
    "noplaylist": False,
    "extract_flat": "in_playlist",
    "skip_download": True,
}

YTDL_STREAM_OPTIONS = {
    "quiet": True,
    "no_warnings": True,
    "noplaylist": True,
    "skip_download": True,
    "source_address": "0.0.0.0",
}

MAX_PLAYLIST_ITEMS = 300
QUEUE_PAGE_SIZE = 10
QUEUE_MAX_PAGE_SIZE = 30

# archivos subidos más grandes no se leen para sacar la duración
UPLOAD_PROBE_MAX_BYTES = parse_size(os.getenv("UPLOAD_PROBE_MAX", "50MB"))
