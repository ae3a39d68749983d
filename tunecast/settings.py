# tunecast/settings.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, Optional

import aiosqlite

from .config import VOLUME_DEFAULT

log = logging.getLogger("tunecast.settings")


@dataclass(frozen=True)
class GuildSettings:
    default_volume: int = VOLUME_DEFAULT
    duck_target: int = 20
    duck_enabled: bool = False
    idle_disconnect_seconds: int = 30
    auto_announce_next_track: bool = True


DEFAULT_SETTINGS = GuildSettings()


class SettingsStore:
    """Vista de solo lectura de la tabla guild_settings. Fila ausente -> valores por defecto."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    async def init(self):
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS guild_settings (
                    guild_id INTEGER PRIMARY KEY,
                    default_volume INTEGER,
                    duck_target INTEGER,
                    duck_enabled INTEGER,
                    idle_disconnect_seconds INTEGER,
                    auto_announce_next_track INTEGER
                )
            """)
            await db.commit()

    async def get(self, guild_id: int) -> GuildSettings:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM guild_settings WHERE guild_id = ?", (guild_id,))
            row = await cursor.fetchone()

        if not row:
            return DEFAULT_SETTINGS

        values = {}
        for f in fields(GuildSettings):
            raw = row[f.name]
            if raw is None:
                continue
            values[f.name] = bool(raw) if f.type in (bool, "bool") else int(raw)
        return GuildSettings(**values)


class StaticSettingsStore:
    """Store en memoria, para tests y bots de un solo servidor."""

    def __init__(self, settings: Optional[Dict[int, GuildSettings]] = None):
        self.settings = dict(settings or {})

    async def get(self, guild_id: int) -> GuildSettings:
        return self.settings.get(guild_id, DEFAULT_SETTINGS)


async def fetch_settings(store, guild_id: int) -> GuildSettings:
    """Nunca lanza: si el store no está disponible se usan los valores por defecto."""
    if store is None:
        return DEFAULT_SETTINGS
    try:
        return await store.get(guild_id)
    except Exception as e:
        log.warning("Config del servidor %s no disponible, se usan los valores por defecto: %s", guild_id, e)
        return DEFAULT_SETTINGS
