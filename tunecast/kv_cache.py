# tunecast/kv_cache.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from typing import Any, Awaitable, Callable, Optional

import aiosqlite

from .config import MIN_CACHE_KEY_LENGTH

log = logging.getLogger("tunecast.kv")

KEY_VERSION = 1


def cache_key(*parts: Any, namespace: str = "kv", version: int = KEY_VERSION) -> str:
    """
    Clave estable para un conjunto de argumentos.
    JSON canónico -> sha256, el formato de los argumentos no cambia la clave;
    subir `version` invalida las claves viejas.
    """
    payload = json.dumps([namespace, version, list(parts)], sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class KeyValueCache:
    """Valores JSON con vencimiento en sqlite. Para búsquedas y segmentos."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock

    async def init(self):
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS key_value_cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            await db.commit()

    async def _delete(self, key: str):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM key_value_cache WHERE key = ?", (key,))
            await db.commit()

    async def get(self, key: str) -> Optional[Any]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT value, expires_at FROM key_value_cache WHERE key = ?", (key,))
            row = await cursor.fetchone()

        if not row:
            return None

        value, expires_at = row
        if self.clock() >= expires_at:
            await self._delete(key)
            return None

        try:
            return json.loads(value)
        except ValueError as e:
            log.debug("Entrada de caché corrupta %s, se borra: %s", key, e)
            await self._delete(key)
            return None

    async def set(self, key: str, value: Any, expires_in: float):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO key_value_cache (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, json.dumps(value), self.clock() + expires_in),
            )
            await db.commit()

    async def wrap(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        expires_in: float,
        key: Optional[str] = None,
    ) -> Any:
        if key is None:
            key = cache_key(getattr(func, "__qualname__", repr(func)), *args)
        if len(key) < MIN_CACHE_KEY_LENGTH:
            raise ValueError(f"La clave {key!r} es muy corta. El mínimo es {MIN_CACHE_KEY_LENGTH}.")

        cached = await self.get(key)
        if cached is not None:
            log.debug("Caché hit: %s", key)
            return cached

        log.debug("Caché miss: %s", key)
        result = await func(*args)
        await self.set(key, result, expires_in)
        return result
