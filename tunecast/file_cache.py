# tunecast/file_cache.py
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import aiosqlite

from .config import CACHE_SCAN_PAGE_SIZE, MIN_CACHE_HASH_LENGTH
from .errors import CacheWriteFailed, InvalidCacheKey
from .tasks import SerialExecutor

log = logging.getLogger("tunecast.cache")

_HASH_RE = re.compile(r"[0-9a-f]+")
TMP_DIRNAME = "tmp"


@dataclass
class CacheEntry:
    hash: str
    byte_size: int
    accessed_at: float
    created_at: float


def validate_hash(hash: str) -> str:
    """El hash termina siendo un nombre de archivo: esta es la única defensa contra path traversal."""
    if not isinstance(hash, str) or len(hash) < MIN_CACHE_HASH_LENGTH or not _HASH_RE.fullmatch(hash):
        raise InvalidCacheKey(f"Formato de hash inválido: {hash!r}")
    return hash


class CacheWriter:
    """
    Sink de escritura para un hash.
    Los bytes van a <cache>/tmp/<hash>; close() los mueve a su lugar y los indexa.
    `committed` da el path final, o None si la escritura quedó vacía o se abortó.
    """

    def __init__(self, cache: "FileCache", hash: str):
        self._cache = cache
        self.hash = hash
        self.tmp_path = os.path.join(cache.tmp_dir, hash)
        self.final_path = os.path.join(cache.cache_dir, hash)
        self.bytes_written = 0
        self.closed = False

        self.committed: asyncio.Future = asyncio.get_running_loop().create_future()
        self.committed.add_done_callback(self._log_failure)
        self._fh = open(self.tmp_path, "wb")

    def _log_failure(self, fut: asyncio.Future):
        if fut.cancelled():
            return
        err = fut.exception()
        if err:
            log.warning("Falló el commit en caché de %s: %s", self.hash, err)

    async def write(self, data: bytes):
        if self.closed:
            raise CacheWriteFailed(f"Escritura después de cerrar {self.hash}")
        if not data:
            return
        await asyncio.to_thread(self._fh.write, data)
        self.bytes_written += len(data)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._fh.close()
        try:
            path = await self._cache._commit(self)
        except Exception as e:
            if not self.committed.done():
                self.committed.set_exception(e if isinstance(e, CacheWriteFailed) else CacheWriteFailed(str(e)))
            return
        if not self.committed.done():
            self.committed.set_result(path)

    async def abort(self):
        """Descarta el archivo parcial. No se indexa nada."""
        if self.closed:
            return
        self.closed = True
        self._fh.close()
        self._cache._safe_unlink(self.tmp_path)
        if not self.committed.done():
            self.committed.set_result(None)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.close()
        else:
            await self.abort()


class FileCache:
    """
    Almacén de archivos direccionado por hash, con presupuesto de bytes.
    - el índice vive en sqlite (aiosqlite), una fila por archivo
    - se desalojan primero los archivos accedidos hace más tiempo
    - los desalojos corren de a uno con un SerialExecutor
    """

    def __init__(
        self,
        cache_dir: str,
        db_path: str,
        limit_bytes: int,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = cache_dir
        self.tmp_dir = os.path.join(cache_dir, TMP_DIRNAME)
        self.db_path = db_path
        self.limit_bytes = limit_bytes
        self.clock = clock
        self._evictions = SerialExecutor("eviction")

    async def init(self):
        os.makedirs(self.tmp_dir, exist_ok=True)
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS file_cache (
                    hash TEXT PRIMARY KEY,
                    bytes INTEGER NOT NULL,
                    accessed_at REAL NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS file_cache_accessed ON file_cache (accessed_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS file_cache_created ON file_cache (created_at, hash)")
            await db.commit()

    # ---------- helpers ----------
    def _safe_unlink(self, p: str) -> bool:
        try:
            os.remove(p)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning("No se pudo borrar %s: %s", p, e)
            return False

    async def _delete_entry(self, hash: str):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM file_cache WHERE hash = ?", (hash,))
            await db.commit()

    async def get_entry(self, hash: str) -> Optional[CacheEntry]:
        validate_hash(hash)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT hash, bytes, accessed_at, created_at FROM file_cache WHERE hash = ?", (hash,)
            )
            row = await cursor.fetchone()
        return CacheEntry(*row) if row else None

    async def total_bytes(self) -> int:
        """Sale del índice, puede diferir un poco del uso real en disco."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT COALESCE(SUM(bytes), 0) FROM file_cache")
            row = await cursor.fetchone()
        return int(row[0])

    # ---------- API ----------
    async def lookup(self, hash: str) -> Optional[str]:
        """Path del archivo cacheado, o None. Actualiza accessed_at si lo encuentra."""
        validate_hash(hash)
        entry = await self.get_entry(hash)
        if not entry:
            return None

        path = os.path.join(self.cache_dir, hash)
        if not os.path.isfile(path):
            log.debug("%s está indexado pero no en disco, se borra la entrada", hash)
            await self._delete_entry(hash)
            return None

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE file_cache SET accessed_at = ? WHERE hash = ?", (self.clock(), hash))
            await db.commit()
        return path

    def begin_write(self, hash: str) -> CacheWriter:
        validate_hash(hash)
        os.makedirs(self.tmp_dir, exist_ok=True)
        return CacheWriter(self, hash)

    async def _commit(self, writer: CacheWriter) -> Optional[str]:
        try:
            size = os.stat(writer.tmp_path).st_size
        except FileNotFoundError:
            raise CacheWriteFailed(f"Desapareció el archivo temporal de {writer.hash}")

        if size == 0:
            self._safe_unlink(writer.tmp_path)
            return None

        try:
            os.replace(writer.tmp_path, writer.final_path)
            now = self.clock()
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO file_cache (hash, bytes, accessed_at, created_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(hash) DO UPDATE SET bytes = excluded.bytes, accessed_at = excluded.accessed_at
                    """,
                    (writer.hash, size, now, now),
                )
                await db.commit()
        except (OSError, aiosqlite.Error) as e:
            self._safe_unlink(writer.tmp_path)
            raise CacheWriteFailed(f"No se pudo confirmar {writer.hash}: {e}") from e

        log.debug("%s en caché (%d bytes)", writer.hash, size)
        await self.evict()
        if not os.path.isfile(writer.final_path):
            raise CacheWriteFailed(f"{writer.hash} ({size} bytes) no entra en el presupuesto de la caché")
        return writer.final_path

    # ---------- desalojo ----------
    async def evict(self):
        """Encola un desalojo y espera a que terminen todos los encolados."""
        self._evictions.submit(self._evict_oldest)
        await self._evictions.wait_idle()

    async def _evict_oldest(self):
        total = await self.total_bytes()
        evicted = 0

        while total > self.limit_bytes:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT hash, bytes FROM file_cache ORDER BY accessed_at ASC LIMIT 1"
                )
                oldest = await cursor.fetchone()
                if not oldest:
                    break
                hash, size = oldest
                # total acumulado, sin volver a sumar en cada vuelta
                total -= size
                await db.execute("DELETE FROM file_cache WHERE hash = ?", (hash,))
                await db.commit()

            self._safe_unlink(os.path.join(self.cache_dir, hash))
            log.debug("%s desalojado", hash)
            evicted += 1

        if evicted:
            log.info("🧹 %d archivos desalojados de la caché", evicted)
        else:
            log.debug("Nada que desalojar: %d bytes usados, límite %d bytes", total, self.limit_bytes)

    # ---------- arranque ----------
    async def cleanup_on_startup(self):
        """Reconcilia índice y disco, después desaloja. Los errores se loguean, nunca se lanzan."""
        try:
            await self.init()
            await self._remove_orphans()
        except Exception:
            log.exception("Falló la reconciliación de la caché")

        try:
            await self.evict()
        except Exception:
            log.exception("Falló el desalojo al arrancar")

    async def _remove_orphans(self):
        # restos de escrituras cortadas por un reinicio
        for name in os.listdir(self.tmp_dir):
            self._safe_unlink(os.path.join(self.tmp_dir, name))

        # disco -> índice
        on_disk = {
            name for name in os.listdir(self.cache_dir)
            if name != TMP_DIRNAME and os.path.isfile(os.path.join(self.cache_dir, name))
        }
        if on_disk:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT hash FROM file_cache")
                indexed = {row[0] for row in await cursor.fetchall()}
            for name in sorted(on_disk - indexed):
                log.debug("%s está en disco pero no indexado, se borra el archivo", name)
                self._safe_unlink(os.path.join(self.cache_dir, name))

        # índice -> disco
        async for entry in self.iter_entries():
            if not os.path.isfile(os.path.join(self.cache_dir, entry.hash)):
                log.debug("%s está indexado pero no en disco, se borra la entrada", entry.hash)
                await self._delete_entry(entry.hash)

    async def iter_entries(self, page_size: int = CACHE_SCAN_PAGE_SIZE) -> AsyncIterator[CacheEntry]:
        """Todas las entradas por created_at ascendente, en páginas (keyset sobre created_at, hash)."""
        last: Optional[tuple] = None
        while True:
            async with aiosqlite.connect(self.db_path) as db:
                if last is None:
                    cursor = await db.execute(
                        "SELECT hash, bytes, accessed_at, created_at FROM file_cache "
                        "ORDER BY created_at ASC, hash ASC LIMIT ?",
                        (page_size,),
                    )
                else:
                    cursor = await db.execute(
                        "SELECT hash, bytes, accessed_at, created_at FROM file_cache "
                        "WHERE created_at > ? OR (created_at = ? AND hash > ?) "
                        "ORDER BY created_at ASC, hash ASC LIMIT ?",
                        (last[0], last[0], last[1], page_size),
                    )
                rows = await cursor.fetchall()

            if not rows:
                return
            for row in rows:
                yield CacheEntry(*row)
            last = (rows[-1][3], rows[-1][0])
            if len(rows) < page_size:
                return

    async def wait_for_evictions(self):
        await self._evictions.wait_idle()
