# tunecast/tasks.py
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger("tunecast.tasks")


class SerialExecutor:
    """
    Corre las corrutinas de a una, en el orden en que llegaron.
    - submit() nunca bloquea; el trabajo corre en segundo plano
    - wait_idle() vuelve cuando no queda nada encolado ni corriendo
    """

    def __init__(self, name: str = "serial"):
        self.name = name
        self._lock = asyncio.Lock()
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    @property
    def pending(self) -> int:
        return self._pending

    def submit(self, job: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self._pending += 1
        self._idle_event().clear()
        return asyncio.get_running_loop().create_task(self._run(job))

    async def _run(self, job: Callable[[], Awaitable[None]]):
        try:
            async with self._lock:
                await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("[%s] falló un trabajo en segundo plano", self.name)
        finally:
            self._pending -= 1
            if self._pending == 0:
                self._idle_event().set()

    async def wait_idle(self):
        await self._idle_event().wait()
