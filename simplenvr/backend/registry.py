from __future__ import annotations

import asyncio
import logging
from typing import Dict, Set

from .recorder import Recorder

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Map of camera id to its active :class:`Recorder`.

    Every operation runs under one lock and none of them awaits I/O while
    holding it: a recorder is registered before it spawns anything, and
    :meth:`unregister` only sends a kill signal.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._workers: Dict[int, Recorder] = {}

    def __len__(self) -> int:
        return len(self._workers)

    async def register(self, camera_id: int, recorder: Recorder) -> bool:
        """Add ``recorder``; return False if the camera already has one."""
        async with self._lock:
            if camera_id in self._workers:
                return False
            self._workers[camera_id] = recorder
            return True

    async def unregister(
        self, camera_id: int, expected: Recorder | None = None
    ) -> Recorder | None:
        """Remove the camera's recorder and kill its process.

        The kill and the removal happen together, so once this returns no
        process for ``camera_id`` is left running unattended. With
        ``expected``, the entry is removed only if it is that recorder.
        """
        async with self._lock:
            recorder = self._workers.get(camera_id)
            if recorder is None or (expected is not None and recorder is not expected):
                return None
            del self._workers[camera_id]
            recorder.kill()
            logger.info("Stopped worker for camera %d", camera_id)
            return recorder

    async def lookup(self, camera_id: int) -> Recorder | None:
        async with self._lock:
            return self._workers.get(camera_id)

    async def snapshot(self) -> Set[int]:
        async with self._lock:
            return set(self._workers)
