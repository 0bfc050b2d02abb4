"""
Per-workflow run serialization.

One FIFO lock per workflow id keeps runs of the same workflow strictly
sequential; a global semaphore bounds how many runs execute at once.

The registry assumes a single long-lived event loop, the server's. Tests
that drive runs with asyncio.run get a fresh loop per call, and the
registry resets itself when it sees one.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


class WorkflowRunRegistry:
    """Tracks in-flight and queued runs per workflow."""

    def __init__(self, max_concurrent_runs: int = 8):
        self.max_concurrent_runs = max(1, int(max_concurrent_runs))
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}
        self._running: Dict[int, bool] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _bind_loop(self) -> None:
        # asyncio primitives belong to one loop; start fresh on a new one.
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            if self._users and self._loop is not None and not self._loop.is_closed():
                # Runs still tracked on a live loop lose serialization against this one.
                logger.warning(
                    "Run registry moved to a new event loop while %d workflow(s) had runs in flight",
                    len(self._users),
                )
            self._loop = loop
            self._locks = {}
            self._users = {}
            self._running = {}
            self._semaphore = asyncio.Semaphore(self.max_concurrent_runs)

    def is_busy(self, workflow_id: int) -> bool:
        """True when a run of the workflow is in flight or queued."""
        return self._users.get(workflow_id, 0) > 0

    def is_running(self, workflow_id: int) -> bool:
        return self._running.get(workflow_id, False)

    def pending(self, workflow_id: int) -> int:
        """Runs of the workflow holding or waiting for its lock."""
        return self._users.get(workflow_id, 0)

    def active_runs(self) -> int:
        return sum(1 for running in self._running.values() if running)

    @asynccontextmanager
    async def acquire(self, workflow_id: int) -> AsyncIterator[None]:
        """
        Hold the workflow's run slot.

        Waiters are served in arrival order. The workflow lock is taken
        before the global semaphore so queued runs do not occupy capacity.
        """
        self._bind_loop()
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workflow_id] = lock
        self._users[workflow_id] = self._users.get(workflow_id, 0) + 1
        try:
            async with lock:
                async with self._semaphore:
                    self._running[workflow_id] = True
                    try:
                        yield
                    finally:
                        self._running.pop(workflow_id, None)
        finally:
            remaining = self._users.get(workflow_id, 1) - 1
            if remaining <= 0:
                self._users.pop(workflow_id, None)
                self._locks.pop(workflow_id, None)
            else:
                self._users[workflow_id] = remaining
