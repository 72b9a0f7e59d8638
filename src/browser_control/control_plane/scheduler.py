"""Periodic reaping of sessions past their maximum age."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from ..config import CLEANUP_INTERVAL_SECONDS, SESSION_MAX_AGE_SECONDS
from .broker import SessionBroker

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Closes sessions by absolute age on a fixed interval.

    Viewer count and recent activity are ignored: a session that is being
    watched is still closed once it is too old.
    """

    def __init__(
        self,
        broker: SessionBroker,
        interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        max_age_seconds: float = SESSION_MAX_AGE_SECONDS,
    ):
        self._broker = broker
        self._interval = interval_seconds
        self._max_age = timedelta(seconds=max_age_seconds)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> list[str]:
        closed = await self._broker.sweep(self._max_age)
        if closed:
            logger.info(f"Cleanup closed {len(closed)} expired session(s)")
        return closed

    async def _run(self):
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Cleanup sweep failed: {e}", exc_info=True)

    def start(self):
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info(f"Cleanup scheduler started (every {self._interval}s, max age {self._max_age})")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
