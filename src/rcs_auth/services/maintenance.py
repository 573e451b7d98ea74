"""Periodic session sweep, run beside the request handlers."""

from __future__ import annotations

import asyncio
import logging

from rcs_auth.database.repository import SweepResult
from rcs_auth.errors import StoreUnavailable
from rcs_auth.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class SessionSweeper:
    """Runs :meth:`SessionManager.cleanup_expired_sessions` every *interval* seconds."""

    def __init__(self, manager: SessionManager, interval_seconds: float) -> None:
        self._manager = manager
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self.last_result: SweepResult | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepResult | None:
        try:
            self.last_result = await self._manager.cleanup_expired_sessions()
        except StoreUnavailable as exc:
            logger.error("Session sweep skipped, store unavailable: %s", exc)
            return None
        return self.last_result

    def start(self) -> None:
        if self.is_running:
            logger.warning("Session sweeper already running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Session sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session sweeper stopped")

    async def _run_loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)
