from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from newsdesk.security.csrf import CSRFGuard, SynchronizerTokenCSRF
from newsdesk.security.monitoring.security_monitor import SecurityMonitor
from newsdesk.security.rate_limit import RateLimiter
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)


class SecuritySweeper:
    """
    Timer-driven eviction of expired rate windows, old security events,
    stale resolved alerts and expired synchronizer tokens.

    Every component removes in batches of `batch_size` so no lock is held
    for longer than one batch.
    """

    def __init__(
        self,
        monitor: SecurityMonitor,
        limiter: Optional[RateLimiter] = None,
        csrf: Optional[CSRFGuard] = None,
        *,
        interval: float = 300,
        batch_size: int = 500,
    ) -> None:
        self.monitor = monitor
        self.limiter = limiter
        self.csrf = csrf
        self.interval = interval
        self.batch_size = batch_size
        self._is_running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        """Start the sweep loop"""
        if self._is_running:
            logger.warning("security_sweeper_already_started")
            return

        self._is_running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("security_sweeper_started", interval=self.interval, batch_size=self.batch_size)

    async def stop(self) -> None:
        """Stop the sweep loop"""
        self._is_running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("security_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._is_running:
            try:
                await self.sweep_once()
            except Exception as e:  # noqa: BLE001 - keep sweeping on the next tick
                logger.error("security_sweep_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval)

    async def sweep_once(self) -> Dict[str, Any]:
        """Run one pass over every component."""
        result: Dict[str, Any] = {}
        if self.limiter is not None:
            result["rate_windows_removed"] = await self.limiter.sweep(batch_size=self.batch_size)

        result.update(self.monitor.cleanup(batch_size=self.batch_size))

        if isinstance(self.csrf, SynchronizerTokenCSRF):
            result["csrf_sessions_removed"] = self.csrf.cleanup_expired(batch_size=self.batch_size)

        logger.debug("security_sweep_completed", **result)
        return result
