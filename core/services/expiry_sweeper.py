"""Background loop that expires sessions past their expiry.

Runs as an asyncio task next to the coordinator. Submit-time validation
does not depend on it; it only keeps stored statuses current.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0  # seconds between sweeps


class SessionExpirySweeper:
    """Periodically calls GatewayService.expire_sessions()."""

    def __init__(self, service, interval: float = DEFAULT_SWEEP_INTERVAL):
        """
        Args:
            service: Object exposing an async expire_sessions() -> int
            interval: Seconds between sweeps
        """
        self._service = service
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.sweeps = 0

    @classmethod
    def from_settings(cls, service) -> "SessionExpirySweeper":
        from core.config import settings

        return cls(service, interval=settings.EXPIRY_SWEEP_INTERVAL_SECONDS)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Session expiry sweeper started (every {self._interval:.0f}s)")

    async def stop(self):
        """Stop the sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session expiry sweeper stopped")

    async def sweep_once(self) -> int:
        expired = await self._service.expire_sessions()
        self.sweeps += 1
        return expired

    async def _run_loop(self):
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Expiry sweep error: {e}", exc_info=True)

            await asyncio.sleep(self._interval)
