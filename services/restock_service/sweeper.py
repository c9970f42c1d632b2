"""Periodic sweep of missed restock dates."""
import asyncio
import logging
from typing import Optional

from .coordinator import InventoryReconciliationCoordinator
from .schemas import ExpiryResult

logger = logging.getLogger(__name__)


class ExpiryMonitor:
    """Runs ``process_expired_restocks`` on a fixed interval."""

    def __init__(self, coordinator: InventoryReconciliationCoordinator, interval_seconds: int = 3600):
        """
        Args:
            coordinator: Coordinator that sweeps dates and sends delay notices
            interval_seconds: Seconds to wait between sweeps
        """
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the expiry monitor."""
        if self._running:
            logger.warning("Expiry monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll())
        logger.info(f"Expiry monitor started (every {self.interval_seconds}s)")

    async def stop(self):
        """Stop the expiry monitor."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Expiry monitor stopped")

    async def run_once(self) -> ExpiryResult:
        result = await self.coordinator.process_expired_restocks()
        if not result.success:
            logger.warning(f"Expiry sweep failed: {result.message}")
        return result

    async def _poll(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in expiry monitor: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)
