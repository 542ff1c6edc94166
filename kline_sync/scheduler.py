"""
Periodic sync jobs.
Runs incremental history sync, gap detection and automatic gap fill on fixed
intervals. Each job runs in a worker thread so blocking exchange calls do not
stall the event loop.
"""
import asyncio
import logging
import threading
from typing import Callable

from kline_sync.config import Settings, settings as default_settings
from kline_sync.services.config_service import SystemConfigService
from kline_sync.services.gap_detector import GapDetector
from kline_sync.services.gap_healer import GapHealer
from kline_sync.services.history_sync import HistorySyncService
from kline_sync.services.sync_filter import SyncFilter

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Drives the periodic history, gap detection and gap fill loops."""

    def __init__(
        self,
        history: HistorySyncService,
        detector: GapDetector,
        healer: GapHealer,
        sync_filter: SyncFilter,
        config_service: SystemConfigService,
        shutdown: threading.Event,
        settings: Settings = default_settings,
    ):
        self.history = history
        self.detector = detector
        self.healer = healer
        self.sync_filter = sync_filter
        self.config_service = config_service
        self.shutdown = shutdown
        self.settings = settings
        self.running = False
        self._tasks: list[asyncio.Task] = []

    def run_history_sync(self):
        if not self.config_service.is_history_auto_sync_enabled():
            logger.debug("Scheduled history sync is disabled")
            return None
        return self.history.sync_all_incremental(self.sync_filter.history_targets())

    def run_gap_detection(self):
        return self.detector.detect_all()

    def run_auto_fill(self):
        return self.healer.auto_fill()

    async def _loop(self, name: str, interval_seconds: int, job: Callable):
        logger.info(f"Starting {name} loop (interval: {interval_seconds}s)")
        while self.running:
            try:
                await asyncio.to_thread(job)
            except Exception as e:
                logger.error(f"Error in {name} loop: {e}", exc_info=True)
                # Keep going; the next run may succeed
            await asyncio.sleep(interval_seconds)

    async def start(self):
        """Start every loop as a background task."""
        self.running = True
        self._tasks = [
            asyncio.create_task(self._loop("history sync", self.settings.history_sync_interval_seconds, self.run_history_sync)),
            asyncio.create_task(self._loop("gap detection", self.settings.gap_detect_interval_seconds, self.run_gap_detection)),
            asyncio.create_task(self._loop("gap fill", self.settings.gap_fill_interval_seconds, self.run_auto_fill)),
        ]

    async def stop(self):
        """Stop the loops and abort in-flight syncs at their next page or segment."""
        logger.info("Stopping sync scheduler...")
        self.running = False
        self.shutdown.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
