"""
Sync Subscriber

Long-lived polling consumer that applies new events as they land, between
reconciliation runs.

HARD RULES:
- Keeps its own in-memory cursor; never reads or writes the checkpoint row
  beyond choosing where to start
- Applies through the same ingestor, so overlap with a reconciliation run is
  harmless (duplicates and stale deltas are skipped)
- Exponential backoff on errors, graceful shutdown on signals
"""

import asyncio
import logging
import signal
from typing import Optional

from ingestion.ingestor import EventIngestor
from ingestion.rpc.client import ChainReader
from storage.cache_store import CacheReader
from sync.collector import DeltaCollector

logger = logging.getLogger(__name__)

MAX_BACKOFF_SEC = 600


class SyncSubscriber:
    """
    Usage:
        subscriber = SyncSubscriber(reader, collector, ingestor, cache, poll_interval_sec=15)
        await subscriber.start()  # Runs until shutdown
    """

    def __init__(
        self,
        reader: ChainReader,
        collector: DeltaCollector,
        ingestor: EventIngestor,
        cache: CacheReader,
        poll_interval_sec: float = 15,
        contracts=("JobBoard", "JobEscrow"),
        start_block: Optional[int] = None,
    ):
        self.reader = reader
        self.collector = collector
        self.ingestor = ingestor
        self.cache = cache
        self.contracts = tuple(contracts)
        self._base_delay = poll_interval_sec
        self._cursor: Optional[int] = start_block

        self._running = False
        self._shutdown_requested = False
        self._consecutive_errors = 0

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    async def _initial_cursor(self) -> int:
        statuses = [self.cache.get_sync_status(name) for name in self.contracts]
        blocks = [s.last_synced_block for s in statuses if s is not None and s.last_synced_block]
        if blocks:
            return min(blocks)
        return await self.reader.get_block_number()

    async def poll_once(self) -> int:
        """
        One polling step: apply events in (cursor, head].

        Returns:
            Number of deltas applied
        """
        if self._cursor is None:
            self._cursor = await self._initial_cursor()
            logger.info(f"[subscriber] starting at block {self._cursor}")

        head = await self.reader.get_block_number()
        if head <= self._cursor:
            return 0

        applied = 0
        for name in self.contracts:
            batch = await self.collector.collect(name, self._cursor + 1, head, sweep=False)
            counts = self.ingestor.apply_all(batch.ordered())
            applied += counts.get("applied", 0)
        self._cursor = head
        return applied

    async def _run_loop(self) -> None:
        self._running = True
        logger.info("[subscriber] Starting polling loop...")

        while self._running and not self._shutdown_requested:
            try:
                applied = await self.poll_once()
                if applied:
                    logger.info(f"[subscriber] applied {applied} deltas up to block {self._cursor}")
                self._consecutive_errors = 0
                await self._sleep_with_shutdown(self._base_delay)

            except asyncio.CancelledError:
                logger.info("[subscriber] Polling loop cancelled")
                break
            except Exception as e:
                self._consecutive_errors += 1
                delay = min(self._base_delay * (2 ** min(self._consecutive_errors, 5)), MAX_BACKOFF_SEC)
                logger.error(f"[subscriber] Error in polling loop: {e}")
                logger.warning(f"[subscriber] Backing off {delay}s after {self._consecutive_errors} errors")
                try:
                    await self._sleep_with_shutdown(delay)
                except asyncio.CancelledError:
                    break

        self._running = False
        logger.info("[subscriber] Polling loop stopped")

    async def _sleep_with_shutdown(self, delay: float) -> None:
        while delay > 0 and not self._shutdown_requested:
            await asyncio.sleep(min(delay, 1))
            delay -= 1

    async def start(self, install_signal_handlers: bool = True) -> None:
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._on_shutdown)
        await self._run_loop()

    def _on_shutdown(self) -> None:
        logger.info("[subscriber] Shutdown signal received")
        self._shutdown_requested = True

    async def stop(self) -> None:
        logger.info("[subscriber] Stopping...")
        self._running = False
        self._shutdown_requested = True

    @property
    def is_running(self) -> bool:
        return self._running
