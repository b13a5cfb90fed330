"""sync/services.py

Wires the sync pipeline from a SyncConfig.

Router -> ChainReader -> DeltaCollector -> EventIngestor -> CacheStore, plus
the reconciliation scheduler and manual sync on top. The API process and the
scripts build their components here so there is exactly one writer per
store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import SyncConfig
from ingestion.ingestor import EventIngestor
from ingestion.metadata import MetadataFetcher
from ingestion.normalize import Delta
from ingestion.rpc.client import ChainReader, web3_client_factory
from ingestion.rpc.failover import ClientFactory, FallbackRouter
from ingestion.rpc.monitor import HealthMonitor
from lifecycle.state_machine import InconsistentTransition
from monitoring.alerts import ALERT_WARNING, AlertDispatcher, TelegramBot, compose_inconsistency_alert
from storage.cache_store import CacheStore
from sync.collector import DeltaCollector
from sync.manual import ManualSync
from sync.reconciler import ReconciliationScheduler
from sync.subscriber import SyncSubscriber

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    config: SyncConfig
    store: CacheStore
    router: FallbackRouter
    reader: ChainReader
    fetcher: MetadataFetcher
    ingestor: EventIngestor
    collector: DeltaCollector
    scheduler: ReconciliationScheduler
    manual: ManualSync
    alerts: AlertDispatcher

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        store: Optional[CacheStore] = None,
        client_factory: Optional[ClientFactory] = None,
        bot: Optional[TelegramBot] = None,
        sleep=asyncio.sleep,
    ) -> "SyncServices":
        """
        Args:
            config: Validated settings
            store: Pre-opened store (tests pass an in-memory one)
            client_factory: Provider client factory (defaults to AsyncWeb3)
            bot: Alert sink (defaults to TelegramBot.from_env())
            sleep: Router backoff sleep, injected for tests
        """
        alerts = AlertDispatcher(bot if bot is not None else TelegramBot.from_env())
        store = store if store is not None else CacheStore.open(config.db_path)

        router = FallbackRouter(
            list(config.rpc_urls),
            client_factory or web3_client_factory(),
            backoff_sec=config.rpc_backoff_sec,
            attempt_timeout_sec=config.rpc_timeout_sec,
            health_monitor=HealthMonitor(),
            sleep=sleep,
        )
        reader = ChainReader(
            router,
            config.job_board_address,
            config.freelancer_factory_address,
            max_log_range=config.max_log_range,
        )
        fetcher = MetadataFetcher(gateway=config.metadata_gateway, timeout_sec=config.metadata_timeout_sec)

        def on_inconsistent(delta: Delta, error: InconsistentTransition) -> None:
            alerts.dispatch(compose_inconsistency_alert(error.entity, delta.source, error.message), ALERT_WARNING)

        def on_failure(text: str, level: str) -> None:
            alerts.dispatch(text, level)

        ingestor = EventIngestor(store, on_inconsistent=on_inconsistent)
        collector = DeltaCollector(reader, store.reader(), fetcher)
        scheduler = ReconciliationScheduler(store, reader, collector, ingestor, config, alert_callback=on_failure)
        manual = ManualSync(reader, collector, ingestor)

        logger.info(f"[services] sync pipeline ready: {len(config.rpc_urls)} providers, cache at {config.db_path}")
        return cls(
            config=config,
            store=store,
            router=router,
            reader=reader,
            fetcher=fetcher,
            ingestor=ingestor,
            collector=collector,
            scheduler=scheduler,
            manual=manual,
            alerts=alerts,
        )

    def subscriber(self, poll_interval_sec: Optional[float] = None) -> SyncSubscriber:
        contracts = [c for c in self.config.tracked_contracts if c != "FreelancerFactory"]
        return SyncSubscriber(
            self.reader,
            self.collector,
            self.ingestor,
            self.store.reader(),
            poll_interval_sec=poll_interval_sec or self.config.poll_interval_sec,
            contracts=contracts,
        )

    def close(self) -> None:
        self.alerts.close()
        self.store.close()
