"""
Telemetry Anchor - service wiring.

Builds every component once from Settings and hands each its
collaborators. Nothing here is a module-level singleton; tests build their
own Pipeline with an in-memory store, a stub ledger and a manual clock.

Store selection:
- BATCHSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: in-memory store (development only, nothing survives a restart)
"""

import signal
import threading
from typing import Any, Optional

import psycopg2
import redis

from .config import ConfigError, Settings
from .core import (
    AnchorDispatcher,
    AnchoringClient,
    BatchAccumulator,
    BatchPersistenceError,
    Clock,
    LedgerNetwork,
    RetryReconciler,
    SolanaRpcNetwork,
    SystemClock,
    WalletSigner,
    WindowedScheduler,
)
from .db import (
    BatchStore,
    BatchStoreDriver,
    DatabaseConfig,
    InMemoryBatchStore,
    PostgresBatchStore,
    get_batchstore_driver,
)
from .observability import HealthStatus, PipelineMetrics, check_health, get_logger
from .stream import RedisStreamConsumer

logger = get_logger(__name__)


def create_batch_store(settings: Settings) -> BatchStore:
    """
    Create the BatchStore selected by the environment.

    Raises:
        ConfigError: psycopg2 was selected but no database is configured
        psycopg2.Error: The database is unreachable
    """
    driver = get_batchstore_driver()

    if driver == BatchStoreDriver.MEMORY:
        logger.warning("Using in-memory batch store (no persistence)")
        return InMemoryBatchStore()

    config = settings.database or DatabaseConfig.from_env_or_none()
    if config is None:
        raise ConfigError("BATCHSTORE_DRIVER is psycopg2 but no database is configured")

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    # Fail at startup rather than on the first batch
    test_conn = connection_factory()
    test_conn.close()

    store = PostgresBatchStore(connection_factory)
    store.init_schema()
    logger.info(
        "PostgreSQL batch store ready",
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return store


def create_wallet_signer(settings: Settings) -> WalletSigner:
    """
    Load the anchoring wallet from SOLANA_PRIVATE_KEY.

    Without a key, a throwaway wallet is generated on devnet and testnet.
    """
    solana = settings.solana
    if solana.private_key:
        return WalletSigner.from_secret(solana.private_key)
    if solana.is_mainnet:
        raise ConfigError("SOLANA_PRIVATE_KEY is required on mainnet-beta")
    signer = WalletSigner.generate()
    logger.warning(
        "SOLANA_PRIVATE_KEY not set, using a generated wallet; fund it before anchoring",
        wallet=signer.address,
        network=solana.network,
    )
    return signer


def create_ledger_network(settings: Settings, clock: Optional[Clock] = None) -> LedgerNetwork:
    solana = settings.solana
    return SolanaRpcNetwork(
        rpc_url=solana.rpc_url,
        signer=create_wallet_signer(settings),
        timeout=solana.rpc_timeout_seconds,
        clock=clock,
    )


class Pipeline:
    """
    The running service: stream consumer, accumulator, scheduler and
    reconciler sharing one store, one anchoring client and one metrics
    instance.
    """

    def __init__(
        self,
        settings: Settings,
        store: BatchStore,
        accumulator: BatchAccumulator,
        metrics: PipelineMetrics,
        clock: Clock,
        consumer: Optional[RedisStreamConsumer] = None,
        client: Optional[AnchoringClient] = None,
        dispatcher: Optional[AnchorDispatcher] = None,
        reconciler: Optional[RetryReconciler] = None,
        scheduler: Optional[WindowedScheduler] = None,
    ):
        self.settings = settings
        self.store = store
        self.accumulator = accumulator
        self.metrics = metrics
        self.clock = clock
        self.consumer = consumer
        self.client = client
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.scheduler = scheduler

        self._consumer_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def anchoring_enabled(self) -> bool:
        return self.client is not None

    def start(self) -> None:
        if self.client is not None:
            report = self.client.check_health()
            logger.info(
                "Anchoring client ready",
                wallet=report.wallet,
                network=report.network,
                healthy=report.healthy,
                balance_sol=report.balance_sol,
            )
        else:
            logger.info("Anchoring disabled (SOLANA_ENABLED=false); batches are stored only")

        if self.reconciler is not None:
            self.reconciler.start()
        if self.scheduler is not None:
            self.scheduler.start()

        if self.consumer is not None:
            self._consumer_thread = threading.Thread(
                target=self.consumer.run,
                args=(self.accumulator,),
                name="stream-consumer",
                daemon=True,
            )
            self._consumer_thread.start()

        logger.info("Pipeline started", store_type=type(self.store).__name__)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop consuming, flush the open batch, then stop anchoring."""
        if self.consumer is not None:
            self.consumer.stop()
            if self._consumer_thread is not None:
                self._consumer_thread.join(timeout=timeout)

        try:
            self.accumulator.flush()
        except BatchPersistenceError as e:
            # Its entries stay unacknowledged and are read again on restart
            logger.error("Could not persist open batch at shutdown", batch_id=e.batch_id, error=str(e.cause))

        if self.scheduler is not None:
            self.scheduler.stop()
        if self.reconciler is not None:
            self.reconciler.stop()
        if self.client is not None:
            self.client.network.close()
        if self.consumer is not None:
            self.consumer.close()

        self._stop_event.set()
        logger.info("Pipeline stopped")

    def run_forever(self) -> None:
        """Start, then block until SIGINT or SIGTERM."""
        def handle_signal(signum, frame):
            logger.info("Shutdown signal received", signal=signum)
            self._stop_event.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        self.start()
        self._stop_event.wait()
        self._stop_event.clear()
        self.stop()

    def check_health(self) -> HealthStatus:
        return check_health(store=self.store, anchoring_client=self.client)

    def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "metrics": self.metrics.get_summary(),
            "accumulator": self.accumulator.get_statistics(),
            "batches_by_status": self.store.get_status_counts(),
            "retry_queue": self.store.count_retry_queue(self.settings.anchoring.max_retries),
            "anchoring_enabled": self.anchoring_enabled,
        }
        if self.client is not None and self.client.health is not None:
            stats["wallet"] = self.client.health.to_dict()
        if self.scheduler is not None:
            stats["scheduler"] = self.scheduler.get_statistics()
        if self.reconciler is not None:
            stats["reconciler"] = self.reconciler.get_status()
        return stats


def build_pipeline(
    settings: Optional[Settings] = None,
    store: Optional[BatchStore] = None,
    network: Optional[LedgerNetwork] = None,
    clock: Optional[Clock] = None,
    stream_client: Optional[redis.Redis] = None,
    with_consumer: bool = True,
    metrics: Optional[PipelineMetrics] = None,
) -> Pipeline:
    """
    Build a Pipeline.

    Args:
        settings: Defaults to Settings.from_env()
        store: Defaults to create_batch_store(settings)
        network: Ledger network (defaults to Solana JSON-RPC when enabled)
        clock: Defaults to SystemClock
        stream_client: Redis client for the consumer
        with_consumer: Build the Redis stream consumer
        metrics: Defaults to a fresh PipelineMetrics
    """
    settings = settings or Settings.from_env()
    clock = clock or SystemClock()
    metrics = metrics or PipelineMetrics()
    store = store or create_batch_store(settings)

    consumer = None
    if with_consumer:
        consumer = RedisStreamConsumer(settings.stream, client=stream_client, clock=clock)

    accumulator = BatchAccumulator(
        store=store,
        ack=consumer.ack if consumer is not None else (lambda ids: None),
        config=settings.batching,
        clock=clock,
        metrics=metrics,
    )

    client = dispatcher = reconciler = scheduler = None
    if settings.solana.enabled:
        network = network or create_ledger_network(settings, clock)
        client = AnchoringClient(network, settings.anchoring, settings.solana, clock)
        dispatcher = AnchorDispatcher(store, client, settings.anchoring, clock, metrics)
        reconciler = RetryReconciler(
            store,
            dispatcher,
            settings.anchoring,
            clock,
            include_unattempted=not settings.anchoring.schedule_enabled,
        )
        if settings.anchoring.schedule_enabled:
            scheduler = WindowedScheduler(store, dispatcher, settings.anchoring, clock)

    return Pipeline(
        settings=settings,
        store=store,
        accumulator=accumulator,
        metrics=metrics,
        clock=clock,
        consumer=consumer,
        client=client,
        dispatcher=dispatcher,
        reconciler=reconciler,
        scheduler=scheduler,
    )
