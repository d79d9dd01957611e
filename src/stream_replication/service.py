"""Replication runtime wiring stream definitions to running pipelines."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .clients import (
    DynamoStreamsClient,
    DynamoTargetAdapter,
    HttpAdapterSettings,
    HttpTargetAdapter,
    PubSubTopicClient,
)
from .config import (
    Direction,
    Settings,
    StreamDefinition,
    load_settings,
    load_stream_definitions,
)
from .metrics import ReplicationMetrics
from .streams.checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from .streams.dispatcher import RecordDispatcher, TargetAdapter
from .streams.push import PushConsumer, PushTopicClient
from .streams.shards import (
    ShardCatalog,
    ShardRegistry,
    ShardScheduler,
    SourceStreamClient,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pipelines


class PullPipeline:
    """Runs a shard catalog and a shard scheduler for one source stream.

    Both loops share one cancellation event; a failure in either one stops
    the other, and the error is kept on :attr:`error`.
    """

    def __init__(
        self,
        definition: StreamDefinition,
        catalog: ShardCatalog,
        scheduler: ShardScheduler,
        *,
        refresh_initial_delay: float = 1.0,
        refresh_interval: float = 10.0,
    ) -> None:
        self.definition = definition
        self.catalog = catalog
        self.scheduler = scheduler
        self._refresh_initial_delay = refresh_initial_delay
        self._refresh_interval = refresh_interval
        self._cancel = threading.Event()
        self._threads: List[threading.Thread] = []
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return f"pull:{self.definition.table_name}"

    def start(self) -> None:
        self._threads = [
            threading.Thread(
                target=self._run_catalog,
                name=f"shard-catalog-{self.definition.table_name}",
                daemon=True,
            ),
            threading.Thread(
                target=self._run_scheduler,
                name=f"shard-scheduler-{self.definition.table_name}",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        self._cancel.set()

    def is_alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _run_catalog(self) -> None:
        try:
            self.catalog.run(
                self._cancel,
                initial_delay=self._refresh_initial_delay,
                interval=self._refresh_interval,
            )
        except Exception as exc:  # noqa: BLE001 - logged once, stream ends
            self._fail(exc, "error occurred while fetching shard list")

    def _run_scheduler(self) -> None:
        try:
            self.scheduler.run(self._cancel)
        except Exception as exc:  # noqa: BLE001 - logged once, stream ends
            self._fail(exc, "error occurred while processing shard")

    def _fail(self, exc: BaseException, message: str) -> None:
        if self.error is None:
            self.error = exc
        logger.error(
            "runtime: %s for table %s: %s",
            message,
            self.definition.table_name,
            exc,
            exc_info=exc,
        )
        self._cancel.set()


class PushPipeline:
    """Runs a push consumer on its own thread."""

    def __init__(self, definition: StreamDefinition, consumer: PushConsumer) -> None:
        self.definition = definition
        self.consumer = consumer
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return f"push:{self.definition.table_name}"

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"push-consumer-{self.definition.table_name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self.consumer.stop()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        try:
            self.consumer.start()
        except Exception as exc:  # noqa: BLE001 - logged once, stream ends
            self.error = exc
            logger.error(
                "runtime: error occurred while consuming push stream for table %s: %s",
                self.definition.table_name,
                exc,
                exc_info=exc,
            )


# ---------------------------------------------------------------------------
# Factory helpers


def build_checkpoint_store(settings: Settings, table_name: str) -> CheckpointStore:
    if settings.checkpoint_backend == "file":
        return PersistentCheckpointStore(
            settings.checkpoint_dir / f"{table_name}.json",
            fsync=settings.checkpoint_fsync,
        )
    return InMemoryCheckpointStore()


def build_pull_pipeline(
    definition: StreamDefinition,
    settings: Settings,
    *,
    target_adapter: TargetAdapter,
    stream_client: Optional[SourceStreamClient] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    metrics: Optional[ReplicationMetrics] = None,
) -> PullPipeline:
    """Construct the catalog/scheduler pair replicating one source stream."""

    if definition.direction is not Direction.PULL_FROM_SOURCE:
        raise ValueError(f"stream for table {definition.table_name} is not a pull stream")
    metrics = metrics or ReplicationMetrics()
    if stream_client is None:
        stream_client = DynamoStreamsClient(
            definition.source_stream_id,
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url,
        )
    store = checkpoint_store or build_checkpoint_store(settings, definition.table_name)
    seed = definition.initial_checkpoint
    if seed is not None and store.load(seed.shard_id) is None:
        logger.info(
            "runtime: seeding checkpoint for shard %s at %s",
            seed.shard_id,
            seed.sequence_number,
        )
        store.save(seed.shard_id, seed.sequence_number)

    registry = ShardRegistry()
    dispatcher = RecordDispatcher(definition.table_name, target_adapter, metrics=metrics)
    catalog = ShardCatalog(
        definition.source_stream_id,
        stream_client,
        registry,
        table_name=definition.table_name,
        metrics=metrics,
    )
    scheduler = ShardScheduler(
        definition.source_stream_id,
        stream_client,
        dispatcher,
        registry=registry,
        checkpoint_store=store,
        metrics=metrics,
        max_empty_reads=settings.shard_max_empty_reads,
        yield_sleep_seconds=settings.shard_yield_sleep_seconds,
        idle_sleep_seconds=settings.scheduler_idle_sleep_seconds,
    )
    return PullPipeline(
        definition,
        catalog,
        scheduler,
        refresh_initial_delay=settings.shard_refresh_initial_delay_seconds,
        refresh_interval=settings.shard_refresh_interval_seconds,
    )


def build_push_pipeline(
    definition: StreamDefinition,
    *,
    source_adapter: TargetAdapter,
    topic_client: Optional[PushTopicClient] = None,
    metrics: Optional[ReplicationMetrics] = None,
) -> PushPipeline:
    """Construct the consumer replaying one push topic onto the source store."""

    if definition.direction is not Direction.PUSH_FROM_TARGET or definition.push_topic is None:
        raise ValueError(f"stream for table {definition.table_name} is not a push stream")
    metrics = metrics or ReplicationMetrics()
    if topic_client is None:
        topic_client = PubSubTopicClient(definition.push_topic.project)
    dispatcher = RecordDispatcher(definition.table_name, source_adapter, metrics=metrics)
    consumer = PushConsumer(
        definition.push_topic.subscription_id,
        topic_client,
        dispatcher,
        metrics=metrics,
    )
    return PushPipeline(definition, consumer)


# ---------------------------------------------------------------------------
# Runtime


class ReplicationRuntime:
    """Starts one pipeline per enabled stream and coordinates shutdown."""

    def __init__(
        self,
        settings: Settings,
        definitions: Optional[Sequence[StreamDefinition]] = None,
        *,
        target_adapter: Optional[TargetAdapter] = None,
        source_adapter: Optional[TargetAdapter] = None,
        stream_client_factory: Optional[
            Callable[[StreamDefinition], SourceStreamClient]
        ] = None,
        topic_client_factory: Optional[
            Callable[[StreamDefinition], PushTopicClient]
        ] = None,
        metrics: Optional[ReplicationMetrics] = None,
    ) -> None:
        self.settings = settings
        if definitions is None:
            definitions = load_stream_definitions(settings.streams_config_path)
        self.definitions = tuple(definitions)
        self.metrics = metrics or ReplicationMetrics()
        self._target_adapter = target_adapter
        self._source_adapter = source_adapter
        self._stream_client_factory = stream_client_factory
        self._topic_client_factory = topic_client_factory
        self._stop_event = threading.Event()
        self._checkpoint_stores: Dict[str, CheckpointStore] = {}
        self.pipelines: List[PullPipeline | PushPipeline] = []

    def build(self) -> List[PullPipeline | PushPipeline]:
        pipelines: List[PullPipeline | PushPipeline] = []
        for definition in self.definitions:
            if not definition.enabled:
                logger.info(
                    "runtime: stream for table %s is not enabled, skipping",
                    definition.table_name,
                )
                continue
            if definition.direction is Direction.PULL_FROM_SOURCE:
                stream_client = (
                    self._stream_client_factory(definition)
                    if self._stream_client_factory
                    else None
                )
                pipelines.append(
                    build_pull_pipeline(
                        definition,
                        self.settings,
                        target_adapter=self._get_target_adapter(),
                        stream_client=stream_client,
                        checkpoint_store=self._get_checkpoint_store(definition.table_name),
                        metrics=self.metrics,
                    )
                )
            else:
                topic_client = (
                    self._topic_client_factory(definition)
                    if self._topic_client_factory
                    else None
                )
                pipelines.append(
                    build_push_pipeline(
                        definition,
                        source_adapter=self._get_source_adapter(),
                        topic_client=topic_client,
                        metrics=self.metrics,
                    )
                )
        self.pipelines = pipelines
        return pipelines

    def start(self) -> None:
        if not self.pipelines:
            self.build()
        for pipeline in self.pipelines:
            logger.info("runtime: starting %s", pipeline.name)
            pipeline.start()

    def run(self) -> None:
        """Start every pipeline and block until all of them have ended."""
        if self.settings.metrics_port > 0:
            self.metrics.serve(self.settings.metrics_port)
        self._install_signal_handlers()
        self.start()
        try:
            while self._any_alive(self.pipelines):
                self._stop_event.wait(0.5)
        except KeyboardInterrupt:
            logger.info("runtime: shutdown requested (KeyboardInterrupt)")
        finally:
            self.stop()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for pipeline in self.pipelines:
            pipeline.stop()
        for pipeline in self.pipelines:
            pipeline.join(timeout=timeout)

    def _handle_signal(self, signum, _frame) -> None:
        logger.info(
            "runtime: stop requested by signal %s, stopping %d stream(s)",
            signum,
            len(self.pipelines),
        )
        for pipeline in self.pipelines:
            pipeline.stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("runtime: not on main thread; signal handlers not installed")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)

    def _get_checkpoint_store(self, table_name: str) -> CheckpointStore:
        # Streams replicating the same table share one checkpoint file.
        store = self._checkpoint_stores.get(table_name)
        if store is None:
            store = build_checkpoint_store(self.settings, table_name)
            self._checkpoint_stores[table_name] = store
        return store

    def _get_target_adapter(self) -> TargetAdapter:
        if self._target_adapter is None:
            self._target_adapter = HttpTargetAdapter(
                HttpAdapterSettings(
                    base_url=self.settings.adapter_base_url,
                    request_timeout_seconds=self.settings.adapter_request_timeout_seconds,
                )
            )
        return self._target_adapter

    def _get_source_adapter(self) -> TargetAdapter:
        if self._source_adapter is None:
            self._source_adapter = DynamoTargetAdapter(
                region_name=self.settings.aws_region,
                endpoint_url=self.settings.dynamodb_endpoint_url,
            )
        return self._source_adapter

    @staticmethod
    def _any_alive(pipelines: Iterable[PullPipeline | PushPipeline]) -> bool:
        return any(pipeline.is_alive() for pipeline in pipelines)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    runtime = ReplicationRuntime(settings)
    runtime.run()
