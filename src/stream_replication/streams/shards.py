"""Shard discovery and scheduling for pull-based change streams.

Two threads cooperate per stream. :class:`ShardCatalog` periodically pages
through the stream topology and proposes unseen shards. :class:`ShardScheduler`
promotes shards whose parent has been fully consumed and reads each
in-process shard in sequence-number order, checkpointing after every applied
record. Bucket membership lives in a :class:`ShardRegistry` so the catalog can
only add to the discovered set while the scheduler is the sole mover between
buckets.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence

from ..errors import DecodeError, ShardDiscoveryError, ShardReadError
from ..metrics import ReplicationMetrics
from .checkpoint import CheckpointStore, InMemoryCheckpointStore
from .dispatcher import RecordDispatcher
from .records import (
    IteratorType,
    RecordsPage,
    Shard,
    TopologyPage,
    change_record_from_stream_record,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_EMPTY_READS = 5
DEFAULT_YIELD_SLEEP_SECONDS = 5.0


class SourceStreamClient(Protocol):
    """Paging API of the source change-stream."""

    def describe_topology(
        self, exclusive_start_shard_id: Optional[str] = None
    ) -> TopologyPage: ...

    def get_iterator(
        self,
        shard_id: str,
        iterator_type: IteratorType,
        sequence_number: Optional[str] = None,
    ) -> Optional[str]: ...

    def get_records(self, iterator: str) -> RecordsPage: ...


class ShardRegistry:
    """Lock-guarded view of the discovered, in-process, and processed buckets."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._discovered: Dict[str, Shard] = {}
        self._in_process: Dict[str, Shard] = {}
        self._processed: Dict[str, Shard] = {}
        self._listed: Optional[FrozenSet[str]] = None

    def propose(self, shard: Shard) -> bool:
        """Add ``shard`` to the discovered set unless any bucket already knows it."""
        with self._lock:
            shard_id = shard.shard_id
            if (
                shard_id in self._discovered
                or shard_id in self._in_process
                or shard_id in self._processed
            ):
                return False
            self._discovered[shard_id] = shard
            return True

    def record_listing(self, shard_ids: Iterable[str]) -> None:
        """Remember the shard ids returned by the last complete topology listing."""
        with self._lock:
            self._listed = frozenset(shard_ids)

    def promote_ready(self) -> List[Shard]:
        """Move every discovered shard whose parent is satisfied into in-process.

        A parent is satisfied once it is processed, or when the last complete
        listing no longer contains it and no bucket knows it (the stream has
        trimmed it, so it can never be read).
        """
        promoted: List[Shard] = []
        with self._lock:
            for shard_id, shard in list(self._discovered.items()):
                parent = shard.parent_shard_id
                if not self._parent_satisfied_locked(parent):
                    continue
                if parent is not None and parent not in self._processed:
                    logger.info(
                        "shardregistry: parent %s of shard %s is no longer listed, "
                        "treating it as processed",
                        parent,
                        shard_id,
                    )
                del self._discovered[shard_id]
                self._in_process[shard_id] = shard
                promoted.append(shard)
        return promoted

    def _parent_satisfied_locked(self, parent: Optional[str]) -> bool:
        if parent is None or parent in self._processed:
            return True
        if self._listed is None or parent in self._listed:
            return False
        return parent not in self._discovered and parent not in self._in_process

    def mark_processed(self, shard_id: str) -> None:
        with self._lock:
            shard = self._in_process.pop(shard_id, None)
            if shard is None:
                raise KeyError(f"shard {shard_id} is not in process")
            self._processed[shard_id] = shard

    def in_process(self) -> List[Shard]:
        with self._lock:
            return list(self._in_process.values())

    def discovered_ids(self) -> List[str]:
        with self._lock:
            return list(self._discovered)

    def in_process_ids(self) -> List[str]:
        with self._lock:
            return list(self._in_process)

    def processed_ids(self) -> List[str]:
        with self._lock:
            return list(self._processed)

    def state_of(self, shard_id: str) -> Optional[str]:
        with self._lock:
            if shard_id in self._discovered:
                return "discovered"
            if shard_id in self._in_process:
                return "in_process"
            if shard_id in self._processed:
                return "processed"
            return None


class ShardCatalog:
    """Discovers shards from the paginated topology API."""

    def __init__(
        self,
        stream_id: str,
        client: SourceStreamClient,
        registry: ShardRegistry,
        *,
        table_name: str = "",
        metrics: Optional[ReplicationMetrics] = None,
    ) -> None:
        self.stream_id = stream_id
        self._client = client
        self._registry = registry
        self._table_name = table_name or stream_id
        self._metrics = metrics or ReplicationMetrics()

    def refresh(self, cancel: Optional[threading.Event] = None) -> int:
        """Page through the topology and propose unseen shards.

        Returns the number of newly discovered shards. A complete listing is
        handed to the registry so it can tell trimmed parents apart. A failed
        page aborts the refresh with :class:`ShardDiscoveryError`; shards
        proposed from earlier pages stay discovered.
        """
        added = 0
        listed: List[str] = []
        cursor: Optional[str] = None
        while cancel is None or not cancel.is_set():
            try:
                page = self._client.describe_topology(cursor)
            except Exception as exc:
                raise ShardDiscoveryError(
                    f"failed to describe stream {self.stream_id} "
                    f"(exclusive start shard {cursor})"
                ) from exc
            for shard in page.shards:
                listed.append(shard.shard_id)
                if self._registry.propose(shard):
                    logger.info("shardcatalog: new shard found: %s", shard.shard_id)
                    added += 1
            cursor = page.last_evaluated_shard_id
            if cursor is None:
                self._registry.record_listing(listed)
                break
        self._metrics.inc_discovered(self._table_name, added)
        return added

    def run(
        self,
        cancel: threading.Event,
        *,
        initial_delay: float = 1.0,
        interval: float = 10.0,
    ) -> None:
        """Refresh on a fixed schedule until ``cancel`` is set or a refresh fails."""
        delay = initial_delay
        while not cancel.wait(delay):
            self.refresh(cancel)
            delay = interval


class ShardScheduler:
    """Promotes shards in parent-before-child order and consumes them."""

    def __init__(
        self,
        stream_id: str,
        client: SourceStreamClient,
        dispatcher: RecordDispatcher,
        *,
        registry: Optional[ShardRegistry] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        metrics: Optional[ReplicationMetrics] = None,
        max_empty_reads: int = DEFAULT_MAX_EMPTY_READS,
        yield_sleep_seconds: float = DEFAULT_YIELD_SLEEP_SECONDS,
        idle_sleep_seconds: float = 1.0,
    ) -> None:
        if max_empty_reads < 1:
            raise ValueError("max_empty_reads must be at least 1")
        self.stream_id = stream_id
        self._client = client
        self._dispatcher = dispatcher
        self.registry = registry or ShardRegistry()
        self.checkpoints = checkpoint_store or InMemoryCheckpointStore()
        self._metrics = metrics or ReplicationMetrics()
        self._max_empty_reads = max_empty_reads
        self._yield_sleep = yield_sleep_seconds
        self._idle_sleep = idle_sleep_seconds

    @property
    def table_name(self) -> str:
        return self._dispatcher.table_name

    def run(self, cancel: threading.Event) -> None:
        """Run scheduling passes until ``cancel`` is set; failures propagate."""
        while not cancel.is_set():
            consumed = self.run_pass(cancel)
            if consumed == 0:
                cancel.wait(self._idle_sleep)

    def run_pass(self, cancel: Optional[threading.Event] = None) -> int:
        """Promote ready shards, then consume each in-process shard once.

        Returns the number of shards consumed during the pass.
        """
        for shard in self.registry.promote_ready():
            logger.info(
                "shardscheduler: moving shard to in process queue: %s", shard.shard_id
            )
        consumed = 0
        for shard in self.registry.in_process():
            if cancel is not None and cancel.is_set():
                break
            logger.info("shardscheduler: processing shard: %s", shard.shard_id)
            complete = self.consume(shard, cancel)
            consumed += 1
            if complete:
                logger.info("shardscheduler: moving shard to processed: %s", shard.shard_id)
                self.registry.mark_processed(shard.shard_id)
                self._metrics.inc_processed(self.table_name)
            else:
                logger.info(
                    "shardscheduler: shard voluntarily passed control: %s", shard.shard_id
                )
        return consumed

    def consume(self, shard: Shard, cancel: Optional[threading.Event] = None) -> bool:
        """Read ``shard`` from its checkpoint; return True once it is exhausted.

        Returns False when the shard yields after consecutive empty pages or
        when ``cancel`` is observed. Read and dispatch failures raise.
        """
        iterator = self._open_iterator(shard)
        empty_reads = 0
        while iterator is not None:
            if cancel is not None and cancel.is_set():
                return False
            if empty_reads >= self._max_empty_reads:
                logger.debug(
                    "shardscheduler: no records on shard %s after %d reads, yielding",
                    shard.shard_id,
                    empty_reads,
                )
                self._metrics.inc_yields(self.table_name)
                if self._yield_sleep > 0:
                    (cancel or threading.Event()).wait(self._yield_sleep)
                return False
            page = self._read_page(shard, iterator)
            if not page.records:
                empty_reads += 1
            else:
                empty_reads = 0
                if not self._apply_page(shard, page.records, cancel):
                    return False
            iterator = page.next_iterator
        return True

    def _open_iterator(self, shard: Shard) -> Optional[str]:
        sequence_number = self.checkpoints.load(shard.shard_id)
        if sequence_number is None:
            iterator_type = IteratorType.TRIM_HORIZON
        else:
            iterator_type = IteratorType.AFTER_SEQUENCE_NUMBER
        try:
            return self._client.get_iterator(shard.shard_id, iterator_type, sequence_number)
        except Exception as exc:
            raise ShardReadError(
                f"failed to obtain {iterator_type.value} iterator for shard "
                f"{shard.shard_id} (sequence {sequence_number})",
                shard_id=shard.shard_id,
            ) from exc

    def _read_page(self, shard: Shard, iterator: str) -> RecordsPage:
        try:
            return self._client.get_records(iterator)
        except Exception as exc:
            raise ShardReadError(
                f"failed to read records from shard {shard.shard_id}",
                shard_id=shard.shard_id,
            ) from exc

    def _apply_page(
        self,
        shard: Shard,
        records: Sequence[object],
        cancel: Optional[threading.Event],
    ) -> bool:
        for raw in records:
            if cancel is not None and cancel.is_set():
                return False
            try:
                record = change_record_from_stream_record(shard.shard_id, raw)  # type: ignore[arg-type]
            except DecodeError as exc:
                raise ShardReadError(
                    f"malformed record on shard {shard.shard_id}: {exc}",
                    shard_id=shard.shard_id,
                ) from exc
            self._dispatcher.dispatch(record)
            self.checkpoints.save(shard.shard_id, record.sequence_number)
        return True


__all__ = [
    "DEFAULT_MAX_EMPTY_READS",
    "DEFAULT_YIELD_SLEEP_SECONDS",
    "ShardCatalog",
    "ShardRegistry",
    "ShardScheduler",
    "SourceStreamClient",
]
