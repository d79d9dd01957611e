"""Shard scheduling, record dispatch, and push consumption for stream replication."""

from .checkpoint import (
    CheckpointStore,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
    sequence_after,
)
from .dispatcher import RecordDispatcher, TargetAdapter
from .push import (
    PushConsumer,
    PushMessage,
    PushTopicClient,
    SubscriptionHandle,
    decode_push_message,
)
from .records import (
    ChangeRecord,
    Checkpoint,
    EventKind,
    IteratorType,
    RecordsPage,
    Shard,
    TopologyPage,
    change_record_from_stream_record,
)
from .shards import (
    DEFAULT_MAX_EMPTY_READS,
    DEFAULT_YIELD_SLEEP_SECONDS,
    ShardCatalog,
    ShardRegistry,
    ShardScheduler,
    SourceStreamClient,
)

__all__ = [
    "ChangeRecord",
    "Checkpoint",
    "CheckpointStore",
    "DEFAULT_MAX_EMPTY_READS",
    "DEFAULT_YIELD_SLEEP_SECONDS",
    "EventKind",
    "InMemoryCheckpointStore",
    "IteratorType",
    "PersistentCheckpointStore",
    "PushConsumer",
    "PushMessage",
    "PushTopicClient",
    "RecordDispatcher",
    "RecordsPage",
    "Shard",
    "ShardCatalog",
    "ShardRegistry",
    "ShardScheduler",
    "SourceStreamClient",
    "SubscriptionHandle",
    "TargetAdapter",
    "TopologyPage",
    "change_record_from_stream_record",
    "decode_push_message",
    "sequence_after",
]
