"""Change-data-capture replication between DynamoDB Streams and a write-API target."""

from .config import Direction, PushTopic, StreamDefinition
from .streams import ChangeRecord, Checkpoint, EventKind, Shard


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "ChangeRecord",
    "Checkpoint",
    "Direction",
    "EventKind",
    "PushTopic",
    "Shard",
    "StreamDefinition",
    "main",
]
