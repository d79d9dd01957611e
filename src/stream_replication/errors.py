"""Exception types raised by the replication engine."""

from __future__ import annotations

from typing import Optional


class ReplicationError(RuntimeError):
    """Base class for replication failures surfaced to the runtime."""


class ConfigurationError(ValueError):
    """Raised when a stream definition cannot be interpreted."""


class ShardDiscoveryError(ReplicationError):
    """Raised when paging through the stream topology fails."""


class ShardReadError(ReplicationError):
    """Raised when an iterator or records call fails for a shard."""

    def __init__(self, message: str, *, shard_id: str) -> None:
        super().__init__(message)
        self.shard_id = shard_id


class DispatchError(ReplicationError):
    """Wraps a target write failure with the record context."""

    def __init__(
        self,
        message: str,
        *,
        table_name: str,
        shard_id: str,
        sequence_number: Optional[str],
    ) -> None:
        super().__init__(
            f"{message} (table={table_name}, shard={shard_id}, "
            f"sequence={sequence_number})"
        )
        self.table_name = table_name
        self.shard_id = shard_id
        self.sequence_number = sequence_number


class DecodeError(ReplicationError):
    """Raised when a change payload cannot be turned into a change record."""


class PushConsumerError(ReplicationError):
    """Raised when a push subscription ends because a message failed."""


class TargetAdapterError(ReplicationError):
    """Raised by write adapters when the target rejects an operation."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "ConfigurationError",
    "DecodeError",
    "DispatchError",
    "PushConsumerError",
    "ReplicationError",
    "ShardDiscoveryError",
    "ShardReadError",
    "TargetAdapterError",
]
