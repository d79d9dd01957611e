"""Data types shared by the pull and push replication paths.

Images and keys are kept in DynamoDB attribute-value form (``{"S": "x"}``)
end to end, which is the shape both the stream API and the write adapters
speak.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from ..errors import DecodeError

AttributeMap = Dict[str, Dict[str, Any]]


class EventKind(str, Enum):
    """Closed set of change kinds emitted by the stream."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"

    @classmethod
    def from_event_name(cls, name: object) -> "EventKind":
        if not isinstance(name, str):
            raise DecodeError(f"event name must be a string, got {name!r}")
        try:
            return cls(name.strip().upper())
        except ValueError as exc:
            raise DecodeError(f"unsupported event name {name!r}") from exc


class IteratorType(str, Enum):
    TRIM_HORIZON = "TRIM_HORIZON"
    AFTER_SEQUENCE_NUMBER = "AFTER_SEQUENCE_NUMBER"


@dataclass(frozen=True)
class Shard:
    """A stream partition; children carry the id of the shard they split from."""

    shard_id: str
    parent_shard_id: Optional[str] = None


@dataclass(frozen=True)
class Checkpoint:
    """Last successfully applied sequence number of a shard."""

    shard_id: str
    sequence_number: str


@dataclass(frozen=True)
class ChangeRecord:
    """Normalized representation of one insert/modify/remove event."""

    shard_id: str
    event_kind: EventKind
    keys: AttributeMap
    sequence_number: str
    new_image: Optional[AttributeMap] = None
    old_image: Optional[AttributeMap] = None
    event_id: Optional[str] = None
    event_source: Optional[str] = None


@dataclass(frozen=True)
class TopologyPage:
    """One page of the stream topology listing."""

    shards: Sequence[Shard]
    last_evaluated_shard_id: Optional[str] = None


@dataclass(frozen=True)
class RecordsPage:
    """One page of raw stream records plus the iterator for the next page."""

    records: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    next_iterator: Optional[str] = None


def change_record_from_stream_record(
    shard_id: str, raw: Mapping[str, Any]
) -> ChangeRecord:
    """Wrap a raw DynamoDB Streams record into a :class:`ChangeRecord`."""
    body = raw.get("dynamodb")
    if not isinstance(body, Mapping):
        raise DecodeError(f"stream record from shard {shard_id} has no dynamodb body")
    sequence_number = body.get("SequenceNumber")
    if not sequence_number:
        raise DecodeError(f"stream record from shard {shard_id} has no sequence number")
    return ChangeRecord(
        shard_id=shard_id,
        event_kind=EventKind.from_event_name(raw.get("eventName")),
        keys=dict(body.get("Keys") or {}),
        new_image=_optional_map(body.get("NewImage")),
        old_image=_optional_map(body.get("OldImage")),
        sequence_number=str(sequence_number),
        event_id=raw.get("eventID"),
        event_source=raw.get("eventSourceARN"),
    )


def _optional_map(value: object) -> Optional[AttributeMap]:
    if not value:
        return None
    if not isinstance(value, Mapping):
        raise DecodeError(f"image must be a mapping, got {type(value).__name__}")
    return dict(value)


__all__ = [
    "AttributeMap",
    "ChangeRecord",
    "Checkpoint",
    "EventKind",
    "IteratorType",
    "RecordsPage",
    "Shard",
    "TopologyPage",
    "change_record_from_stream_record",
]
