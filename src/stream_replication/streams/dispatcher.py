"""Applies change records to a target store through its narrow write API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from ..errors import DispatchError
from ..metrics import ReplicationMetrics
from .records import AttributeMap, ChangeRecord, EventKind

logger = logging.getLogger(__name__)


class TargetAdapter(Protocol):
    """Write API of the store receiving replicated changes.

    Implementations raise on failure and return normally on success. They are
    shared between dispatchers and must be safe to call from several threads.
    """

    def put(self, table_name: str, item: AttributeMap) -> None: ...

    def update(
        self,
        table_name: str,
        key: AttributeMap,
        attribute_updates: Mapping[str, Dict[str, Any]],
    ) -> None: ...

    def delete(self, table_name: str, key: AttributeMap) -> None: ...


class RecordDispatcher:
    """Maps each event kind to its apply policy for one table.

    ``INSERT`` and ``MODIFY`` both become a ``put`` of the new image, so a
    redelivered record is applied idempotently. ``REMOVE`` is logged and
    counted but never applied.
    """

    def __init__(
        self,
        table_name: str,
        adapter: TargetAdapter,
        *,
        metrics: Optional[ReplicationMetrics] = None,
    ) -> None:
        self.table_name = table_name
        self._adapter = adapter
        self._metrics = metrics or ReplicationMetrics()

    def dispatch(self, record: ChangeRecord) -> None:
        logger.debug(
            "dispatcher: processing %s record %s from shard %s",
            record.event_kind.value,
            record.sequence_number,
            record.shard_id,
        )
        try:
            if record.event_kind is EventKind.INSERT or record.event_kind is EventKind.MODIFY:
                self._upsert(record)
            elif record.event_kind is EventKind.REMOVE:
                self._observe_remove(record)
            else:  # pragma: no cover - EventKind is closed
                raise ValueError(f"unhandled event kind {record.event_kind!r}")
        except DispatchError:
            self._metrics.inc_errors(self.table_name)
            raise
        except Exception as exc:
            self._metrics.inc_errors(self.table_name)
            logger.error(
                "dispatcher: %s record %s failed on table %s: %s",
                record.event_kind.value,
                record.sequence_number,
                self.table_name,
                exc,
            )
            raise DispatchError(
                f"failed to apply {record.event_kind.value} record",
                table_name=self.table_name,
                shard_id=record.shard_id,
                sequence_number=record.sequence_number,
            ) from exc
        self._metrics.inc_records(self.table_name)

    def _upsert(self, record: ChangeRecord) -> None:
        if not record.new_image:
            raise DispatchError(
                f"{record.event_kind.value} record carries no new image",
                table_name=self.table_name,
                shard_id=record.shard_id,
                sequence_number=record.sequence_number,
            )
        self._adapter.put(self.table_name, dict(record.new_image))

    def _observe_remove(self, record: ChangeRecord) -> None:
        # Deletes are surfaced only; a replayed or reordered remove must not lose data.
        logger.info(
            "dispatcher: delete request received for record %s on table %s, keys=%s old_image=%s",
            record.sequence_number,
            self.table_name,
            record.keys,
            record.old_image,
        )
        self._metrics.inc_removes_skipped(self.table_name)


__all__ = ["RecordDispatcher", "TargetAdapter"]
