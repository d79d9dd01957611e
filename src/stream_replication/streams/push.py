"""Push-side consumer replaying target-store changes toward the source."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import CancelledError
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Protocol

from boto3.dynamodb.types import TypeSerializer

from ..errors import DecodeError, PushConsumerError
from ..metrics import ReplicationMetrics
from .dispatcher import RecordDispatcher
from .records import AttributeMap, ChangeRecord, EventKind

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()


class PushMessage(Protocol):
    """A delivered topic message; exactly one of ack/nack is called."""

    data: bytes

    def ack(self) -> None: ...

    def nack(self) -> None: ...


class SubscriptionHandle(Protocol):
    """Running subscription; ``result`` blocks until it ends."""

    def result(self, timeout: Optional[float] = None) -> Any: ...

    def cancel(self) -> None: ...


class PushTopicClient(Protocol):
    def subscribe(
        self,
        subscription_id: str,
        callback: Callable[[PushMessage], None],
        *,
        max_outstanding: int = 1,
    ) -> SubscriptionHandle: ...


def _marshal_map(value: object, field_name: str) -> Optional[AttributeMap]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise DecodeError(f"{field_name} must be an object, got {type(value).__name__}")
    try:
        return {str(key): _serializer.serialize(item) for key, item in value.items()}
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"failed to marshal {field_name}: {exc}") from exc


def decode_push_message(data: bytes, *, shard_id: str) -> ChangeRecord:
    """Decode a JSON change notification into a :class:`ChangeRecord`.

    Images arrive as plain JSON and are marshalled into attribute-value maps;
    numbers are parsed as :class:`~decimal.Decimal` so they serialize as ``N``.
    """
    try:
        payload = json.loads(data.decode("utf-8"), parse_float=Decimal)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError("push payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise DecodeError("push payload must be a JSON object")

    event_id = payload.get("EventID")
    keys = _marshal_map(payload.get("Keys"), "Keys") or {}
    return ChangeRecord(
        shard_id=shard_id,
        event_kind=EventKind.from_event_name(payload.get("EventName")),
        keys=keys,
        new_image=_marshal_map(payload.get("NewImage"), "NewImage"),
        old_image=_marshal_map(payload.get("OldImage"), "OldImage"),
        sequence_number=str(event_id) if event_id is not None else "",
        event_id=str(event_id) if event_id is not None else None,
        event_source=payload.get("EventSourceArn"),
    )


class PushConsumer:
    """Single-outstanding-message subscriber feeding a :class:`RecordDispatcher`.

    A message that fails to decode or apply is nacked and the whole
    subscription is cancelled rather than skipped, so no change is dropped.
    """

    def __init__(
        self,
        subscription_id: str,
        client: PushTopicClient,
        dispatcher: RecordDispatcher,
        *,
        metrics: Optional[ReplicationMetrics] = None,
    ) -> None:
        self.subscription_id = subscription_id
        self._client = client
        self._dispatcher = dispatcher
        self._metrics = metrics or ReplicationMetrics()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._stop_requested = threading.Event()
        self._handle: Optional[SubscriptionHandle] = None
        self._cancel_fn: Optional[Callable[[], None]] = None
        self._failure: Optional[BaseException] = None

    @property
    def table_name(self) -> str:
        return self._dispatcher.table_name

    def start(self, cancel: Optional[Callable[[], None]] = None) -> None:
        """Subscribe and block until the subscription ends.

        ``cancel`` is invoked once when a message fails, in addition to
        cancelling the subscription handle.
        """
        with self._lock:
            self._cancelled.clear()
            self._failure = None
            self._cancel_fn = cancel
        handle = self._client.subscribe(
            self.subscription_id, self.handle_message, max_outstanding=1
        )
        with self._lock:
            self._handle = handle
            cancelled = self._cancelled.is_set() or self._stop_requested.is_set()
        if cancelled:
            handle.cancel()
        logger.info("pushconsumer: listening on subscription %s", self.subscription_id)
        try:
            handle.result()
        except CancelledError:
            pass
        except Exception as exc:
            if self._failure is None:
                raise PushConsumerError(
                    f"subscription {self.subscription_id} terminated"
                ) from exc
        finally:
            with self._lock:
                self._handle = None
        if self._failure is not None:
            raise PushConsumerError(
                f"subscription {self.subscription_id} cancelled after a failed message "
                f"(table={self.table_name})"
            ) from self._failure

    def stop(self) -> None:
        with self._lock:
            self._stop_requested.set()
            handle = self._handle
        if handle is not None:
            handle.cancel()

    def handle_message(self, message: PushMessage) -> None:
        if self._cancelled.is_set() or self._stop_requested.is_set():
            # Already unwinding; leave the message for redelivery.
            message.nack()
            return
        try:
            record = decode_push_message(message.data, shard_id=self.subscription_id)
            self._dispatcher.dispatch(record)
        except Exception as exc:
            logger.error(
                "pushconsumer: message on subscription %s failed: %s",
                self.subscription_id,
                exc,
            )
            message.nack()
            self._metrics.inc_nacks(self.table_name)
            self._fail(exc)
            return
        message.ack()
        self._metrics.inc_acks(self.table_name)

    def _fail(self, exc: BaseException) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            self._failure = exc
            cancel_fn = self._cancel_fn
            handle = self._handle
        if cancel_fn is not None:
            cancel_fn()
        if handle is not None:
            handle.cancel()


__all__ = [
    "PushConsumer",
    "PushMessage",
    "PushTopicClient",
    "SubscriptionHandle",
    "decode_push_message",
]
