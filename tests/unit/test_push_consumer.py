import json
from concurrent.futures import CancelledError

import pytest

from stream_replication.errors import DecodeError, PushConsumerError
from stream_replication.metrics import ReplicationMetrics
from stream_replication.streams.dispatcher import RecordDispatcher
from stream_replication.streams.push import PushConsumer, decode_push_message
from stream_replication.streams.records import EventKind


class FakeMessage:
    def __init__(self, data):
        self.data = data
        self.acks = 0
        self.nacks = 0

    def ack(self):
        self.acks += 1

    def nack(self):
        self.nacks += 1


class FakeHandle:
    """Delivers queued messages one at a time from ``result``."""

    def __init__(self, callback, messages, raise_on_cancel=False):
        self._callback = callback
        self._messages = list(messages)
        self._raise_on_cancel = raise_on_cancel
        self.cancel_calls = 0

    def result(self, timeout=None):
        for message in self._messages:
            if self.cancel_calls:
                break
            self._callback(message)
        if self.cancel_calls and self._raise_on_cancel:
            raise CancelledError()

    def cancel(self):
        self.cancel_calls += 1


class FakeTopicClient:
    def __init__(self, messages, **handle_kwargs):
        self.messages = messages
        self.handle_kwargs = handle_kwargs
        self.subscriptions = []
        self.handle = None

    def subscribe(self, subscription_id, callback, *, max_outstanding=1):
        self.subscriptions.append((subscription_id, max_outstanding))
        self.handle = FakeHandle(callback, self.messages, **self.handle_kwargs)
        return self.handle


class RecordingAdapter:
    def __init__(self, fail=False):
        self.puts = []
        self.fail = fail

    def put(self, table_name, item):
        if self.fail:
            raise RuntimeError("source store rejected write")
        self.puts.append((table_name, item))

    def update(self, table_name, key, attribute_updates):  # pragma: no cover
        raise AssertionError("update is not used by the dispatcher")

    def delete(self, table_name, key):  # pragma: no cover
        raise AssertionError("deletes are never applied")


def _payload(event_id, name="INSERT", **image):
    return json.dumps(
        {
            "Keys": {"id": event_id},
            "NewImage": {"id": event_id, **image},
            "EventName": name,
            "EventID": event_id,
            "EventSourceArn": "projects/p/subscriptions/orders-sub",
        }
    ).encode("utf-8")


def _consumer(client, adapter, metrics=None):
    metrics = metrics or ReplicationMetrics()
    dispatcher = RecordDispatcher("orders", adapter, metrics=metrics)
    return PushConsumer("orders-sub", client, dispatcher, metrics=metrics)


class CancelCounter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


@pytest.mark.unit
def test_decode_marshals_plain_json_into_attribute_values():
    record = decode_push_message(
        _payload("k1", qty=3, price=1.5, active=True, tags=["a"]), shard_id="orders-sub"
    )

    assert record.event_kind is EventKind.INSERT
    assert record.keys == {"id": {"S": "k1"}}
    assert record.new_image == {
        "id": {"S": "k1"},
        "qty": {"N": "3"},
        "price": {"N": "1.5"},
        "active": {"BOOL": True},
        "tags": {"L": [{"S": "a"}]},
    }
    assert record.old_image is None
    assert record.sequence_number == "k1"
    assert record.event_source == "projects/p/subscriptions/orders-sub"


@pytest.mark.unit
@pytest.mark.parametrize(
    "data",
    [b"not json", b"[1, 2]", b'{"EventName": "TRUNCATE"}', b'{"EventName": "INSERT", "Keys": 5}'],
)
def test_decode_rejects_malformed_payloads(data):
    with pytest.raises(DecodeError):
        decode_push_message(data, shard_id="orders-sub")


@pytest.mark.unit
def test_messages_are_applied_and_acked_one_at_a_time():
    messages = [FakeMessage(_payload("k1")), FakeMessage(_payload("k2", name="MODIFY"))]
    client = FakeTopicClient(messages)
    adapter = RecordingAdapter()
    metrics = ReplicationMetrics()

    _consumer(client, adapter, metrics).start()

    assert client.subscriptions == [("orders-sub", 1)]
    assert [item["id"] for _table, item in adapter.puts] == [{"S": "k1"}, {"S": "k2"}]
    assert [(m.acks, m.nacks) for m in messages] == [(1, 0), (1, 0)]
    assert metrics.snapshot()["push_acks_total"] == 2


@pytest.mark.unit
def test_decode_failure_nacks_once_and_cancels_once():
    bad = FakeMessage(b"{broken")
    after = FakeMessage(_payload("k2"))
    client = FakeTopicClient([bad, after])
    adapter = RecordingAdapter()
    cancel = CancelCounter()

    with pytest.raises(PushConsumerError) as excinfo:
        _consumer(client, adapter).start(cancel)

    assert isinstance(excinfo.value.__cause__, DecodeError)
    assert (bad.acks, bad.nacks) == (0, 1)
    assert cancel.calls == 1
    assert client.handle.cancel_calls == 1
    assert (after.acks, after.nacks) == (0, 0)
    assert adapter.puts == []


@pytest.mark.unit
def test_dispatch_failure_nacks_and_cancels():
    message = FakeMessage(_payload("k1"))
    client = FakeTopicClient([message], raise_on_cancel=True)
    metrics = ReplicationMetrics()
    cancel = CancelCounter()

    with pytest.raises(PushConsumerError):
        _consumer(client, RecordingAdapter(fail=True), metrics).start(cancel)

    assert message.nacks == 1
    assert message.acks == 0
    assert cancel.calls == 1
    assert metrics.snapshot()["push_nacks_total"] == 1


@pytest.mark.unit
def test_message_after_failure_is_nacked_without_dispatch():
    client = FakeTopicClient([])
    adapter = RecordingAdapter()
    consumer = _consumer(client, adapter)
    cancel = CancelCounter()
    consumer.start(cancel)

    consumer.handle_message(FakeMessage(b"nope"))
    late = FakeMessage(_payload("k9"))
    consumer.handle_message(late)

    assert late.nacks == 1
    assert adapter.puts == []
    assert cancel.calls == 1


@pytest.mark.unit
def test_stop_before_start_cancels_subscription_immediately():
    message = FakeMessage(_payload("k1"))
    client = FakeTopicClient([message], raise_on_cancel=True)
    consumer = _consumer(client, RecordingAdapter())

    consumer.stop()
    consumer.start()

    assert client.handle.cancel_calls == 1
    assert (message.acks, message.nacks) == (0, 0)


@pytest.mark.unit
def test_subscription_error_is_wrapped():
    class BrokenHandle:
        def result(self, timeout=None):
            raise OSError("stream closed")

        def cancel(self):
            pass

    class BrokenClient:
        def subscribe(self, subscription_id, callback, *, max_outstanding=1):
            return BrokenHandle()

    with pytest.raises(PushConsumerError) as excinfo:
        _consumer(BrokenClient(), RecordingAdapter()).start()

    assert isinstance(excinfo.value.__cause__, OSError)
