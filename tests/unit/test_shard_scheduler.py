import threading

import pytest

from stream_replication.errors import DispatchError, ShardReadError
from stream_replication.metrics import ReplicationMetrics
from stream_replication.streams.checkpoint import (
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from stream_replication.streams.dispatcher import RecordDispatcher
from stream_replication.streams.records import IteratorType, RecordsPage, Shard
from stream_replication.streams.shards import (
    DEFAULT_YIELD_SLEEP_SECONDS,
    ShardRegistry,
    ShardScheduler,
)


class FakeStreamClient:
    """Serves pre-canned pages per shard; open shards never run out."""

    def __init__(self, pages, open_shards=()):
        self.pages = {shard_id: list(batches) for shard_id, batches in pages.items()}
        self.open_shards = set(open_shards)
        self.iterator_calls = []
        self.records_calls = []
        self.fail_records = False

    def describe_topology(self, exclusive_start_shard_id=None):  # pragma: no cover
        raise AssertionError("scheduler must not describe topology")

    def get_iterator(self, shard_id, iterator_type, sequence_number=None):
        self.iterator_calls.append((shard_id, iterator_type, sequence_number))
        return f"{shard_id}:0"

    def get_records(self, iterator):
        self.records_calls.append(iterator)
        if self.fail_records:
            raise ConnectionError("stream endpoint unreachable")
        shard_id, index = iterator.rsplit(":", 1)
        position = int(index)
        batches = self.pages.get(shard_id, [])
        records = batches[position] if position < len(batches) else []
        has_more = position + 1 < len(batches) or shard_id in self.open_shards
        next_iterator = f"{shard_id}:{position + 1}" if has_more else None
        return RecordsPage(records=records, next_iterator=next_iterator)


class RecordingAdapter:
    def __init__(self, fail_on=None):
        self.puts = []
        self.deletes = []
        self.fail_on = fail_on

    def put(self, table_name, item):
        if self.fail_on is not None and item["id"]["S"] == self.fail_on:
            raise RuntimeError("write rejected")
        self.puts.append((table_name, item))

    def update(self, table_name, key, attribute_updates):  # pragma: no cover
        raise AssertionError("update is not used by the dispatcher")

    def delete(self, table_name, key):
        self.deletes.append((table_name, key))


def _stream_record(seq, key=None, kind="INSERT"):
    key = key or seq
    body = {"Keys": {"id": {"S": key}}, "SequenceNumber": seq}
    if kind == "REMOVE":
        body["OldImage"] = {"id": {"S": key}}
    else:
        body["NewImage"] = {"id": {"S": key}}
    return {"eventID": f"evt-{seq}", "eventName": kind, "dynamodb": body}


def _scheduler(client, adapter=None, **kwargs):
    adapter = adapter or RecordingAdapter()
    metrics = kwargs.pop("metrics", None) or ReplicationMetrics()
    kwargs.setdefault("yield_sleep_seconds", 0.0)
    dispatcher = RecordDispatcher("orders", adapter, metrics=metrics)
    return ShardScheduler("arn:stream/orders", client, dispatcher, metrics=metrics, **kwargs)


def _put_keys(adapter):
    return [item["id"]["S"] for _table, item in adapter.puts]


@pytest.mark.unit
def test_child_waits_until_parent_is_processed():
    client = FakeStreamClient(
        {"A": [[_stream_record("1", "a1")]], "B": [[_stream_record("2", "b1")]]}
    )
    adapter = RecordingAdapter()
    scheduler = _scheduler(client, adapter)
    scheduler.registry.propose(Shard("A"))
    scheduler.registry.propose(Shard("B", parent_shard_id="A"))

    scheduler.run_pass()

    assert scheduler.registry.state_of("A") == "processed"
    assert scheduler.registry.state_of("B") == "discovered"
    assert _put_keys(adapter) == ["a1"]

    scheduler.run_pass()

    assert scheduler.registry.state_of("B") == "processed"
    assert _put_keys(adapter) == ["a1", "b1"]


@pytest.mark.unit
def test_child_of_open_parent_is_never_promoted():
    client = FakeStreamClient({"A": []}, open_shards={"A"})
    scheduler = _scheduler(client, max_empty_reads=2)
    scheduler.registry.propose(Shard("A"))
    scheduler.registry.propose(Shard("B", parent_shard_id="A"))

    for _ in range(3):
        scheduler.run_pass()

    assert scheduler.registry.state_of("A") == "in_process"
    assert scheduler.registry.state_of("B") == "discovered"
    assert all(call[0] == "A" for call in client.iterator_calls)


@pytest.mark.unit
def test_shard_without_checkpoint_starts_at_trim_horizon():
    client = FakeStreamClient({"A": [[_stream_record("5")]]})
    scheduler = _scheduler(client)

    assert scheduler.consume(Shard("A")) is True

    assert client.iterator_calls == [("A", IteratorType.TRIM_HORIZON, None)]
    assert scheduler.checkpoints.load("A") == "5"


@pytest.mark.unit
def test_checkpointed_shard_resumes_after_sequence_number():
    store = InMemoryCheckpointStore()
    store.save("A", "100")
    client = FakeStreamClient({"A": [[_stream_record("101")]]})
    scheduler = _scheduler(client, checkpoint_store=store)

    scheduler.consume(Shard("A"))

    assert client.iterator_calls == [("A", IteratorType.AFTER_SEQUENCE_NUMBER, "100")]
    assert store.load("A") == "101"


@pytest.mark.unit
def test_quiet_shard_yields_after_consecutive_empty_reads():
    client = FakeStreamClient({"A": []}, open_shards={"A"})
    adapter = RecordingAdapter()
    metrics = ReplicationMetrics()
    scheduler = _scheduler(client, adapter, metrics=metrics)

    assert scheduler.consume(Shard("A")) is False

    assert len(client.records_calls) == 5
    assert adapter.puts == []
    assert scheduler.checkpoints.load("A") is None
    assert metrics.snapshot()["shard_yields_total"] == 1


class RecordingEvent(threading.Event):
    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.is_set()


@pytest.mark.unit
def test_yield_pauses_on_cancel_token():
    client = FakeStreamClient({"A": []}, open_shards={"A"})
    scheduler = _scheduler(client, yield_sleep_seconds=5.0)
    cancel = RecordingEvent()

    assert scheduler.consume(Shard("A"), cancel) is False

    assert cancel.waits == [5.0]
    assert len(client.records_calls) == 5


@pytest.mark.unit
def test_default_yield_pause_matches_documented_value():
    dispatcher = RecordDispatcher("orders", RecordingAdapter())
    cancel = RecordingEvent()
    client = FakeStreamClient({"A": []}, open_shards={"A"})
    scheduler = ShardScheduler("arn:stream/orders", client, dispatcher)

    scheduler.consume(Shard("A"), cancel)

    assert cancel.waits == [DEFAULT_YIELD_SLEEP_SECONDS]
    assert DEFAULT_YIELD_SLEEP_SECONDS == 5.0


@pytest.mark.unit
def test_records_reset_the_empty_read_counter():
    pages = [[], [], [], [], [_stream_record("7")]]
    client = FakeStreamClient({"A": pages}, open_shards={"A"})
    scheduler = _scheduler(client)

    assert scheduler.consume(Shard("A")) is False

    # four empty reads, one page with data, then five more empty reads
    assert len(client.records_calls) == 10
    assert scheduler.checkpoints.load("A") == "7"


@pytest.mark.unit
def test_checkpoint_advances_after_each_applied_record():
    saves = []

    class SpyStore(InMemoryCheckpointStore):
        def save(self, shard_id, sequence_number):
            saves.append((shard_id, sequence_number))
            super().save(shard_id, sequence_number)

    client = FakeStreamClient(
        {"A": [[_stream_record("10"), _stream_record("11")], [_stream_record("12")]]}
    )
    scheduler = _scheduler(client, checkpoint_store=SpyStore())

    assert scheduler.consume(Shard("A")) is True

    assert saves == [("A", "10"), ("A", "11"), ("A", "12")]


@pytest.mark.unit
def test_dispatch_failure_aborts_and_keeps_last_good_checkpoint():
    client = FakeStreamClient(
        {"A": [[_stream_record("10", "ok"), _stream_record("11", "bad"), _stream_record("12")]]}
    )
    adapter = RecordingAdapter(fail_on="bad")
    scheduler = _scheduler(client, adapter)
    scheduler.registry.propose(Shard("A"))

    with pytest.raises(DispatchError) as excinfo:
        scheduler.run_pass()

    assert excinfo.value.sequence_number == "11"
    assert scheduler.checkpoints.load("A") == "10"
    assert _put_keys(adapter) == ["ok"]
    assert scheduler.registry.state_of("A") == "in_process"


@pytest.mark.unit
def test_remove_records_advance_checkpoint_without_deleting():
    client = FakeStreamClient({"A": [[_stream_record("3", kind="REMOVE")]]})
    adapter = RecordingAdapter()
    scheduler = _scheduler(client, adapter)

    scheduler.consume(Shard("A"))

    assert adapter.deletes == []
    assert scheduler.checkpoints.load("A") == "3"


@pytest.mark.unit
def test_read_failure_raises_shard_read_error():
    client = FakeStreamClient({"A": [[_stream_record("1")]]})
    client.fail_records = True
    scheduler = _scheduler(client)

    with pytest.raises(ShardReadError) as excinfo:
        scheduler.consume(Shard("A"))

    assert excinfo.value.shard_id == "A"
    assert isinstance(excinfo.value.__cause__, ConnectionError)


@pytest.mark.unit
def test_malformed_record_raises_shard_read_error():
    client = FakeStreamClient({"A": [[{"eventName": "INSERT", "dynamodb": {}}]]})
    scheduler = _scheduler(client)

    with pytest.raises(ShardReadError):
        scheduler.consume(Shard("A"))


@pytest.mark.unit
def test_cancelled_consume_stops_before_reading():
    client = FakeStreamClient({"A": [[_stream_record("1")]]})
    scheduler = _scheduler(client)
    cancel = threading.Event()
    cancel.set()

    assert scheduler.consume(Shard("A"), cancel) is False
    assert client.records_calls == []


@pytest.mark.unit
def test_restart_resumes_from_persisted_checkpoint(tmp_path):
    path = tmp_path / "orders.json"
    first = FakeStreamClient({"A": [[_stream_record("40"), _stream_record("41")]]}, open_shards={"A"})
    _scheduler(first, checkpoint_store=PersistentCheckpointStore(path)).consume(Shard("A"))

    second = FakeStreamClient({"A": []}, open_shards={"A"})
    _scheduler(second, checkpoint_store=PersistentCheckpointStore(path)).consume(Shard("A"))

    assert second.iterator_calls == [("A", IteratorType.AFTER_SEQUENCE_NUMBER, "41")]


@pytest.mark.unit
def test_run_returns_once_cancelled():
    client = FakeStreamClient({"A": [[_stream_record("1")]]})
    scheduler = _scheduler(client, idle_sleep_seconds=0.01)
    scheduler.registry.propose(Shard("A"))
    cancel = threading.Event()

    worker = threading.Thread(target=scheduler.run, args=(cancel,), daemon=True)
    worker.start()
    for _ in range(200):
        if scheduler.registry.state_of("A") == "processed":
            break
        cancel.wait(0.01)
    cancel.set()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert scheduler.registry.state_of("A") == "processed"


@pytest.mark.unit
def test_max_empty_reads_must_be_positive():
    with pytest.raises(ValueError):
        _scheduler(FakeStreamClient({}), max_empty_reads=0)


@pytest.mark.unit
def test_shard_whose_parent_was_trimmed_is_consumed():
    client = FakeStreamClient({"C1": [[_stream_record("9", "c1")]]})
    adapter = RecordingAdapter()
    scheduler = _scheduler(client, adapter)
    scheduler.registry.propose(Shard("C1", parent_shard_id="P0"))
    scheduler.registry.record_listing(["C1"])

    scheduler.run_pass()

    assert scheduler.registry.state_of("C1") == "processed"
    assert _put_keys(adapter) == ["c1"]
