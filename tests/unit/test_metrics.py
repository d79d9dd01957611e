import pytest

from stream_replication.metrics import ReplicationMetrics


@pytest.mark.unit
def test_counters_are_labelled_by_table():
    metrics = ReplicationMetrics()

    metrics.inc_records("orders", 2)
    metrics.inc_records("profiles")
    metrics.inc_yields("orders", 0)

    assert metrics.snapshot() == {"records_dispatched_total": 3}
    value = metrics.registry.get_sample_value(
        "stream_replication_records_dispatched_total", {"table": "orders"}
    )
    assert value == 2.0


@pytest.mark.unit
def test_instances_do_not_share_registries():
    first = ReplicationMetrics()
    second = ReplicationMetrics()

    first.inc_acks("orders")

    assert second.snapshot() == {}
