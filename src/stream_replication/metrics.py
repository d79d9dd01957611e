"""Prometheus counters for the replication pipelines."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, start_http_server


class ReplicationMetrics:
    """Wraps Prometheus counters and keeps an in-process snapshot for tests.

    Each instance owns its registry so several runtimes (or tests) can coexist
    in one interpreter without duplicate-registration errors.
    """

    def __init__(
        self,
        namespace: str = "stream_replication",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._records = self._build_counter(
            f"{namespace}_records_dispatched_total", "Change records applied to the target"
        )
        self._removes = self._build_counter(
            f"{namespace}_removes_skipped_total", "Remove events observed but not applied"
        )
        self._errors = self._build_counter(
            f"{namespace}_dispatch_errors_total", "Change records rejected by the target"
        )
        self._discovered = self._build_counter(
            f"{namespace}_shards_discovered_total", "Shards added to the discovered set"
        )
        self._processed = self._build_counter(
            f"{namespace}_shards_processed_total", "Shards consumed to exhaustion"
        )
        self._yields = self._build_counter(
            f"{namespace}_shard_yields_total", "Voluntary yields of quiet shards"
        )
        self._acks = self._build_counter(
            f"{namespace}_push_acks_total", "Push messages acknowledged"
        )
        self._nacks = self._build_counter(
            f"{namespace}_push_nacks_total", "Push messages negatively acknowledged"
        )
        self._lock = Lock()
        self._snapshot: Dict[str, float] = defaultdict(float)

    def _build_counter(self, name: str, documentation: str) -> Counter:
        return Counter(name, documentation, ["table"], registry=self.registry)

    def _inc(self, counter: Counter, key: str, table: str, amount: int) -> None:
        if amount <= 0:
            return
        counter.labels(table=table).inc(amount)
        with self._lock:
            self._snapshot[key] += amount

    def inc_records(self, table: str, amount: int = 1) -> None:
        self._inc(self._records, "records_dispatched_total", table, amount)

    def inc_removes_skipped(self, table: str, amount: int = 1) -> None:
        self._inc(self._removes, "removes_skipped_total", table, amount)

    def inc_errors(self, table: str, amount: int = 1) -> None:
        self._inc(self._errors, "dispatch_errors_total", table, amount)

    def inc_discovered(self, table: str, amount: int = 1) -> None:
        self._inc(self._discovered, "shards_discovered_total", table, amount)

    def inc_processed(self, table: str, amount: int = 1) -> None:
        self._inc(self._processed, "shards_processed_total", table, amount)

    def inc_yields(self, table: str, amount: int = 1) -> None:
        self._inc(self._yields, "shard_yields_total", table, amount)

    def inc_acks(self, table: str, amount: int = 1) -> None:
        self._inc(self._acks, "push_acks_total", table, amount)

    def inc_nacks(self, table: str, amount: int = 1) -> None:
        self._inc(self._nacks, "push_nacks_total", table, amount)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._snapshot)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry over HTTP for Prometheus scraping."""
        start_http_server(port, addr=addr, registry=self.registry)


__all__ = ["ReplicationMetrics"]
