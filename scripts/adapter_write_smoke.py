#!/usr/bin/env python
"""Send a single replicated-style write to the adapter fronting the target store."""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from typing import Dict, List

from stream_replication.clients import HttpAdapterSettings, HttpTargetAdapter
from stream_replication.config import load_settings
from stream_replication.errors import DispatchError
from stream_replication.metrics import ReplicationMetrics
from stream_replication.streams import ChangeRecord, EventKind, RecordDispatcher


def _parse_attrs(pairs: List[str]) -> Dict[str, Dict[str, str]]:
    attributes: Dict[str, Dict[str, str]] = {}
    for item in pairs:
        if "=" not in item:
            raise ValueError(f"Invalid attribute '{item}'. Expected format key=value")
        key, value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Attribute key missing in '{item}'")
        attributes[key] = {"S": value}
    return attributes


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply one INSERT record to a table through the adapter write API",
    )
    parser.add_argument("--table", required=True, help="Target table name")
    parser.add_argument("--key-name", default="id", help="Partition key attribute")
    parser.add_argument(
        "--key",
        default=None,
        help="Partition key value (defaults to a random smoke-<uuid> value)",
    )
    parser.add_argument(
        "--attr",
        dest="attrs",
        action="append",
        default=["source=adapter_write_smoke"],
        help="String attribute in key=value form. Repeat as needed.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the PutItem request body and exit",
    )
    args = parser.parse_args()

    try:
        attributes = _parse_attrs(args.attrs)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    key_value = args.key or f"smoke-{uuid.uuid4()}"
    keys = {args.key_name: {"S": key_value}}
    item = {**attributes, **keys}

    if args.dry_run:
        print("Dry run PutItem body:")
        print(json.dumps({"TableName": args.table, "Item": item}, indent=2))
        return 0

    settings = load_settings()
    if not settings.adapter_base_url:
        print("Error: ADAPTER_BASE_URL is not configured", file=sys.stderr)
        return 2

    metrics = ReplicationMetrics()
    record = ChangeRecord(
        shard_id="adapter-write-smoke",
        event_kind=EventKind.INSERT,
        keys=keys,
        new_image=item,
        sequence_number="0",
    )
    with HttpTargetAdapter(
        HttpAdapterSettings(
            base_url=settings.adapter_base_url,
            request_timeout_seconds=settings.adapter_request_timeout_seconds,
        )
    ) as adapter:
        dispatcher = RecordDispatcher(args.table, adapter, metrics=metrics)
        try:
            dispatcher.dispatch(record)
        except DispatchError as exc:
            print(f"Adapter rejected the write: {exc.__cause__ or exc}", file=sys.stderr)
            return 1

    snapshot = metrics.snapshot()
    print("Adapter write smoke test completed.")
    print(
        f"Table={args.table} Key={key_value}"
        f" Dispatched={int(snapshot.get('records_dispatched_total', 0))}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
