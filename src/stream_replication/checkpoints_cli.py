"""Command line interface for inspecting and resetting shard checkpoints."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from .config import load_settings
from .streams.checkpoint import PersistentCheckpointStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream replication checkpoint tool")
    parser.add_argument(
        "--dir",
        help="Checkpoint directory (defaults to CHECKPOINT_DIR)",
        default=None,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Print the checkpoints of a table")
    show_parser.add_argument("--table", required=True, help="Replicated table name")

    reset_parser = subparsers.add_parser(
        "reset", help="Rewind or clear the checkpoint of one shard"
    )
    reset_parser.add_argument("--table", required=True, help="Replicated table name")
    reset_parser.add_argument("--shard", required=True, help="Shard id")
    reset_parser.add_argument(
        "--expected",
        default=None,
        help="Sequence number currently stored; required unless --force",
    )
    reset_parser.add_argument(
        "--new",
        default=None,
        help="Sequence number to rewind to; omit to clear the checkpoint",
    )
    reset_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip the expected-value guard",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    directory = Path(args.dir) if args.dir else load_settings().checkpoint_dir
    store = PersistentCheckpointStore(directory / f"{args.table}.json")

    if args.command == "show":
        print(json.dumps(store.snapshot(), indent=2, sort_keys=True))
        return 0

    if args.command == "reset":
        try:
            store.reset(
                args.shard,
                expected=args.expected,
                new=args.new,
                force=args.force,
            )
        except ValueError as exc:
            print(f"Refusing to reset shard {args.shard}: {exc}", file=sys.stderr)
            return 2
        if args.new is None:
            print(f"Cleared checkpoint for shard {args.shard}")
        else:
            print(f"Reset checkpoint for shard {args.shard} to {args.new}")
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    sys.exit(main())
