"""Runtime configuration helpers for the stream replication service."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError
from .streams.records import Checkpoint

STREAM_TYPE_DYNAMO = "dynamo"
STREAM_TYPE_SPANNER = "spanner"


class Direction(str, Enum):
    """Which side of the replication pair produces the changes."""

    PULL_FROM_SOURCE = "pull"
    PUSH_FROM_TARGET = "push"


@dataclass(frozen=True)
class PushTopic:
    project: str
    subscription_id: str


@dataclass(frozen=True)
class StreamDefinition:
    """One configured stream; read-only input to the runtime."""

    enabled: bool
    direction: Direction
    table_name: str
    source_stream_id: str = ""
    initial_checkpoint: Optional[Checkpoint] = None
    push_topic: Optional[PushTopic] = None


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    streams_config_path: Path
    aws_region: str
    dynamodb_endpoint_url: str
    adapter_base_url: str
    adapter_request_timeout_seconds: float
    shard_refresh_initial_delay_seconds: float
    shard_refresh_interval_seconds: float
    shard_max_empty_reads: int
    shard_yield_sleep_seconds: float
    scheduler_idle_sleep_seconds: float
    checkpoint_backend: str
    checkpoint_dir: Path
    checkpoint_fsync: bool
    metrics_port: int = 0
    log_level: str = "INFO"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_checkpoint_backend(value: Optional[str]) -> str:
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "file"


def _coerce_log_level(value: Optional[str]) -> str:
    if not value:
        return "INFO"
    normalized = value.strip().upper()
    if logging.getLevelName(normalized) == f"Level {normalized}":
        return "INFO"
    return normalized


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    streams_config_path = Path(os.getenv("STREAMS_CONFIG_PATH", "streams.json"))
    aws_region = os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1"))
    dynamodb_endpoint_url = os.getenv("DYNAMODB_ENDPOINT_URL", "").strip()
    adapter_base_url = os.getenv("ADAPTER_BASE_URL", "http://localhost:9050").strip()
    adapter_request_timeout_seconds = float(
        os.getenv("ADAPTER_REQUEST_TIMEOUT_SECONDS", "10")
    )
    shard_refresh_initial_delay_seconds = float(
        os.getenv("SHARD_REFRESH_INITIAL_DELAY_SECONDS", "1")
    )
    shard_refresh_interval_seconds = float(
        os.getenv("SHARD_REFRESH_INTERVAL_SECONDS", "10")
    )
    shard_max_empty_reads = max(1, int(os.getenv("SHARD_MAX_EMPTY_READS", "5")))
    shard_yield_sleep_seconds = float(os.getenv("SHARD_YIELD_SLEEP_SECONDS", "5"))
    scheduler_idle_sleep_seconds = float(
        os.getenv("SCHEDULER_IDLE_SLEEP_SECONDS", "1")
    )
    checkpoint_backend = _coerce_checkpoint_backend(os.getenv("CHECKPOINT_BACKEND"))
    checkpoint_dir = Path(os.getenv("CHECKPOINT_DIR", "checkpoints"))
    checkpoint_fsync = _as_bool(os.getenv("CHECKPOINT_FSYNC"), False)
    metrics_port = int(os.getenv("METRICS_PORT", "0"))
    log_level = _coerce_log_level(os.getenv("LOG_LEVEL"))

    if adapter_base_url.endswith("/"):
        adapter_base_url = adapter_base_url.rstrip("/")

    return Settings(
        streams_config_path=streams_config_path,
        aws_region=aws_region,
        dynamodb_endpoint_url=dynamodb_endpoint_url,
        adapter_base_url=adapter_base_url,
        adapter_request_timeout_seconds=adapter_request_timeout_seconds,
        shard_refresh_initial_delay_seconds=shard_refresh_initial_delay_seconds,
        shard_refresh_interval_seconds=shard_refresh_interval_seconds,
        shard_max_empty_reads=shard_max_empty_reads,
        shard_yield_sleep_seconds=shard_yield_sleep_seconds,
        scheduler_idle_sleep_seconds=scheduler_idle_sleep_seconds,
        checkpoint_backend=checkpoint_backend,
        checkpoint_dir=checkpoint_dir,
        checkpoint_fsync=checkpoint_fsync,
        metrics_port=metrics_port,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# Stream definitions


def _parse_checkpoint(raw: object) -> Optional[Checkpoint]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigurationError("checkpoint must be an object")
    shard_id = raw.get("last_shard_id")
    sequence_number = raw.get("last_sequence_number")
    if not shard_id and not sequence_number:
        return None
    if not shard_id or not sequence_number:
        raise ConfigurationError(
            "checkpoint requires both last_shard_id and last_sequence_number"
        )
    return Checkpoint(shard_id=str(shard_id), sequence_number=str(sequence_number))


def _parse_direction(value: object) -> Direction:
    normalized = str(value or STREAM_TYPE_DYNAMO).strip().lower()
    if normalized in {STREAM_TYPE_DYNAMO, Direction.PULL_FROM_SOURCE.value}:
        return Direction.PULL_FROM_SOURCE
    if normalized in {STREAM_TYPE_SPANNER, Direction.PUSH_FROM_TARGET.value}:
        return Direction.PUSH_FROM_TARGET
    raise ConfigurationError(f"unsupported stream type {value!r}")


def parse_stream_definition(raw: Mapping[str, Any]) -> StreamDefinition:
    """Build a :class:`StreamDefinition` from one entry of the streams file."""
    if not isinstance(raw, Mapping):
        raise ConfigurationError("stream definition must be an object")
    table_name = str(raw.get("dynamo_table_name") or "").strip()
    if not table_name:
        raise ConfigurationError("stream definition requires dynamo_table_name")
    enabled = bool(raw.get("enabled", False))
    direction = _parse_direction(raw.get("type"))

    if direction is Direction.PULL_FROM_SOURCE:
        stream_arn = str(raw.get("stream_arn") or "").strip()
        if enabled and not stream_arn:
            raise ConfigurationError(f"stream for table {table_name} requires stream_arn")
        return StreamDefinition(
            enabled=enabled,
            direction=direction,
            table_name=table_name,
            source_stream_id=stream_arn,
            initial_checkpoint=_parse_checkpoint(raw.get("checkpoint")),
        )

    project = str(raw.get("project") or "").strip()
    subscription_id = str(raw.get("subscriptionId") or "").strip()
    if enabled and not (project and subscription_id):
        raise ConfigurationError(
            f"stream for table {table_name} requires project and subscriptionId"
        )
    return StreamDefinition(
        enabled=enabled,
        direction=direction,
        table_name=table_name,
        push_topic=PushTopic(project=project, subscription_id=subscription_id),
    )


def load_stream_definitions(path: Path | str) -> Tuple[StreamDefinition, ...]:
    """Read the ``{"streams": [...]}`` document at ``path``."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"unable to read streams config {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"streams config {path} is not valid JSON") from exc
    if not isinstance(data, Mapping) or not isinstance(data.get("streams"), list):
        raise ConfigurationError(f"streams config {path} must contain a streams list")
    definitions: List[StreamDefinition] = []
    for index, entry in enumerate(data["streams"]):
        try:
            definitions.append(parse_stream_definition(entry))
        except ConfigurationError as exc:
            raise ConfigurationError(f"streams[{index}]: {exc}") from exc
    return tuple(definitions)
