"""Checkpoint store implementations for per-shard sequence numbers."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend holding the last applied sequence number per shard."""

    def load(self, shard_id: str) -> Optional[str]: ...

    def save(self, shard_id: str, sequence_number: str) -> None: ...

    def reset(
        self,
        shard_id: str,
        *,
        expected: Optional[str] = None,
        new: Optional[str] = None,
        force: bool = False,
    ) -> None: ...

    def snapshot(self) -> Dict[str, str]: ...


def sequence_after(candidate: str, current: Optional[str]) -> bool:
    """Return True when ``candidate`` sorts strictly after ``current``.

    DynamoDB sequence numbers are decimal strings of varying width, so they
    compare numerically; anything else falls back to string ordering.
    """
    if current is None:
        return True
    if candidate.isdigit() and current.isdigit():
        return int(candidate) > int(current)
    return candidate > current


def _check_reset(
    current: Optional[str],
    *,
    expected: Optional[str],
    new: Optional[str],
    force: bool,
) -> None:
    if force:
        return
    if current is None:
        if expected is not None:
            raise ValueError("checkpoint missing; supply force=True to reset")
        return
    if expected is None or expected != current:
        raise ValueError("unexpected checkpoint value")
    if new is not None and sequence_after(new, current):
        raise ValueError("new checkpoint must not exceed current value")


class InMemoryCheckpointStore:
    """Volatile checkpoint store keeping shard positions in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, str] = {}

    def load(self, shard_id: str) -> Optional[str]:
        with self._lock:
            return self._positions.get(shard_id)

    def save(self, shard_id: str, sequence_number: str) -> None:
        with self._lock:
            if sequence_after(sequence_number, self._positions.get(shard_id)):
                self._positions[shard_id] = sequence_number

    def reset(
        self,
        shard_id: str,
        *,
        expected: Optional[str] = None,
        new: Optional[str] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(shard_id)
            _check_reset(current, expected=expected, new=new, force=force)
            if new is None:
                self._positions.pop(shard_id, None)
            else:
                self._positions[shard_id] = new

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._positions)


class PersistentCheckpointStore:
    """Durable checkpoint store that persists shard positions to disk atomically."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._positions: Dict[str, str] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create checkpoint directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def load(self, shard_id: str) -> Optional[str]:
        with self._lock:
            return self._positions.get(shard_id)

    def save(self, shard_id: str, sequence_number: str) -> None:
        with self._lock:
            if not sequence_after(sequence_number, self._positions.get(shard_id)):
                return
            self._positions[shard_id] = sequence_number
            self._write_locked()

    def reset(
        self,
        shard_id: str,
        *,
        expected: Optional[str] = None,
        new: Optional[str] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(shard_id)
            _check_reset(current, expected=expected, new=new, force=force)
            if new is None:
                if current is None:
                    return
                self._positions.pop(shard_id, None)
            else:
                self._positions[shard_id] = new
            self._write_locked()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._positions)

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "failed to load checkpoint file %s: %s", self._path, exc, exc_info=False
            )
            return
        if not isinstance(data, dict):
            logger.warning(
                "checkpoint file %s has invalid format; ignoring", self._path
            )
            return
        filtered: Dict[str, str] = {}
        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, str) and value:
                filtered[key] = value
        with self._lock:
            self._positions = filtered

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._positions, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
            if self._fsync:
                try:
                    dir_fd = os.open(self._path.parent, os.O_RDONLY)
                except OSError:  # pragma: no cover - platform dependent
                    dir_fd = None
                if dir_fd is not None:
                    try:
                        os.fsync(dir_fd)
                    finally:
                        os.close(dir_fd)
        except OSError as exc:
            logger.error("failed to persist checkpoint file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "PersistentCheckpointStore",
    "sequence_after",
]
