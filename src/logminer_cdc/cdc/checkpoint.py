"""Offset store implementations for resumable mining positions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

from .offset import Offset

logger = logging.getLogger(__name__)


class OffsetStore(Protocol):
    """Persistence backend used to store and retrieve source offsets."""

    def load(self, source_name: str) -> Optional[Offset]: ...

    def save(self, source_name: str, offset: Offset) -> None: ...

    def reset(
        self,
        source_name: str,
        *,
        expected: Optional[Offset] = None,
        new_offset: Optional[Offset] = None,
        force: bool = False,
    ) -> None: ...


def _check_reset(
    current: Optional[Offset],
    expected: Optional[Offset],
    new_offset: Optional[Offset],
    force: bool,
) -> None:
    if force:
        return
    if current is None:
        if expected is not None:
            raise ValueError("offset missing; supply force=True to reset")
        return
    if expected is None or expected != current:
        raise ValueError("unexpected offset value")
    if new_offset is not None and new_offset > current:
        raise ValueError("new offset must not exceed current value")


class InMemoryOffsetStore:
    """Volatile offset store keeping positions in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._offsets: Dict[str, Offset] = {}

    def load(self, source_name: str) -> Optional[Offset]:
        with self._lock:
            return self._offsets.get(source_name)

    def save(self, source_name: str, offset: Offset) -> None:
        with self._lock:
            current = self._offsets.get(source_name)
            if current is None or offset > current:
                self._offsets[source_name] = offset

    def reset(
        self,
        source_name: str,
        *,
        expected: Optional[Offset] = None,
        new_offset: Optional[Offset] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._offsets.get(source_name)
            _check_reset(current, expected, new_offset, force)
            if new_offset is None:
                self._offsets.pop(source_name, None)
            else:
                self._offsets[source_name] = new_offset


class PersistentOffsetStore:
    """Durable offset store that persists positions to disk atomically."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._offsets: Dict[str, Offset] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create offset directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    def load(self, source_name: str) -> Optional[Offset]:
        with self._lock:
            return self._offsets.get(source_name)

    def save(self, source_name: str, offset: Offset) -> None:
        with self._lock:
            current = self._offsets.get(source_name)
            if current is not None and offset <= current:
                return
            self._offsets[source_name] = offset
            self._write_locked()

    def reset(
        self,
        source_name: str,
        *,
        expected: Optional[Offset] = None,
        new_offset: Optional[Offset] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._offsets.get(source_name)
            _check_reset(current, expected, new_offset, force)
            if new_offset is None:
                if current is None:
                    return
                self._offsets.pop(source_name, None)
            else:
                self._offsets[source_name] = new_offset
            self._write_locked()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("failed to load offset file %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("offset file %s has invalid format; ignoring", self._path)
            return
        loaded: Dict[str, Offset] = {}
        for key, value in data.items():
            if not isinstance(key, str) or not isinstance(value, dict):
                continue
            try:
                loaded[key] = Offset.from_dict(value)
            except ValueError as exc:
                logger.warning("skipping offset %s in %s: %s", key, self._path, exc)
        with self._lock:
            self._offsets = loaded

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        payload = {name: offset.to_dict() for name, offset in self._offsets.items()}
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(payload, tmp, sort_keys=True)
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
            logger.error("failed to persist offset file %s: %s", self._path, exc)
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


__all__ = ["InMemoryOffsetStore", "OffsetStore", "PersistentOffsetStore"]
