"""Pluggable persistence for analytics snapshots.

Stores deal in plain JSON-compatible dictionaries keyed by a resource name
(``success-rates`` or ``flakiness-report``). Each resource has its own
re-entrant lock so read-modify-write cycles on one resource are serialised
within a process.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

SUCCESS_RATES_RESOURCE = "success-rates"
FLAKINESS_REPORT_RESOURCE = "flakiness-report"

T = TypeVar("T")


class PersistenceError(RuntimeError):
    """Raised when a snapshot cannot be read, decoded or written."""


class SnapshotStore(Protocol):
    """Read/write interface shared by the tracker and the analyzer."""

    def read(self, name: str) -> Optional[Dict[str, Any]]:
        ...

    def write(self, name: str, payload: Dict[str, Any]) -> None:
        ...

    def lock(self, name: str) -> threading.RLock:
        ...


class _LockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, name: str) -> threading.RLock:
        with self._guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]


class InMemoryStore:
    """Store keeping serialised payloads in a dictionary, used by tests."""

    def __init__(self) -> None:
        self._payloads: Dict[str, str] = {}
        self._locks = _LockRegistry()

    def read(self, name: str) -> Optional[Dict[str, Any]]:
        raw = self._payloads.get(name)
        if raw is None:
            return None
        return json.loads(raw)

    def write(self, name: str, payload: Dict[str, Any]) -> None:
        self._payloads[name] = json.dumps(payload)

    def lock(self, name: str) -> threading.RLock:
        return self._locks.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._payloads


class JsonFileStore:
    """Persist each resource as ``<results_dir>/<name>.json``.

    Files are fully overwritten on every write. The payload is written to a
    temporary file in the same directory and moved into place with
    :func:`os.replace`, so readers see either the old or the new document.
    """

    def __init__(self, results_dir: Path) -> None:
        self.results_dir = Path(results_dir)
        self._locks = _LockRegistry()

    def path_for(self, name: str) -> Path:
        return self.results_dir / f"{name}.json"

    def read(self, name: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(name)
        if not path.exists():
            return None
        raw = _retry_once(f"read {path}", lambda: path.read_text(encoding="utf-8"))
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise PersistenceError(f"Snapshot {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PersistenceError(f"Snapshot {path} does not contain a JSON object")
        return payload

    def write(self, name: str, payload: Dict[str, Any]) -> None:
        path = self.path_for(name)
        document = json.dumps(payload, indent=2)
        _retry_once(f"write {path}", lambda: self._replace(path, document))
        logger.debug("Saved %s to %s", name, path)

    def lock(self, name: str) -> threading.RLock:
        return self._locks.get(name)

    def _replace(self, path: Path, document: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(document)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def _retry_once(action: str, operation: Callable[[], T]) -> T:
    try:
        return operation()
    except OSError as first_error:
        logger.warning("Retrying failed %s: %s", action, first_error)
        try:
            return operation()
        except OSError as exc:
            raise PersistenceError(f"Could not {action}: {exc}") from exc


@contextmanager
def locked(store: SnapshotStore, *names: str) -> Iterator[None]:
    """Hold the locks of several resources, always acquired in sorted order."""

    acquired = []
    try:
        for name in sorted(set(names)):
            resource_lock = store.lock(name)
            resource_lock.acquire()
            acquired.append(resource_lock)
        yield
    finally:
        for resource_lock in reversed(acquired):
            resource_lock.release()
