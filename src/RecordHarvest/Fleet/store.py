# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.store",
#   "purpose": "Persistent key/value stores shared by the coordinator and workers",
#   "sections": [
#     {"id": "persistentstore", "name": "PersistentStore", "anchor": "class-persistentstore", "kind": "protocol"},
#     {"id": "memorystore", "name": "MemoryStore", "anchor": "class-memorystore", "kind": "class"},
#     {"id": "sqlitekeyvaluestore", "name": "SQLiteKeyValueStore", "anchor": "class-sqlitekeyvaluestore", "kind": "class"},
#     {"id": "workerscope", "name": "WorkerScope", "anchor": "class-workerscope", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Persistent key/value stores shared by the fleet.

The registry, the global flags, and every worker checkpoint live in a single
key/value map. Values are JSON documents; reads return decoded copies so that
callers never alias stored state.

Key Design:
- ``get(keys)`` / ``set(mapping)`` / ``remove(keys)`` mirror the store contract
  the workers were written against.
- ``mutex()`` serialises read-modify-write sequences. The SQLite store pairs a
  process-local ``RLock`` with :func:`locks.registry_lock` so a ``stop`` issued
  from another process cannot interleave with an assignment.
- :class:`WorkerScope` carries a worker identity and namespaces its keys, so
  checkpoints of different workers never collide.

Typical Usage:
    store = SQLiteKeyValueStore(Path("state/fleet.sqlite"))
    with store.mutex():
        registry = store.get(["registry"]).get("registry", {})
        registry["next_id"] += 1
        store.set({"registry": registry})

    scope = WorkerScope(store, "T1")
    scope.set({"checkpoint": {...}})
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    ContextManager,
    Iterable,
    Iterator,
    Mapping,
    Protocol,
    runtime_checkable,
)

from .locks import registry_lock

__all__ = ["PersistentStore", "MemoryStore", "SQLiteKeyValueStore", "WorkerScope"]

logger = logging.getLogger(__name__)


@runtime_checkable
class PersistentStore(Protocol):
    """Durable key/value map surviving worker restarts."""

    def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for ``keys``; missing keys are omitted."""

    def set(self, values: Mapping[str, Any]) -> None:
        """Write every entry of ``values`` in one step."""

    def remove(self, keys: Iterable[str]) -> None:
        """Delete ``keys``; unknown keys are ignored."""

    def mutex(self) -> ContextManager[None]:
        """Return a reentrant context manager serialising read-modify-write."""


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class _ReentrantMutex:
    """Thread ``RLock`` with an optional outer lock taken on first entry only."""

    def __init__(self, outer: Callable[[], ContextManager[None]] | None = None) -> None:
        self._guard = threading.RLock()
        self._outer = outer
        self._local = threading.local()

    @contextlib.contextmanager
    def __call__(self) -> Iterator[None]:
        with self._guard:
            depth = getattr(self._local, "depth", 0)
            if depth == 0 and self._outer is not None:
                with self._outer():
                    self._local.depth = 1
                    try:
                        yield None
                    finally:
                        self._local.depth = 0
                return
            self._local.depth = depth + 1
            try:
                yield None
            finally:
                self._local.depth = depth


class MemoryStore:
    """In-process store for single-process fleets and tests."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()
        self.mutex = _ReentrantMutex()

    def get(self, keys: Iterable[str]) -> dict[str, Any]:
        with self._lock:
            return {key: json.loads(self._data[key]) for key in keys if key in self._data}

    def set(self, values: Mapping[str, Any]) -> None:
        encoded = {key: _encode(value) for key, value in values.items()}
        with self._lock:
            self._data.update(encoded)

    def remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)


_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA busy_timeout=4000;
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""


@dataclass
class SQLiteKeyValueStore:
    """
    Cross-process key/value store backed by SQLite.

    Parameters
    ----------
    db_path : Path
        Path to the SQLite database file. Parent directories are created.
    lock_ctx : Callable[[Path], ContextManager]
        File-level lock used by :meth:`mutex` for cross-process serialisation.
        Defaults to :func:`locks.registry_lock`.
    now_wall : Callable[[], float]
        Clock used for ``updated_at`` (default: ``time.time``).
    """

    db_path: Path
    lock_ctx: Callable[[Path], ContextManager[None]] = registry_lock  # type: ignore[assignment]
    now_wall: Callable[[], float] = time.time
    _conn_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,
            check_same_thread=False,
        )
        cursor = self._conn.cursor()
        for stmt in _DDL.strip().split(";\n"):
            if stmt.strip():
                cursor.execute(stmt)
        self.mutex = _ReentrantMutex(lambda: self.lock_ctx(self.db_path))
        logger.debug(f"Key/value store ready at {self.db_path}")

    def get(self, keys: Iterable[str]) -> dict[str, Any]:
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        with self._conn_lock:
            rows = self._conn.execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders})", wanted
            ).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def set(self, values: Mapping[str, Any]) -> None:
        if not values:
            return
        now = self.now_wall()
        rows = [(key, _encode(value), now) for key, value in values.items()]
        with self._conn_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.executemany(
                    """
                    INSERT INTO kv(key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value=excluded.value,
                        updated_at=excluded.updated_at
                    """,
                    rows,
                )
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def remove(self, keys: Iterable[str]) -> None:
        doomed = [(key,) for key in keys]
        if not doomed:
            return
        with self._conn_lock:
            self._conn.executemany("DELETE FROM kv WHERE key=?", doomed)

    def close(self) -> None:
        """Close the database connection."""
        with self._conn_lock:
            self._conn.close()


class WorkerScope:
    """Store view whose keys are namespaced by a worker identity.

    ``WorkerScope(store, "T2").set({"checkpoint": cp})`` writes the key
    ``worker:T2:checkpoint``. The scope exposes the same ``get``/``set``/
    ``remove`` contract with unprefixed keys.
    """

    PREFIX = "worker"

    def __init__(self, store: PersistentStore, worker_id: str) -> None:
        if not worker_id:
            raise ValueError("worker_id must be non-empty")
        self.store = store
        self.worker_id = worker_id
        self._prefix = f"{self.PREFIX}:{worker_id}:"

    def key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def get(self, keys: Iterable[str]) -> dict[str, Any]:
        names = list(keys)
        found = self.store.get([self.key(name) for name in names])
        return {name: found[self.key(name)] for name in names if self.key(name) in found}

    def set(self, values: Mapping[str, Any]) -> None:
        self.store.set({self.key(name): value for name, value in values.items()})

    def remove(self, keys: Iterable[str]) -> None:
        self.store.remove([self.key(name) for name in keys])

    def __repr__(self) -> str:
        return f"WorkerScope(worker_id={self.worker_id!r})"
