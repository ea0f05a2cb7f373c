# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.registry",
#   "purpose": "Typed access to the shared work registry and global flags",
#   "sections": [
#     {"id": "registrykeys", "name": "RegistryKeys", "anchor": "class-registrykeys", "kind": "class"},
#     {"id": "registry", "name": "Registry", "anchor": "class-registry", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Typed access to the shared work registry.

The registry is a handful of JSON documents in the persistent store:

========== ==========================================================
Key        Contents
========== ==========================================================
registry   ``{start_id, max_id, next_id, probe_limit}``
locks      ``{item_id: {holder, acquired_at}}``
completed  ``{item_id: {output_ref, completed_at, holder}}``
resolved   ``{item_id: "not_found" | "empty" | "failed"}``
fleet      ``{worker_id: {worker_id, context_id, status, ...}}``
flags      :class:`~RecordHarvest.Fleet.models.GlobalFlags`
========== ==========================================================

JSON object keys are strings, so item ids are converted at this boundary and
callers only ever see integers. Every mutating helper must be called inside
``store.mutex()``; :meth:`Registry.transaction` is the usual way to get one.
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from .models import (
    CompletedEntry,
    GlobalFlags,
    ItemOutcome,
    LockEntry,
    RegistrySnapshot,
    WorkerRecord,
)
from .store import PersistentStore

__all__ = ["Registry", "RegistryKeys", "DEFAULT_PROBE_LIMIT"]

logger = logging.getLogger(__name__)

DEFAULT_PROBE_LIMIT = 5000


class RegistryKeys:
    REGISTRY = "registry"
    LOCKS = "locks"
    COMPLETED = "completed"
    RESOLVED = "resolved"
    FLEET = "fleet"
    FLAGS = "flags"

    ALL = (REGISTRY, LOCKS, COMPLETED, RESOLVED, FLEET, FLAGS)


def _int_keyed(raw: Optional[Mapping[str, Any]], parse: Callable[[Any], Any]) -> Dict[int, Any]:
    return {int(key): parse(value) for key, value in (raw or {}).items()}


def _str_keyed(values: Mapping[int, Any], dump: Callable[[Any], Any]) -> Dict[str, Any]:
    return {str(key): dump(value) for key, value in values.items()}


class Registry:
    """Read and write registry documents in a :class:`PersistentStore`."""

    def __init__(self, store: PersistentStore, *, now: Callable[[], float] = time.time) -> None:
        self.store = store
        self.now = now

    @contextlib.contextmanager
    def transaction(self) -> Iterator["Registry"]:
        with self.store.mutex():
            yield self

    # ── Scan state ──────────────────────────────────────────────────────────

    def scan_state(self) -> Dict[str, Any]:
        state = self.store.get([RegistryKeys.REGISTRY]).get(RegistryKeys.REGISTRY)
        return state or {
            "start_id": 1,
            "max_id": None,
            "next_id": 1,
            "probe_limit": DEFAULT_PROBE_LIMIT,
        }

    def save_scan_state(self, state: Mapping[str, Any]) -> None:
        self.store.set({RegistryKeys.REGISTRY: dict(state)})

    # ── Locks / completion ──────────────────────────────────────────────────

    def locks(self) -> Dict[int, LockEntry]:
        raw = self.store.get([RegistryKeys.LOCKS]).get(RegistryKeys.LOCKS)
        return _int_keyed(raw, LockEntry.from_dict)

    def save_locks(self, locks: Mapping[int, LockEntry]) -> None:
        self.store.set({RegistryKeys.LOCKS: _str_keyed(locks, LockEntry.to_dict)})

    def completed(self) -> Dict[int, CompletedEntry]:
        raw = self.store.get([RegistryKeys.COMPLETED]).get(RegistryKeys.COMPLETED)
        return _int_keyed(raw, CompletedEntry.from_dict)

    def save_completed(self, completed: Mapping[int, CompletedEntry]) -> None:
        self.store.set({RegistryKeys.COMPLETED: _str_keyed(completed, CompletedEntry.to_dict)})

    def resolved(self) -> Dict[int, ItemOutcome]:
        raw = self.store.get([RegistryKeys.RESOLVED]).get(RegistryKeys.RESOLVED)
        return _int_keyed(raw, ItemOutcome)

    def save_resolved(self, resolved: Mapping[int, ItemOutcome]) -> None:
        self.store.set({RegistryKeys.RESOLVED: _str_keyed(resolved, lambda value: value.value)})

    # ── Fleet membership ────────────────────────────────────────────────────

    def fleet(self) -> Dict[str, WorkerRecord]:
        raw = self.store.get([RegistryKeys.FLEET]).get(RegistryKeys.FLEET) or {}
        return {worker_id: WorkerRecord.from_dict(value) for worker_id, value in raw.items()}

    def save_fleet(self, fleet: Mapping[str, WorkerRecord]) -> None:
        self.store.set(
            {RegistryKeys.FLEET: {worker_id: record.to_dict() for worker_id, record in fleet.items()}}
        )

    def update_worker(self, worker_id: str, **changes: Any) -> Optional[WorkerRecord]:
        """Apply ``changes`` to one fleet record; unknown workers are ignored."""
        fleet = self.fleet()
        record = fleet.get(worker_id)
        if record is None:
            logger.debug(f"Ignoring update for unregistered worker {worker_id}")
            return None
        for name, value in changes.items():
            setattr(record, name, value)
        self.save_fleet(fleet)
        return record

    # ── Flags ───────────────────────────────────────────────────────────────

    def flags(self) -> GlobalFlags:
        return GlobalFlags.from_dict(self.store.get([RegistryKeys.FLAGS]).get(RegistryKeys.FLAGS))

    def update_flags(self, **changes: Any) -> GlobalFlags:
        """Write a new flags version with ``changes`` applied."""
        with self.store.mutex():
            flags = self.flags().bump(**changes)
            self.store.set({RegistryKeys.FLAGS: flags.to_dict()})
        logger.debug(f"Flags v{flags.version}: {changes}")
        return flags

    # ── Bulk ────────────────────────────────────────────────────────────────

    def reset(
        self,
        *,
        start_id: int,
        max_id: Optional[int],
        probe_limit: int,
        completed: Optional[Mapping[int, CompletedEntry]] = None,
    ) -> None:
        """Replace all registry state for a new run; the flags version keeps counting."""
        flags_version = self.flags().version
        self.store.set(
            {
                RegistryKeys.REGISTRY: {
                    "start_id": start_id,
                    "max_id": max_id,
                    "next_id": start_id,
                    "probe_limit": probe_limit,
                },
                RegistryKeys.LOCKS: {},
                RegistryKeys.COMPLETED: _str_keyed(completed or {}, CompletedEntry.to_dict),
                RegistryKeys.RESOLVED: {},
                RegistryKeys.FLEET: {},
                RegistryKeys.FLAGS: GlobalFlags(version=flags_version + 1).to_dict(),
            }
        )

    def snapshot(self) -> RegistrySnapshot:
        data = self.store.get(RegistryKeys.ALL)
        state = data.get(RegistryKeys.REGISTRY) or self.scan_state()
        return RegistrySnapshot(
            start_id=int(state["start_id"]),
            max_id=state.get("max_id"),
            next_id=int(state["next_id"]),
            locks=_int_keyed(data.get(RegistryKeys.LOCKS), LockEntry.from_dict),
            completed=_int_keyed(data.get(RegistryKeys.COMPLETED), CompletedEntry.from_dict),
            resolved=_int_keyed(data.get(RegistryKeys.RESOLVED), ItemOutcome),
            fleet={
                worker_id: WorkerRecord.from_dict(value)
                for worker_id, value in (data.get(RegistryKeys.FLEET) or {}).items()
            },
            flags=GlobalFlags.from_dict(data.get(RegistryKeys.FLAGS)),
        )
