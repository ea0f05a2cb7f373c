# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.models",
#   "purpose": "Registry records, worker phases, checkpoints, and flag types",
#   "sections": [
#     {"id": "itemoutcome", "name": "ItemOutcome", "anchor": "#class-itemoutcome", "kind": "enum"},
#     {"id": "workerstatus", "name": "WorkerStatus", "anchor": "#class-workerstatus", "kind": "enum"},
#     {"id": "phase", "name": "Phase", "anchor": "#class-phase", "kind": "enum"},
#     {"id": "assignment", "name": "Assignment", "anchor": "#class-assignment", "kind": "dataclass"},
#     {"id": "globalflags", "name": "GlobalFlags", "anchor": "#class-globalflags", "kind": "dataclass"},
#     {"id": "checkpoint", "name": "Checkpoint", "anchor": "#class-checkpoint", "kind": "dataclass"}
#   ]
# }
# === /NAVMAP ===

"""Registry records and worker state types.

Everything here is persisted through a :class:`~RecordHarvest.Fleet.store.PersistentStore`
as plain JSON, so each record exposes ``to_dict``/``from_dict`` helpers and
keeps its fields JSON-native.

**Worker pipeline:**

    INIT → AUTHENTICATING → AWAITING_ASSIGNMENT
      ↓ (assigned)
    IDENTIFYING ──(not found)──────────────┐
      ↓                                    │
    ENUMERATING ──(no sub-items)───────────┤
      ↓                                    │
    CHECKING → LOCATING → FETCHING → VERIFYING
      ↑            (next sub-item)    ↓    │
      └───────────────────────────────┘    ↓
                                       REPORTING → AWAITING_ASSIGNMENT … → DONE
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional


class ItemOutcome(str, Enum):
    """How a claimed record was resolved."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EMPTY = "empty"
    FAILED = "failed"


class ItemStatus(str, Enum):
    """Logical status of a record id within a run."""

    UNASSIGNED = "unassigned"
    LOCKED = "locked"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    EMPTY = "empty"


class WorkerStatus(str, Enum):
    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"


class Phase(str, Enum):
    """Worker pipeline phase recorded in a checkpoint."""

    INIT = "init"
    AUTHENTICATING = "authenticating"
    AWAITING_ASSIGNMENT = "awaiting_assignment"
    IDENTIFYING = "identifying"
    ENUMERATING = "enumerating"
    CHECKING = "checking"
    LOCATING = "locating"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    REPORTING = "reporting"
    DONE = "done"

    @property
    def per_sub_item(self) -> bool:
        return self in _SUB_ITEM_PHASES


_SUB_ITEM_PHASES = frozenset({Phase.CHECKING, Phase.LOCATING, Phase.FETCHING, Phase.VERIFYING})


class Directive(str, Enum):
    """Messages the coordinator and cooldown protocol deliver to worker contexts."""

    INIT = "init"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class FetchStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class SubItem:
    """One downloadable entry inside a record."""

    sub_id: str
    label: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"sub_id": self.sub_id, "label": self.label}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SubItem":
        return cls(sub_id=str(data["sub_id"]), label=str(data.get("label") or ""))


@dataclass(frozen=True)
class Assignment:
    """Result of ``request_work``: either an assigned id or ``Done``."""

    item_id: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.item_id is None

    @classmethod
    def assigned(cls, item_id: int) -> "Assignment":
        return cls(item_id=item_id)


DONE = Assignment()


@dataclass(frozen=True)
class LockEntry:
    holder: str
    acquired_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockEntry":
        return cls(holder=str(data["holder"]), acquired_at=float(data["acquired_at"]))


@dataclass(frozen=True)
class CompletedEntry:
    output_ref: Optional[str]
    completed_at: float
    holder: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompletedEntry":
        return cls(
            output_ref=data.get("output_ref"),
            completed_at=float(data.get("completed_at") or 0.0),
            holder=data.get("holder"),
        )


@dataclass
class WorkerRecord:
    """Fleet membership entry for one worker identity."""

    worker_id: str
    context_id: str
    status: WorkerStatus = WorkerStatus.INITIALIZING
    current_item: Optional[int] = None
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkerRecord":
        return cls(
            worker_id=str(data["worker_id"]),
            context_id=str(data["context_id"]),
            status=WorkerStatus(data.get("status", WorkerStatus.INITIALIZING.value)),
            current_item=data.get("current_item"),
            started_at=float(data.get("started_at") or 0.0),
        )


@dataclass(frozen=True)
class GlobalFlags:
    """Fleet-wide flags, stored as one versioned object.

    Attributes:
        stop_requested: Set by ``broadcast_stop``; no work is assigned while set
        user_stop: Whether the stop came from the control plane
        cooldown_until: Wall-clock deadline of the active fleet pause
        frozen: Whether the fleet is paused by the cooldown protocol
        cooldown_reason: Why the active pause was triggered
        version: Incremented on every write
    """

    stop_requested: bool = False
    user_stop: bool = False
    cooldown_until: Optional[float] = None
    frozen: bool = False
    cooldown_reason: Optional[str] = None
    version: int = 0

    def cooling_down(self, now: float) -> bool:
        return self.frozen and self.cooldown_until is not None and self.cooldown_until > now

    def bump(self, **changes: Any) -> "GlobalFlags":
        return replace(self, version=self.version + 1, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "GlobalFlags":
        if not data:
            return cls()
        until = data.get("cooldown_until")
        return cls(
            stop_requested=bool(data.get("stop_requested", False)),
            user_stop=bool(data.get("user_stop", False)),
            cooldown_until=float(until) if until is not None else None,
            frozen=bool(data.get("frozen", False)),
            cooldown_reason=data.get("cooldown_reason"),
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Durable snapshot of a worker's in-flight pipeline step.

    A checkpoint holds everything needed to re-enter ``phase`` without redoing
    committed side effects: the claimed record, the sub-item being processed,
    the sub-items still to do, and the retry counters for the current step.
    """

    phase: Phase
    item_id: Optional[int] = None
    record_label: str = ""
    sub_item: Optional[SubItem] = None
    sub_items: tuple[SubItem, ...] = ()
    remaining: tuple[SubItem, ...] = ()
    retries: int = 0
    fetch_failures: int = 0
    frozen_cycles: int = 0
    locator: Optional[str] = None
    fetch_job_id: Optional[str] = None
    outcome: Optional[ItemOutcome] = None
    output_ref: Optional[str] = None
    updated_at: float = 0.0

    def advance(self, phase: Phase, **changes: Any) -> "Checkpoint":
        """Return a copy moved to ``phase`` with ``changes`` applied."""
        return replace(self, phase=phase, **changes)

    def next_sub_item(self) -> "Checkpoint":
        """Drop the finished sub-item and start the next one, or report success."""
        if not self.remaining:
            return replace(
                self,
                phase=Phase.REPORTING,
                sub_item=None,
                outcome=ItemOutcome.SUCCESS,
                **_STEP_RESET,
            )
        return replace(
            self,
            phase=Phase.CHECKING,
            sub_item=self.remaining[0],
            remaining=self.remaining[1:],
            frozen_cycles=0,
            fetch_failures=0,
            **_STEP_RESET,
        )

    @property
    def total(self) -> int:
        return len(self.sub_items)

    @property
    def position(self) -> int:
        """1-based index of the current sub-item within the record."""
        return self.total - len(self.remaining)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "item_id": self.item_id,
            "record_label": self.record_label,
            "sub_item": self.sub_item.to_dict() if self.sub_item else None,
            "sub_items": [entry.to_dict() for entry in self.sub_items],
            "remaining": [entry.to_dict() for entry in self.remaining],
            "retries": self.retries,
            "fetch_failures": self.fetch_failures,
            "frozen_cycles": self.frozen_cycles,
            "locator": self.locator,
            "fetch_job_id": self.fetch_job_id,
            "outcome": self.outcome.value if self.outcome else None,
            "output_ref": self.output_ref,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        sub_item = data.get("sub_item")
        outcome = data.get("outcome")
        return cls(
            phase=Phase(data["phase"]),
            item_id=data.get("item_id"),
            record_label=str(data.get("record_label") or ""),
            sub_item=SubItem.from_dict(sub_item) if sub_item else None,
            sub_items=tuple(SubItem.from_dict(entry) for entry in data.get("sub_items") or ()),
            remaining=tuple(SubItem.from_dict(entry) for entry in data.get("remaining") or ()),
            retries=int(data.get("retries") or 0),
            fetch_failures=int(data.get("fetch_failures") or 0),
            frozen_cycles=int(data.get("frozen_cycles") or 0),
            locator=data.get("locator"),
            fetch_job_id=data.get("fetch_job_id"),
            outcome=ItemOutcome(outcome) if outcome else None,
            output_ref=data.get("output_ref"),
            updated_at=float(data.get("updated_at") or 0.0),
        )


_STEP_RESET: dict[str, Any] = {"retries": 0, "locator": None, "fetch_job_id": None}


@dataclass(frozen=True)
class StatusEvent:
    """Observability event emitted by workers and the coordinator."""

    worker_id: str
    message: str
    level: str = "info"
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Read-only view of the registry for status displays and tests."""

    start_id: int
    max_id: Optional[int]
    next_id: int
    locks: Mapping[int, LockEntry]
    completed: Mapping[int, CompletedEntry]
    resolved: Mapping[int, ItemOutcome]
    fleet: Mapping[str, WorkerRecord]
    flags: GlobalFlags

    def status_of(self, item_id: int) -> ItemStatus:
        if item_id in self.completed:
            return ItemStatus.COMPLETED
        if item_id in self.locks:
            return ItemStatus.LOCKED
        outcome = self.resolved.get(item_id)
        if outcome is ItemOutcome.NOT_FOUND:
            return ItemStatus.NOT_FOUND
        if outcome is ItemOutcome.EMPTY:
            return ItemStatus.EMPTY
        return ItemStatus.UNASSIGNED


__all__ = [
    "Assignment",
    "Checkpoint",
    "CompletedEntry",
    "DONE",
    "Directive",
    "FetchStatus",
    "GlobalFlags",
    "ItemOutcome",
    "ItemStatus",
    "LockEntry",
    "Phase",
    "RegistrySnapshot",
    "StatusEvent",
    "SubItem",
    "WorkerRecord",
    "WorkerStatus",
]
