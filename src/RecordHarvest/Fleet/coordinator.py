# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.coordinator",
#   "purpose": "Work assignment, lock release, fleet lifecycle, and stop broadcast",
#   "sections": [
#     {"id": "coordinator", "name": "Coordinator", "anchor": "class-coordinator", "kind": "class"},
#     {"id": "start-fleet", "name": "Coordinator.start_fleet", "anchor": "function-start-fleet", "kind": "function"},
#     {"id": "request-work", "name": "Coordinator.request_work", "anchor": "function-request-work", "kind": "function"},
#     {"id": "complete-work", "name": "Coordinator.complete_work", "anchor": "function-complete-work", "kind": "function"},
#     {"id": "broadcast-stop", "name": "Coordinator.broadcast_stop", "anchor": "function-broadcast-stop", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Work coordinator for the harvest fleet.

Responsibilities
----------------
- Own the work registry: the scan pointer, per-record locks, the completed
  set, fleet membership, and the global flags.
- Hand out record ids one at a time (:meth:`Coordinator.request_work`),
  skipping completed ids and ids locked by another worker.
- Start a fleet with staggered worker launches and deliver ``init`` to each
  context with bounded retry; tear a fleet down on stop.
- Pause and resume the fleet on behalf of the cooldown protocol.

Design Notes
------------
- Every read-modify-write runs inside ``store.mutex()``. With the SQLite store
  that is a thread lock plus a file lock, so two workers can never be
  assigned the same id even when requests arrive simultaneously.
- The scan pointer only moves forward, to ``assigned_id + 1``. Ids skipped
  because another worker held them are not revisited.
- Release causes (not found, empty, failed) are recorded for reporting only;
  scheduling looks at nothing but locks and the completed set.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Mapping, Optional

from .checkpoints import CHECKPOINT_KEY
from .config.models import FleetPolicy
from .errors import FleetStateError
from .events import StatusBus
from .interfaces import ContextLauncher
from .models import (
    DONE,
    Assignment,
    CompletedEntry,
    Directive,
    GlobalFlags,
    ItemOutcome,
    LockEntry,
    RegistrySnapshot,
    WorkerRecord,
    WorkerStatus,
)
from .output import ArtifactLayout
from .registry import Registry
from .retries import deliver_with_retry
from .store import PersistentStore, WorkerScope

__all__ = ["Coordinator", "COORDINATOR_ID"]

logger = logging.getLogger(__name__)

COORDINATOR_ID = "coordinator"


class Coordinator:
    """Assigns records to workers and manages fleet lifecycle.

    Attributes:
        registry: Typed view of the shared store
        policy: Fleet policy (stagger, probe limit, delivery retries)
        launcher: Creates execution contexts and delivers directives
        output: Output layout used to seed the completed set on resume
        events: Status bus for control-plane events
    """

    def __init__(
        self,
        store: PersistentStore,
        *,
        policy: Optional[FleetPolicy] = None,
        launcher: Optional[ContextLauncher] = None,
        output: Optional[ArtifactLayout] = None,
        events: Optional[StatusBus] = None,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.registry = Registry(store, now=now)
        self.policy = policy or FleetPolicy()
        self.launcher = launcher
        self.output = output
        self.events = events or StatusBus()
        self.now = now
        self.sleep = sleep

    def _require_launcher(self) -> ContextLauncher:
        if self.launcher is None:
            raise FleetStateError("Coordinator has no context launcher attached")
        return self.launcher

    # ── Fleet lifecycle ─────────────────────────────────────────────────────

    def start_fleet(
        self,
        worker_count: int,
        start_id: int = 1,
        max_id: Optional[int] = None,
        *,
        resume: Optional[bool] = None,
    ) -> List[str]:
        """Reset the registry and launch ``worker_count`` staggered workers.

        Args:
            worker_count: Number of workers (``T1``..``Tn``)
            start_id: First id to scan
            max_id: Last id to scan, inclusive; ``None`` scans until
                ``max_consecutive_not_found`` ids in a row are missing
            resume: Seed the completed set from existing output (defaults to policy)

        Returns:
            The worker ids that were launched.

        Raises:
            FleetStateError: Invalid arguments, or a previous fleet that would not exit.
        """
        if worker_count < 1:
            raise FleetStateError(f"worker_count must be >= 1, got {worker_count}")
        if start_id < 1:
            raise FleetStateError(f"start_id must be >= 1, got {start_id}")
        if max_id is not None and max_id < start_id:
            raise FleetStateError(f"max_id {max_id} is below start_id {start_id}")
        launcher = self._require_launcher()
        resume = self.policy.resume if resume is None else resume

        previous = self.registry.fleet()
        if previous:
            logger.warning(
                f"Fleet already registered ({', '.join(sorted(previous))}); stopping it first"
            )
            self.broadcast_stop(user_requested=False)

        completed: Dict[int, CompletedEntry] = {}
        if resume and self.output is not None:
            self.output.cleanup_partials(self.policy.partial_max_age_s)
            completed = self.output.scan_completed()

        worker_ids = [f"T{index}" for index in range(1, worker_count + 1)]
        with self.registry.transaction():
            self.registry.reset(
                start_id=start_id,
                max_id=max_id,
                probe_limit=self.policy.probe_limit,
                completed=completed,
            )
            for worker_id in worker_ids:
                WorkerScope(self.store, worker_id).remove([CHECKPOINT_KEY])

        self.events.emit(
            COORDINATOR_ID,
            f"Starting {worker_count} workers from id {start_id}"
            + (f" to {max_id}" if max_id is not None else "")
            + (f" ({len(completed)} already complete)" if completed else ""),
        )

        for index, worker_id in enumerate(worker_ids):
            delay = index * self.policy.stagger_seconds
            context_id = launcher.launch(worker_id, delay)
            with self.registry.transaction():
                fleet = self.registry.fleet()
                fleet[worker_id] = WorkerRecord(
                    worker_id=worker_id, context_id=context_id, started_at=self.now()
                )
                self.registry.save_fleet(fleet)
            delivered = deliver_with_retry(
                lambda: launcher.deliver(context_id, Directive.INIT),
                max_attempts=self.policy.init_delivery_attempts,
                interval=self.policy.init_delivery_interval_s,
                sleep=self.sleep,
            )
            if delivered:
                logger.info(f"Worker {worker_id} initialised (start delay {delay:.1f}s)")
            else:
                self.events.emit(worker_id, "Worker context never became ready for init", "error")
        return worker_ids

    def broadcast_stop(self, *, user_requested: bool = True) -> GlobalFlags:
        """Stop every worker and tear down fleet membership. Idempotent.

        Raises:
            FleetStateError: If a worker context did not exit within the teardown timeout.
        """
        with self.registry.transaction():
            flags = self.registry.update_flags(
                stop_requested=True,
                user_stop=user_requested or self.registry.flags().user_stop,
            )
            fleet = self.registry.fleet()
            self.registry.save_fleet({})
            self.registry.save_locks({})

        if not fleet:
            logger.debug("Stop broadcast with no registered workers")
            return flags

        self.events.emit(COORDINATOR_ID, f"Stopping {len(fleet)} workers", "warning")
        if self.launcher is None:
            # Another process owns the contexts; they observe the flag in the store.
            return flags
        for record in fleet.values():
            self.launcher.deliver(record.context_id, Directive.STOP)
        stuck = [
            record.worker_id
            for record in fleet.values()
            if not self.launcher.close(record.context_id, self.policy.teardown_timeout_s)
        ]
        if stuck:
            raise FleetStateError(f"Workers did not stop in time: {', '.join(stuck)}")
        return flags

    def clear_stop(self) -> GlobalFlags:
        """Clear the stop flag so ``request_work`` may assign again."""
        flags = self.registry.update_flags(stop_requested=False, user_stop=False)
        self.events.emit(COORDINATOR_ID, "Stop flag cleared")
        return flags

    def retire_worker(self, worker_id: str, *, reason: Optional[str] = None) -> None:
        """Remove a worker from fleet membership once it has run out of work or halted."""
        with self.registry.transaction():
            fleet = self.registry.fleet()
            if fleet.pop(worker_id, None) is None:
                return
            self.registry.save_fleet(fleet)
        if reason is None:
            self.events.emit(worker_id, "No more work; worker finished", "success")
        else:
            self.events.emit(worker_id, f"Left the fleet: {reason}", "error")
        if not fleet:
            self.events.emit(COORDINATOR_ID, "All workers finished", "success")

    def get_assignment(self, context_id: str) -> Optional[str]:
        """Return the worker id registered for an execution context."""
        for record in self.registry.fleet().values():
            if record.context_id == context_id:
                return record.worker_id
        return None

    # ── Work assignment ─────────────────────────────────────────────────────

    def request_work(self, worker_id: str) -> Assignment:
        """Assign the next eligible record to ``worker_id``, or return ``DONE``."""
        with self.registry.transaction():
            if self.registry.flags().stop_requested:
                return DONE

            state = self.registry.scan_state()
            next_id = int(state["next_id"])
            max_id = state.get("max_id")
            probe_limit = int(state.get("probe_limit") or self.policy.probe_limit)
            locks = self.registry.locks()
            completed = self.registry.completed()

            if max_id is None:
                misses = self._not_found_run(next_id, int(state.get("start_id") or 1), locks)
                if misses >= self.policy.max_consecutive_not_found:
                    logger.info(
                        f"{misses} consecutive ids below {next_id} were not found; "
                        f"no more work for {worker_id}"
                    )
                    return DONE

            for item_id in range(next_id, next_id + probe_limit):
                if max_id is not None and item_id > max_id:
                    break
                if item_id in completed:
                    continue
                holder = locks.get(item_id)
                if holder is not None and holder.holder != worker_id:
                    continue

                locks[item_id] = LockEntry(holder=worker_id, acquired_at=self.now())
                state["next_id"] = max(next_id, item_id + 1)
                self.registry.save_locks(locks)
                self.registry.save_scan_state(state)
                self.registry.update_worker(
                    worker_id, status=WorkerStatus.WORKING, current_item=item_id
                )
                logger.debug(f"Assigned {item_id} to {worker_id}; pointer now {state['next_id']}")
                return Assignment.assigned(item_id)

        logger.info(f"No eligible ids left for {worker_id} (pointer {next_id}, max {max_id})")
        return DONE

    def _not_found_run(self, next_id: int, start_id: int, locks: Mapping[int, LockEntry]) -> int:
        """Count the not-found ids directly below the pointer, stepping over ids still in flight."""
        resolved = self.registry.resolved()
        run = 0
        for item_id in range(next_id - 1, start_id - 1, -1):
            if item_id in locks:
                continue
            if resolved.get(item_id) is not ItemOutcome.NOT_FOUND:
                break
            run += 1
            if run >= self.policy.max_consecutive_not_found:
                break
        return run

    def complete_work(
        self,
        worker_id: str,
        item_id: int,
        outcome: ItemOutcome = ItemOutcome.SUCCESS,
        output_ref: Optional[str] = None,
    ) -> None:
        """Release ``item_id`` and record how it was resolved. Idempotent."""
        outcome = ItemOutcome(outcome)
        with self.registry.transaction():
            locks = self.registry.locks()
            lock = locks.get(item_id)
            if lock is not None and lock.holder == worker_id:
                del locks[item_id]
                self.registry.save_locks(locks)
            elif lock is not None:
                logger.warning(
                    f"{worker_id} reported {item_id} but the lock is held by {lock.holder}"
                )

            if outcome is ItemOutcome.SUCCESS:
                completed = self.registry.completed()
                if item_id not in completed:
                    completed[item_id] = CompletedEntry(
                        output_ref=output_ref, completed_at=self.now(), holder=worker_id
                    )
                    self.registry.save_completed(completed)
            else:
                resolved = self.registry.resolved()
                if resolved.get(item_id) is not outcome:
                    resolved[item_id] = outcome
                    self.registry.save_resolved(resolved)

            self.registry.update_worker(worker_id, status=WorkerStatus.IDLE, current_item=None)

    def release_not_found(self, worker_id: str, item_id: int) -> None:
        self.complete_work(worker_id, item_id, ItemOutcome.NOT_FOUND)

    def release_empty(self, worker_id: str, item_id: int) -> None:
        self.complete_work(worker_id, item_id, ItemOutcome.EMPTY)

    # ── Fleet pause (used by the cooldown protocol) ─────────────────────────

    def pause_fleet(self, until: float, reason: str) -> GlobalFlags:
        flags = self.registry.update_flags(frozen=True, cooldown_until=until, cooldown_reason=reason)
        self.broadcast(Directive.PAUSE)
        return flags

    def lift_pause(self) -> GlobalFlags:
        return self.registry.update_flags(frozen=False, cooldown_until=None, cooldown_reason=None)

    def broadcast(self, directive: Directive) -> Dict[str, bool]:
        """Deliver ``directive`` once to every registered worker."""
        if self.launcher is None:
            return {}
        return {
            record.worker_id: self.launcher.deliver(record.context_id, directive)
            for record in self.registry.fleet().values()
        }

    # ── Introspection ───────────────────────────────────────────────────────

    def flags(self) -> GlobalFlags:
        return self.registry.flags()

    def snapshot(self) -> RegistrySnapshot:
        return self.registry.snapshot()
