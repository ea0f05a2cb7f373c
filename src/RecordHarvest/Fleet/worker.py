# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.worker",
#   "purpose": "Resumable per-worker pipeline driving records through sub-item downloads",
#   "sections": [
#     {"id": "fleetworker", "name": "FleetWorker", "anchor": "class-fleetworker", "kind": "class"},
#     {"id": "run", "name": "FleetWorker.run", "anchor": "function-run", "kind": "function"},
#     {"id": "drive", "name": "FleetWorker._drive", "anchor": "function-drive", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Resumable worker state machine.

A :class:`FleetWorker` claims records from the coordinator and walks each one
through its sub-items, persisting a checkpoint at every phase boundary:

    INIT → AUTHENTICATING → AWAITING_ASSIGNMENT → IDENTIFYING → ENUMERATING
        → (CHECKING → LOCATING → FETCHING → VERIFYING)* → REPORTING → …

Responsibilities
----------------
- Discover its identity from the coordinator by execution-context id, then
  resume from its checkpoint if one exists.
- Skip sub-items whose artifact already exists, so a resumed worker never
  fetches the same artifact twice.
- Retry locator lookups with backoff, fall back to a long local pause when the
  retrieval view is frozen, and escalate to the fleet cooldown on throttling.
- Treat fetch failures as transient and re-enter the current sub-item.
- Halt only itself on fatal errors, releasing any record it holds.

Design Notes
------------
- The pipeline is a dispatch table of phase handlers. Each handler takes the
  current :class:`~RecordHarvest.Fleet.models.Checkpoint` and returns the
  next one; the driver loop saves it before calling the next handler.
- All waits go through :class:`~RecordHarvest.Fleet.waits.StopAwareWaiter`,
  so ``Stopped`` and ``Suspended`` can surface from any handler.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .checkpoints import CheckpointStore
from .config.models import WorkerPolicy
from .coordinator import Coordinator
from .errors import (
    FatalWorkerError,
    FetchFailure,
    FrozenInterfaceError,
    RateLimited,
    Stopped,
    Suspended,
    TransientUIError,
    WorkerFailure,
    log_worker_failure,
)
from .events import StatusBus
from .interfaces import Authenticator, DocumentRetrievalService, PageInspector
from .models import Checkpoint, FetchStatus, ItemOutcome, Phase, SubItem
from .output import ArtifactLayout
from .retries import auth_policy
from .waits import StopAwareWaiter

if TYPE_CHECKING:
    from .cooldown import CooldownProtocol

__all__ = ["FleetWorker"]

logger = logging.getLogger(__name__)

# Phases never written to the store; a worker without a checkpoint restarts here.
_UNPERSISTED = frozenset({Phase.INIT, Phase.AUTHENTICATING, Phase.AWAITING_ASSIGNMENT, Phase.DONE})


class FleetWorker:
    """One worker's pipeline, bound to a single execution context.

    Attributes:
        context_id: Identity of the execution context hosting this worker
        worker_id: Fleet identity, discovered from the coordinator on ``run``
        failure: Set when the worker halted on a fatal error
    """

    def __init__(
        self,
        *,
        context_id: str,
        coordinator: Coordinator,
        inspector: PageInspector,
        retrieval: DocumentRetrievalService,
        output: ArtifactLayout,
        waiter: StopAwareWaiter,
        policy: Optional[WorkerPolicy] = None,
        authenticator: Optional[Authenticator] = None,
        cooldown: Optional["CooldownProtocol"] = None,
        events: Optional[StatusBus] = None,
        start_delay: float = 0.0,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.context_id = context_id
        self.coordinator = coordinator
        self.inspector = inspector
        self.retrieval = retrieval
        self.output = output
        self.waiter = waiter
        self.policy = policy or WorkerPolicy()
        self.authenticator = authenticator
        self.cooldown = cooldown
        self.events = events or coordinator.events
        self.start_delay = start_delay
        self.now = now

        self.worker_id: Optional[str] = None
        self.checkpoints: Optional[CheckpointStore] = None
        self.failure: Optional[WorkerFailure] = None
        self._current: Optional[Checkpoint] = None
        self._handlers: Dict[Phase, Callable[[Checkpoint], Checkpoint]] = {
            Phase.INIT: self._init,
            Phase.AUTHENTICATING: self._authenticate,
            Phase.AWAITING_ASSIGNMENT: self._await_assignment,
            Phase.IDENTIFYING: self._identify,
            Phase.ENUMERATING: self._enumerate,
            Phase.CHECKING: self._check,
            Phase.LOCATING: self._locate,
            Phase.FETCHING: self._fetch,
            Phase.VERIFYING: self._verify,
            Phase.REPORTING: self._report,
        }

    # ── Entry point ─────────────────────────────────────────────────────────

    def run(self) -> Phase:
        """Drive the pipeline until the fleet runs out of work, stops, or this worker fails.

        Returns:
            ``Phase.DONE`` when the worker finished normally or was stopped,
            otherwise the phase it was in when a fatal error halted it.
        """
        worker_id = self.coordinator.get_assignment(self.context_id)
        if worker_id is None:
            logger.error(f"Context {self.context_id} is not registered with the fleet")
            return Phase.DONE
        self.worker_id = worker_id
        self.checkpoints = CheckpointStore(self.coordinator.store, worker_id, now=self.now)

        while True:
            try:
                return self._drive()
            except Suspended as exc:
                self._hold(str(exc))
            except RateLimited as exc:
                self._escalate(exc)
            except Stopped:
                return self._stopped()
            except FatalWorkerError as exc:
                return self._fatal(exc)
            except Exception as exc:
                logger.exception(f"Worker {worker_id} crashed in {self._phase_name()}")
                return self._fatal(exc)

    def _drive(self) -> Phase:
        assert self.checkpoints is not None
        cp = self._resume_point()
        while cp.phase is not Phase.DONE:
            self.waiter.check()
            if cp.phase not in _UNPERSISTED:
                cp = self.checkpoints.save(cp)
            self._current = cp
            cp = self._handlers[cp.phase](cp)
            self._current = cp
        return Phase.DONE

    def _resume_point(self) -> Checkpoint:
        """Work out where to (re-)enter the pipeline."""
        assert self.checkpoints is not None
        if self._current is not None and self._current.phase is not Phase.INIT:
            return self._current
        saved = self.checkpoints.load()
        if saved is None:
            return self._current or Checkpoint(phase=Phase.INIT)
        if saved.phase in (Phase.LOCATING, Phase.VERIFYING):
            # Re-run the existence check before touching the retrieval view again.
            saved = saved.advance(Phase.CHECKING)
        self.events.emit(
            self._wid,
            f"Resuming record {saved.item_id} at {saved.phase.value}"
            + (f" ({saved.sub_item.sub_id})" if saved.sub_item else ""),
        )
        return saved

    # ── Phase handlers ──────────────────────────────────────────────────────

    def _init(self, cp: Checkpoint) -> Checkpoint:
        flags = self.waiter.check(allow_pause=True)
        if flags.cooling_down(self.now()):
            self.events.emit(self._wid, "Fleet is cooling down; waiting before start")
            self.waiter.hold_while_paused(self.now)
        if self.start_delay > 0:
            self.events.emit(self._wid, f"Starting in {self.start_delay:.0f}s")
            self.waiter.sleep(self.start_delay)
            self.start_delay = 0.0
        return cp.advance(Phase.AUTHENTICATING)

    def _authenticate(self, cp: Checkpoint) -> Checkpoint:
        if self.authenticator is None:
            return cp.advance(Phase.AWAITING_ASSIGNMENT)
        try:
            for attempt in auth_policy(
                max_attempts=self.policy.auth_max_attempts,
                interval=self.policy.auth_retry_s,
                sleep=self.waiter.sleep,
            ):
                with attempt:
                    self.authenticator.authenticate()
        except TransientUIError as exc:
            raise FatalWorkerError(
                f"Authentication failed after {self.policy.auth_max_attempts} attempts: {exc}",
                worker_id=self.worker_id,
            ) from exc
        self.events.emit(self._wid, "Authenticated")
        return cp.advance(Phase.AWAITING_ASSIGNMENT)

    def _await_assignment(self, cp: Checkpoint) -> Checkpoint:
        assignment = self.coordinator.request_work(self._wid)
        if assignment.done:
            self.coordinator.retire_worker(self._wid)
            return cp.advance(Phase.DONE)
        self.events.emit(self._wid, f"Processing record {assignment.item_id}")
        return Checkpoint(phase=Phase.IDENTIFYING, item_id=assignment.item_id)

    def _identify(self, cp: Checkpoint) -> Checkpoint:
        self._check_throttle()
        item_id = self._item(cp)
        exists = self.waiter.poll(
            lambda: self.inspector.exists(item_id),
            timeout=self.policy.identify_timeout_s,
            interval=self.policy.identify_poll_s,
        )
        if not exists:
            self.events.emit(self._wid, f"Record {item_id} not found")
            return cp.advance(Phase.REPORTING, outcome=ItemOutcome.NOT_FOUND)
        label = self.inspector.record_label(item_id) or ""
        return cp.advance(Phase.ENUMERATING, record_label=label)

    def _enumerate(self, cp: Checkpoint) -> Checkpoint:
        self._check_throttle()
        item_id = self._item(cp)
        sub_items = tuple(self.inspector.list_sub_items(item_id))
        if not sub_items:
            self.events.emit(self._wid, f"Record {item_id} has nothing to download")
            return cp.advance(Phase.REPORTING, outcome=ItemOutcome.EMPTY)
        self.events.emit(self._wid, f"Record {item_id}: {len(sub_items)} sub-items")
        return cp.advance(
            Phase.CHECKING,
            sub_items=sub_items,
            sub_item=sub_items[0],
            remaining=sub_items[1:],
        )

    def _check(self, cp: Checkpoint) -> Checkpoint:
        sub_item = self._sub_item(cp)
        if self.output.artifact_exists(self._item(cp), sub_item.sub_id):
            logger.info(
                f"{self._wid}: {sub_item.sub_id} of record {cp.item_id} already downloaded; skipping"
            )
            return cp.next_sub_item()
        return cp.advance(Phase.LOCATING)

    def _locate(self, cp: Checkpoint) -> Checkpoint:
        self._check_throttle()
        sub_item = self._sub_item(cp)
        try:
            locator = self.inspector.locate_artifact(self._item(cp), sub_item.sub_id)
        except FrozenInterfaceError as exc:
            return self._local_freeze(cp, str(exc))
        except TransientUIError as exc:
            logger.debug(f"{self._wid}: locator lookup failed: {exc}")
            locator = None

        if locator:
            return cp.advance(Phase.FETCHING, locator=locator, retries=0)

        retries = cp.retries + 1
        if retries > self.policy.locate_max_retries:
            if self.inspector.detect_throttle_signal():
                self._save(cp.advance(Phase.LOCATING, retries=0))
                raise RateLimited(worker_id=self.worker_id, reason="throttled while locating")
            return self._local_freeze(cp.advance(Phase.LOCATING, retries=0), "no retrieval locator")
        cp = self._save(cp.advance(Phase.LOCATING, retries=retries))
        self.events.emit(
            self._wid,
            f"Locator for {sub_item.sub_id} not found (attempt {retries}/{self.policy.locate_max_retries})",
            "warning",
        )
        self.waiter.sleep(self.policy.locate_backoff_s)
        return cp

    def _fetch(self, cp: Checkpoint) -> Checkpoint:
        item_id = self._item(cp)
        sub_item = self._sub_item(cp)
        if self.output.artifact_exists(item_id, sub_item.sub_id):
            return cp.advance(Phase.VERIFYING)

        job_id = cp.fetch_job_id
        if job_id is None:
            if not cp.locator:
                return cp.advance(Phase.LOCATING)
            destination = self.output.artifact_path(item_id, cp.record_label, sub_item)
            try:
                job_id = self.retrieval.submit_download(cp.locator, destination)
            except FetchFailure as exc:
                return self._recover_fetch(cp, exc)
            cp = self._save(cp.advance(Phase.FETCHING, fetch_job_id=job_id))
            self.events.emit(
                self._wid,
                f"Downloading {destination.name} ({cp.position}/{cp.total})",
            )

        for _ in range(self.policy.fetch_poll_attempts):
            status = self.retrieval.poll_status(job_id)
            if status is FetchStatus.COMPLETE:
                return cp.advance(Phase.VERIFYING)
            if status is FetchStatus.INTERRUPTED:
                return self._recover_fetch(cp, FetchFailure("download interrupted", job_id=job_id))
            self.waiter.sleep(self.policy.fetch_poll_interval_s)
        return self._recover_fetch(cp, FetchFailure("download timed out", job_id=job_id))

    def _verify(self, cp: Checkpoint) -> Checkpoint:
        sub_item = self._sub_item(cp)
        found = self.output.find_artifact(self._item(cp), sub_item.sub_id)
        if found is None:
            return self._recover_fetch(
                cp, FetchFailure("artifact missing or empty after download", job_id=cp.fetch_job_id)
            )
        logger.info(f"{self._wid}: saved {found} ({cp.position}/{cp.total})")
        return cp.next_sub_item()

    def _report(self, cp: Checkpoint) -> Checkpoint:
        item_id = self._item(cp)
        outcome = cp.outcome or ItemOutcome.SUCCESS
        if outcome is ItemOutcome.SUCCESS:
            output_ref = self.output.write_manifest(
                item_id, cp.record_label, cp.sub_items, worker_id=self.worker_id
            )
            self.coordinator.complete_work(self._wid, item_id, outcome, output_ref)
            self.events.emit(self._wid, f"Completed record {item_id} ({cp.total} files)", "success")
        elif outcome is ItemOutcome.NOT_FOUND:
            self.coordinator.release_not_found(self._wid, item_id)
        elif outcome is ItemOutcome.EMPTY:
            self.coordinator.release_empty(self._wid, item_id)
        else:
            self.coordinator.complete_work(self._wid, item_id, outcome)
        assert self.checkpoints is not None
        self.checkpoints.clear()
        return Checkpoint(phase=Phase.AWAITING_ASSIGNMENT)

    # ── Recovery ────────────────────────────────────────────────────────────

    def _recover_fetch(self, cp: Checkpoint, exc: FetchFailure) -> Checkpoint:
        if cp.fetch_job_id is not None:
            self.retrieval.delete_artifact(cp.fetch_job_id)
        failures = cp.fetch_failures + 1
        self.events.emit(
            self._wid,
            f"Fetch failed for record {cp.item_id} ({exc}); retrying sub-item "
            f"({failures}/{self.policy.fetch_max_failures})",
            "warning",
        )
        cp = cp.advance(
            Phase.CHECKING, fetch_job_id=None, locator=None, retries=0, fetch_failures=failures
        )
        if failures >= self.policy.fetch_max_failures:
            return self._local_freeze(cp.advance(Phase.CHECKING, fetch_failures=0), str(exc))
        return cp

    def _local_freeze(self, cp: Checkpoint, reason: str) -> Checkpoint:
        """Pause this worker alone, then re-enter the same phase."""
        cycles = cp.frozen_cycles + 1
        if cycles > self.policy.frozen_max_cycles:
            self._save(cp.advance(cp.phase, frozen_cycles=0))
            raise RateLimited(
                f"retrieval view frozen {cycles - 1} times",
                worker_id=self.worker_id,
                reason=f"frozen: {reason}",
            )
        cp = self._save(cp.advance(cp.phase, frozen_cycles=cycles))
        self.events.emit(
            self._wid,
            f"Retrieval view unusable ({reason}); pausing {self.policy.frozen_pause_s:.0f}s",
            "warning",
        )
        self.waiter.sleep(self.policy.frozen_pause_s)
        return cp

    def _check_throttle(self) -> None:
        if self.inspector.detect_throttle_signal():
            raise RateLimited(worker_id=self.worker_id, reason="throttle signal detected")

    def _escalate(self, exc: RateLimited) -> None:
        self.events.emit(self._wid, f"Rate limited: {exc.reason}", "warning")
        if self.cooldown is None:
            self.waiter.sleep(self.policy.frozen_pause_s)
            return
        self.cooldown.trigger(self._wid, exc.reason, pause_seconds=exc.pause_seconds)

    def _hold(self, reason: str) -> None:
        where = self._phase_name()
        self.events.emit(self._wid, f"Suspended at {where} ({reason})")
        self.waiter.hold_while_paused(self.now)
        self.events.emit(self._wid, f"Resuming at {where}")

    def _stopped(self) -> Phase:
        flags = self.coordinator.flags()
        if flags.stop_requested and flags.user_stop and self.checkpoints is not None:
            self.checkpoints.clear()
        self.events.emit(self._wid, "Stopped")
        return Phase.DONE

    def _fatal(self, exc: BaseException) -> Phase:
        phase = self._current.phase if self._current else Phase.INIT
        item_id = self._current.item_id if self._current else None
        self.failure = WorkerFailure.from_exception(
            self._wid, exc, item_id=item_id, phase=phase.value
        )
        log_worker_failure(logger, self.failure)
        self.events.emit(self._wid, f"Fatal error: {exc}", "error")
        if item_id is not None and phase is not Phase.AWAITING_ASSIGNMENT:
            self.coordinator.complete_work(self._wid, item_id, ItemOutcome.FAILED)
        if self.checkpoints is not None:
            self.checkpoints.clear()
        self.coordinator.retire_worker(self._wid, reason=f"halted in {phase.value}")
        return phase

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _save(self, cp: Checkpoint) -> Checkpoint:
        assert self.checkpoints is not None
        self._current = self.checkpoints.save(cp)
        return self._current

    @property
    def _wid(self) -> str:
        return self.worker_id or self.context_id

    def _phase_name(self) -> str:
        if self._current is None:
            return "start-up"
        if self._current.item_id is None:
            return self._current.phase.value
        label = f"{self._current.phase.value} of record {self._current.item_id}"
        if self._current.sub_item is not None:
            label += f" sub-item {self._current.sub_item.sub_id}"
        return label

    @staticmethod
    def _item(cp: Checkpoint) -> int:
        if cp.item_id is None:
            raise FatalWorkerError(f"Checkpoint in {cp.phase.value} has no record id")
        return cp.item_id

    @staticmethod
    def _sub_item(cp: Checkpoint) -> SubItem:
        if cp.sub_item is None:
            raise FatalWorkerError(f"Checkpoint in {cp.phase.value} has no current sub-item")
        return cp.sub_item
