# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.cooldown",
#   "purpose": "Fleet-wide pause, wait, and resume after a throttle signal",
#   "sections": [
#     {"id": "cooldownstate", "name": "CooldownState", "anchor": "class-cooldownstate", "kind": "enum"},
#     {"id": "cooldowncycle", "name": "CooldownCycle", "anchor": "class-cooldowncycle", "kind": "dataclass"},
#     {"id": "cooldownprotocol", "name": "CooldownProtocol", "anchor": "class-cooldownprotocol", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Fleet-wide cooldown after the target system starts throttling.

**State machine:**

    NORMAL
      ↓ (trigger)
    THROTTLE_DETECTED
      ↓ (flags frozen, pause delivered)
    FLEET_PAUSED
      ↓
    WAITING ──(user stop)──→ NORMAL (aborted; fleet stays stopped)
      ↓ (deadline reached)
    RESUMING ──(resume delivered with bounded retry)──→ NORMAL

Triggers are de-duplicated: once one worker has paused the fleet, further
triggers return the active deadline. The wait runs on its own thread so the
triggering worker can suspend like every other worker. Checkpoints are never
touched; each worker simply re-enters its own checkpoint on resume.

Typical Usage:
    protocol = CooldownProtocol(coordinator, CooldownPolicy(pause_seconds=60))
    protocol.trigger("T1", "throttle signal detected")
    protocol.join()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .config.models import CooldownPolicy
from .coordinator import COORDINATOR_ID, Coordinator
from .errors import Stopped
from .models import Directive
from .retries import deliver_with_retry

__all__ = ["CooldownProtocol", "CooldownState", "CooldownCycle"]

logger = logging.getLogger(__name__)


class CooldownState(str, Enum):
    NORMAL = "normal"
    THROTTLE_DETECTED = "throttle_detected"
    FLEET_PAUSED = "fleet_paused"
    WAITING = "waiting"
    RESUMING = "resuming"


@dataclass
class CooldownCycle:
    """One pause/resume cycle, kept for status reporting.

    Attributes:
        triggered_by: Worker that reported the throttle signal
        reason: Reason given by the trigger
        started_at: Wall-clock time of the trigger
        until: Wall-clock deadline of the pause
        outcome: ``"resumed"`` or ``"aborted"`` once finished
        undelivered: Workers whose context never accepted the resume
    """

    triggered_by: str
    reason: str
    started_at: float
    until: float
    outcome: Optional[str] = None
    undelivered: List[str] = field(default_factory=list)


class CooldownProtocol:
    """Pause every worker, wait out the throttle, then re-drive the fleet."""

    def __init__(
        self,
        coordinator: Coordinator,
        policy: Optional[CooldownPolicy] = None,
        *,
        background: bool = True,
        slice_seconds: float = 0.25,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.coordinator = coordinator
        self.policy = policy or CooldownPolicy()
        self.background = background
        self.slice_seconds = slice_seconds
        self.now = now
        self.sleep = sleep

        self.state = CooldownState.NORMAL
        self.history: List[CooldownCycle] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def trigger(self, worker_id: str, reason: str, *, pause_seconds: Optional[float] = None) -> float:
        """Pause the fleet unless a cooldown is already in progress.

        Returns:
            Wall-clock deadline of the active pause.
        """
        with self._lock:
            flags = self.coordinator.flags()
            now = self.now()
            if self.state is not CooldownState.NORMAL or flags.cooling_down(now):
                logger.info(f"Cooldown already active; ignoring trigger from {worker_id}")
                return flags.cooldown_until or now

            self.state = CooldownState.THROTTLE_DETECTED
            pause = self.policy.clamp(pause_seconds)
            cycle = CooldownCycle(
                triggered_by=worker_id, reason=reason, started_at=now, until=now + pause
            )
            self.history.append(cycle)
            self.coordinator.events.emit(
                worker_id, f"Throttle detected ({reason}); pausing fleet for {pause:.0f}s", "warning"
            )
            self.coordinator.pause_fleet(cycle.until, reason)
            self.state = CooldownState.FLEET_PAUSED

            if self.background:
                self._thread = threading.Thread(
                    target=self._wait_and_resume, args=(cycle,), daemon=True, name="cooldown"
                )
                self._thread.start()

        if not self.background:
            self._wait_and_resume(cycle)
        return cycle.until

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background cycle to finish; ``True`` if none is running."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ── Cycle ───────────────────────────────────────────────────────────────

    def _wait_and_resume(self, cycle: CooldownCycle) -> None:
        self.state = CooldownState.WAITING
        try:
            self._wait_until(cycle.until)
        except Stopped:
            cycle.outcome = "aborted"
            self.coordinator.lift_pause()
            self.coordinator.events.emit(
                COORDINATOR_ID, "Cooldown aborted by stop; fleet stays stopped", "warning"
            )
            self.state = CooldownState.NORMAL
            return

        self.state = CooldownState.RESUMING
        self.coordinator.lift_pause()
        cycle.undelivered = self.resume_all()
        cycle.outcome = "resumed"
        if cycle.undelivered:
            self.coordinator.events.emit(
                COORDINATOR_ID,
                f"Resume not delivered to {', '.join(cycle.undelivered)}",
                "error",
            )
        else:
            self.coordinator.events.emit(COORDINATOR_ID, "Cooldown over; fleet resumed", "success")
        self.state = CooldownState.NORMAL

    def _wait_until(self, until: float) -> None:
        while True:
            if self.coordinator.flags().stop_requested:
                raise Stopped("stop requested during cooldown")
            remaining = until - self.now()
            if remaining <= 0:
                return
            self.sleep(min(self.slice_seconds, remaining))

    def resume_all(self) -> List[str]:
        """Deliver ``resume`` to every registered worker; return those that never accepted it."""
        launcher = self.coordinator.launcher
        if launcher is None:
            return []
        undelivered: List[str] = []
        for record in self.coordinator.registry.fleet().values():
            delivered = deliver_with_retry(
                lambda: launcher.deliver(record.context_id, Directive.RESUME),
                max_attempts=self.policy.resume_delivery_attempts,
                interval=self.policy.resume_delivery_interval_s,
                sleep=self.sleep,
            )
            if not delivered:
                undelivered.append(record.worker_id)
        return undelivered
