# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.errors",
#   "purpose": "Error taxonomy and failure logging for fleet workers.",
#   "sections": [
#     {"id": "workerfailure", "name": "WorkerFailure", "anchor": "class-workerfailure", "kind": "class"},
#     {"id": "transientuierror", "name": "TransientUIError", "anchor": "class-transientuierror", "kind": "class"},
#     {"id": "fetchfailure", "name": "FetchFailure", "anchor": "class-fetchfailure", "kind": "class"},
#     {"id": "ratelimited", "name": "RateLimited", "anchor": "class-ratelimited", "kind": "class"},
#     {"id": "fatalworkererror", "name": "FatalWorkerError", "anchor": "class-fatalworkererror", "kind": "class"},
#     {"id": "log-worker-failure", "name": "log_worker_failure", "anchor": "function-log-worker-failure", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Error taxonomy for fleet workers.

Responsibilities
----------------
- Define the exceptions that drive worker recovery: ``TransientUIError`` and
  ``FrozenInterfaceError`` are retried locally, ``FetchFailure`` re-enters the
  current checkpoint, ``RateLimited`` engages the fleet-wide cooldown, and
  ``FatalWorkerError`` halts a single worker.
- Provide the control-flow signals ``Stopped`` and ``Suspended`` raised out of
  stop-aware waits.
- Centralise structured failure logging through :func:`log_worker_failure`.

Design Notes
------------
- Records that do not exist or have nothing to download are outcomes
  (:class:`~RecordHarvest.Fleet.models.ItemOutcome`), not exceptions.
- ``Stopped`` and ``Suspended`` do not derive from ``FleetError`` so that broad
  error handlers in worker phases never swallow them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

__all__ = (
    "FleetError",
    "TransientUIError",
    "FrozenInterfaceError",
    "FetchFailure",
    "RateLimited",
    "FatalWorkerError",
    "FleetStateError",
    "Stopped",
    "Suspended",
    "WorkerFailure",
    "log_worker_failure",
)

LOGGER = logging.getLogger(__name__)


class FleetError(Exception):
    """Base class for recoverable and fatal worker errors."""


class TransientUIError(FleetError):
    """An expected control or locator did not appear within its wait window."""

    def __init__(self, message: str, *, item_id: int | None = None, sub_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.sub_id = sub_id


class FrozenInterfaceError(TransientUIError):
    """The retrieval view rendered but offered no usable controls."""


class FetchFailure(FleetError):
    """Retrieval failed, was interrupted, or produced empty content."""

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        locator: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.job_id = job_id
        self.locator = locator
        self.details = details or {}


class RateLimited(FleetError):
    """The target system is throttling every worker; pause the fleet."""

    def __init__(
        self,
        message: str = "throttle signal detected",
        *,
        worker_id: str | None = None,
        reason: str | None = None,
        pause_seconds: float | None = None,
    ):
        super().__init__(message)
        self.worker_id = worker_id
        self.reason = reason or message
        self.pause_seconds = pause_seconds


class FatalWorkerError(FleetError):
    """Authentication failed or the target reached an unrecoverable state."""

    def __init__(self, message: str, *, worker_id: str | None = None, item_id: int | None = None):
        super().__init__(message)
        self.worker_id = worker_id
        self.item_id = item_id


class FleetStateError(RuntimeError):
    """Coordinator misuse or a fleet that could not be torn down."""


class Stopped(Exception):
    """A wait was interrupted by the global stop flag."""


class Suspended(Exception):
    """A wait was interrupted because the fleet is paused."""


@dataclass
class WorkerFailure:
    """Structured failure record surfaced to the control plane."""

    worker_id: str
    error_type: str
    message: str
    item_id: Optional[int] = None
    phase: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls, worker_id: str, exc: BaseException, *, item_id: int | None = None, phase: str | None = None
    ) -> "WorkerFailure":
        return cls(
            worker_id=worker_id,
            error_type=type(exc).__name__,
            message=str(exc),
            item_id=item_id if item_id is not None else getattr(exc, "item_id", None),
            phase=phase,
        )


def log_worker_failure(
    logger: logging.Logger,
    failure: WorkerFailure,
    *,
    level: int = logging.ERROR,
) -> None:
    """Emit a single structured log line for a worker failure.

    Args:
        logger: Logger to write to
        failure: Failure record to log
        level: Logging level (defaults to ERROR)
    """

    extra_fields = {
        "worker_id": failure.worker_id,
        "error_type": failure.error_type,
        "item_id": failure.item_id,
        "phase": failure.phase,
    }
    extra_fields.update(failure.metadata)
    logger.log(
        level,
        "Worker %s failed (%s) on item %s during %s: %s",
        failure.worker_id,
        failure.error_type,
        failure.item_id,
        failure.phase or "-",
        failure.message,
        extra={"extra_fields": extra_fields},
    )
