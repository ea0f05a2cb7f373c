"""Protocols for the collaborators a fleet worker drives.

The coordinator and worker state machine are written against these
interfaces only. Concrete page inspectors and authenticators are supplied per
deployment (see ``harvest run --inspector``); the retrieval service has an
httpx implementation in :mod:`RecordHarvest.Fleet.retrieval`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

from .models import Directive, FetchStatus, SubItem

__all__ = [
    "Authenticator",
    "AuthenticatorFactory",
    "ContextLauncher",
    "DocumentRetrievalService",
    "InspectorFactory",
    "PageInspector",
]


@runtime_checkable
class PageInspector(Protocol):
    """Answers questions about records in the target system.

    Each worker context owns one inspector. Methods may raise
    :class:`~RecordHarvest.Fleet.errors.TransientUIError` (or its
    ``FrozenInterfaceError`` subclass) and
    :class:`~RecordHarvest.Fleet.errors.FatalWorkerError`.
    """

    def exists(self, item_id: int) -> Optional[bool]:
        """Return whether the record exists, or ``None`` while still resolving."""

    def record_label(self, item_id: int) -> str:
        """Return a human-readable label used to name the record's output folder."""

    def list_sub_items(self, item_id: int) -> Sequence[SubItem]:
        """Return the record's sub-items in their natural listing order."""

    def locate_artifact(self, item_id: int, sub_id: str) -> Optional[str]:
        """Return a retrieval locator for the sub-item, or ``None`` if not found yet."""

    def detect_throttle_signal(self) -> bool:
        """Return ``True`` when the target is rate-limiting all traffic from this client."""


@runtime_checkable
class Authenticator(Protocol):
    def authenticate(self) -> None:
        """Establish a session; raise ``TransientUIError`` to retry, ``FatalWorkerError`` to give up."""


@runtime_checkable
class DocumentRetrievalService(Protocol):
    """Fetches binary artifacts and reports completion asynchronously."""

    def submit_download(self, locator: str, destination: Path) -> str:
        """Start fetching ``locator`` into ``destination``; return a job id.

        Raises ``FetchFailure`` when the download cannot be started.
        """

    def poll_status(self, job_id: str) -> FetchStatus:
        """Return the current status of a submitted job."""

    def delete_artifact(self, job_id: str) -> None:
        """Remove whatever a job produced."""


class ContextLauncher(Protocol):
    """Creates worker execution contexts and delivers directives to them."""

    def launch(self, worker_id: str, start_delay: float) -> str:
        """Create an execution context for ``worker_id`` and return its identity."""

    def deliver(self, context_id: str, directive: Directive) -> bool:
        """Deliver ``directive``; return ``False`` if the context is not ready yet."""

    def close(self, context_id: str, timeout: float) -> bool:
        """Tear the context down; return ``False`` if it did not exit in time."""


InspectorFactory = Callable[[str], PageInspector]
AuthenticatorFactory = Callable[[str], Authenticator]
