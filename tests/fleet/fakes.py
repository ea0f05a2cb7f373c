"""Scripted stand-ins for the target system, retrieval service, and launcher."""

from __future__ import annotations

import threading
import time
from collections import Counter
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from RecordHarvest.Fleet.errors import FetchFailure, FrozenInterfaceError, TransientUIError
from RecordHarvest.Fleet.models import Directive, FetchStatus, SubItem

Key = Tuple[int, str]


def locator_for(item_id: int, sub_id: str) -> str:
    return f"https://records.example/{item_id}/{sub_id}"


class FakeSite:
    """Shared target system. Records absent from ``records`` do not exist.

    Attributes:
        records: item id -> sub-item ids (an empty list is an empty record)
        unresolved: remaining ``None`` answers from ``exists`` per item
        missing_locator: remaining ``None`` answers from ``locate_artifact`` per sub-item
        frozen: remaining ``FrozenInterfaceError`` raises per sub-item
        throttle_on: sub-items whose first locate starts a throttle window
        throttle_seconds: length of a throttle window
    """

    def __init__(
        self,
        records: Dict[int, Sequence[str]],
        *,
        throttle_seconds: float = 0.2,
    ) -> None:
        self.records = {item: list(subs) for item, subs in records.items()}
        self.unresolved: Counter = Counter()
        self.missing_locator: Counter = Counter()
        self.frozen: Counter = Counter()
        self.throttle_on: Set[Key] = set()
        self.throttle_seconds = throttle_seconds
        self.throttle_until = 0.0
        self.locate_calls: Counter = Counter()
        self.inspectors: List["FakeInspector"] = []
        self._lock = threading.Lock()

    def inspector(self, worker_id: str) -> "FakeInspector":
        inspector = FakeInspector(self, worker_id)
        self.inspectors.append(inspector)
        return inspector

    def exists(self, item_id: int) -> Optional[bool]:
        with self._lock:
            if self.unresolved[item_id] > 0:
                self.unresolved[item_id] -= 1
                return None
        return item_id in self.records

    def throttled(self) -> bool:
        return time.monotonic() < self.throttle_until

    def locate(self, item_id: int, sub_id: str) -> Optional[str]:
        key = (item_id, sub_id)
        with self._lock:
            self.locate_calls[key] += 1
            if key in self.throttle_on:
                self.throttle_on.discard(key)
                self.throttle_until = time.monotonic() + self.throttle_seconds
            if self.throttled():
                return None
            if self.frozen[key] > 0:
                self.frozen[key] -= 1
                raise FrozenInterfaceError("no download control", item_id=item_id, sub_id=sub_id)
            if self.missing_locator[key] > 0:
                self.missing_locator[key] -= 1
                return None
        return locator_for(item_id, sub_id)


class FakeInspector:
    def __init__(self, site: FakeSite, worker_id: str) -> None:
        self.site = site
        self.worker_id = worker_id

    def exists(self, item_id: int) -> Optional[bool]:
        return self.site.exists(item_id)

    def record_label(self, item_id: int) -> str:
        return f"Record {item_id}"

    def list_sub_items(self, item_id: int) -> Sequence[SubItem]:
        return [SubItem(sub_id, f"Doc {sub_id}") for sub_id in self.site.records[item_id]]

    def locate_artifact(self, item_id: int, sub_id: str) -> Optional[str]:
        return self.site.locate(item_id, sub_id)

    def detect_throttle_signal(self) -> bool:
        return self.site.throttled()


class FailingAuthenticator:
    def __init__(self, failures: int = 10**6) -> None:
        self.failures = failures
        self.calls = 0

    def authenticate(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientUIError("login form not ready")


class FakeRetrieval:
    """Writes artifacts synchronously and records every submission.

    Attributes:
        submits: locators in submission order, including failed ones
        fail_submits: remaining ``FetchFailure`` raises per locator
        interrupt: remaining ``INTERRUPTED`` answers per locator (nothing written)
        stall: remaining submissions per locator that stay ``PENDING`` (nothing written)
        deleted: job ids passed to ``delete_artifact``
        on_submit: optional hook called with the locator after a successful submit
    """

    def __init__(self, payload: bytes = b"%PDF-1.4 fake") -> None:
        self.payload = payload
        self.submits: List[str] = []
        self.written: List[Path] = []
        self.fail_submits: Counter = Counter()
        self.interrupt: Counter = Counter()
        self.stall: Counter = Counter()
        self.deleted: List[str] = []
        self.closed = False
        self.on_submit: Optional[Callable[[str], None]] = None
        self._jobs: Dict[str, Tuple[str, Path, FetchStatus]] = {}
        self._lock = threading.Lock()

    def submit_download(self, locator: str, destination: Path) -> str:
        with self._lock:
            self.submits.append(locator)
            if self.fail_submits[locator] > 0:
                self.fail_submits[locator] -= 1
                raise FetchFailure("download button missing", locator=locator)
            job_id = f"job-{len(self.submits)}"
            if self.interrupt[locator] > 0:
                self.interrupt[locator] -= 1
                status = FetchStatus.INTERRUPTED
            elif self.stall[locator] > 0:
                self.stall[locator] -= 1
                status = FetchStatus.PENDING
            else:
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_bytes(self.payload)
                self.written.append(destination)
                status = FetchStatus.COMPLETE
            self._jobs[job_id] = (locator, destination, status)
        if self.on_submit is not None:
            self.on_submit(locator)
        return job_id

    def poll_status(self, job_id: str) -> FetchStatus:
        with self._lock:
            job = self._jobs.get(job_id)
        return job[2] if job else FetchStatus.INTERRUPTED

    def delete_artifact(self, job_id: str) -> None:
        with self._lock:
            self.deleted.append(job_id)
            job = self._jobs.pop(job_id, None)
        if job is not None:
            job[1].unlink(missing_ok=True)

    def successful(self) -> Counter:
        return Counter(str(path) for path in self.written)

    def close(self) -> None:
        self.closed = True


class FakeLauncher:
    """Records launches and directives; contexts become ready after ``not_ready`` refusals."""

    def __init__(self, *, not_ready: int = 0, never_ready: Iterable[str] = (), stuck: Iterable[str] = ()):
        self.not_ready = not_ready
        self.never_ready = set(never_ready)
        self.stuck = set(stuck)
        self.launched: List[Tuple[str, float]] = []
        self.delivered: List[Tuple[str, Directive]] = []
        self.attempts: Counter = Counter()
        self.closed: List[str] = []

    def launch(self, worker_id: str, start_delay: float) -> str:
        self.launched.append((worker_id, start_delay))
        return f"ctx-{worker_id}"

    def deliver(self, context_id: str, directive: Directive) -> bool:
        self.attempts[(context_id, directive)] += 1
        if context_id in self.never_ready:
            return False
        if self.attempts[(context_id, directive)] <= self.not_ready:
            return False
        self.delivered.append((context_id, directive))
        return True

    def close(self, context_id: str, timeout: float) -> bool:
        self.closed.append(context_id)
        return context_id not in self.stuck
