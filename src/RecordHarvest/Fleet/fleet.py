# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.fleet",
#   "purpose": "Thread-backed worker contexts, fleet control plane, and wiring from config",
#   "sections": [
#     {"id": "workercontext", "name": "WorkerContext", "anchor": "class-workercontext", "kind": "dataclass"},
#     {"id": "fleet", "name": "Fleet", "anchor": "class-fleet", "kind": "class"},
#     {"id": "open-store", "name": "open_store", "anchor": "function-open-store", "kind": "function"},
#     {"id": "load-factory", "name": "load_factory", "anchor": "function-load-factory", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Fleet control plane.

:class:`Fleet` hosts each worker on its own thread (an *execution context*)
and implements the :class:`~RecordHarvest.Fleet.interfaces.ContextLauncher`
contract the coordinator drives:

**Architecture:**

    Fleet
      ├─ Coordinator: registry, assignment, start/stop
      ├─ CooldownProtocol: fleet-wide pause and resume
      └─ WorkerContext × n
           ├─ thread: waits for ``init``, then runs a FleetWorker
           └─ events: init / pause / stop, observed by the worker's waiter

A context accepts directives only while its thread is listening, which is
why the coordinator delivers ``init`` and ``resume`` with bounded retry.

**Usage:**

    config = load_config("harvest.yaml")
    fleet = Fleet.from_config(config, inspector_factory=load_factory(config.inspector))
    fleet.start()
    fleet.join()
    fleet.shutdown()
"""

from __future__ import annotations

import importlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config.models import HarvestConfig, StoreConfig
from .cooldown import CooldownProtocol
from .coordinator import Coordinator
from .errors import FleetStateError, WorkerFailure
from .events import JsonlStatusSink, StatusBus
from .interfaces import AuthenticatorFactory, DocumentRetrievalService, InspectorFactory
from .locks import configure_lock_root
from .models import Directive, RegistrySnapshot
from .output import ArtifactLayout
from .store import MemoryStore, PersistentStore, SQLiteKeyValueStore
from .waits import StopAwareWaiter
from .worker import FleetWorker

__all__ = ["Fleet", "WorkerContext", "open_store", "load_factory"]

logger = logging.getLogger(__name__)


def open_store(config: StoreConfig) -> PersistentStore:
    """Build the shared store described by ``config``."""
    if config.lock_root is not None:
        configure_lock_root(config.lock_root)
    if config.backend == "memory":
        return MemoryStore()
    return SQLiteKeyValueStore(Path(config.path))


def load_factory(target: Optional[str]) -> Callable[..., Any]:
    """Resolve ``"package.module:callable"`` to the callable it names.

    Raises:
        ValueError: If ``target`` is empty or malformed, or the attribute is missing.
    """
    if not target or ":" not in target:
        raise ValueError(f"Expected 'module:callable', got {target!r}")
    module_name, _, attr = target.partition(":")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from exc
    if not callable(factory):
        raise ValueError(f"{target} is not callable")
    return factory


@dataclass
class WorkerContext:
    """One worker thread and the signals delivered to it."""

    context_id: str
    worker_id: str
    start_delay: float = 0.0
    init_event: threading.Event = field(default_factory=threading.Event)
    pause_event: threading.Event = field(default_factory=threading.Event)
    stop_event: threading.Event = field(default_factory=threading.Event)
    ready: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    worker: Optional[FleetWorker] = None

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class Fleet:
    """Runs a fleet of workers on threads within this process.

    Attributes:
        config: Validated harvest configuration
        coordinator: Work coordinator bound to this fleet as its launcher
        cooldown: Fleet-wide cooldown protocol shared by every worker
        failures: Fatal worker failures collected as workers halt
    """

    def __init__(
        self,
        config: HarvestConfig,
        *,
        store: PersistentStore,
        inspector_factory: InspectorFactory,
        retrieval: DocumentRetrievalService,
        output: Optional[ArtifactLayout] = None,
        authenticator_factory: Optional[AuthenticatorFactory] = None,
        events: Optional[StatusBus] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.inspector_factory = inspector_factory
        self.authenticator_factory = authenticator_factory
        self.retrieval = retrieval
        self.output = output or ArtifactLayout(
            config.output.root, suffix=config.output.artifact_suffix
        )
        self.events = events or StatusBus()
        self.coordinator = Coordinator(
            store,
            policy=config.fleet,
            launcher=self,
            output=self.output,
            events=self.events,
            sleep=sleep,
        )
        self.cooldown = CooldownProtocol(
            self.coordinator,
            config.cooldown,
            slice_seconds=config.worker.wait_slice_s,
            sleep=sleep,
        )
        self.failures: List[WorkerFailure] = []
        self._contexts: Dict[str, WorkerContext] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(
        cls,
        config: HarvestConfig,
        *,
        inspector_factory: InspectorFactory,
        authenticator_factory: Optional[AuthenticatorFactory] = None,
        retrieval: Optional[DocumentRetrievalService] = None,
    ) -> "Fleet":
        """Wire store, retrieval service, output layout, and status sink from ``config``."""
        from .retrieval import HttpDocumentRetrieval

        events = StatusBus()
        if config.output.status_log is not None:
            events.subscribe(JsonlStatusSink(config.output.status_log))
        return cls(
            config,
            store=open_store(config.store),
            inspector_factory=inspector_factory,
            authenticator_factory=authenticator_factory,
            retrieval=retrieval or HttpDocumentRetrieval(config.http),
            events=events,
        )

    # ── ContextLauncher ─────────────────────────────────────────────────────

    def launch(self, worker_id: str, start_delay: float) -> str:
        context = WorkerContext(
            context_id=f"ctx-{uuid.uuid4().hex[:12]}",
            worker_id=worker_id,
            start_delay=start_delay,
        )
        with self._lock:
            self._contexts[context.context_id] = context
        self._spawn(context)
        return context.context_id

    def deliver(self, context_id: str, directive: Directive) -> bool:
        with self._lock:
            context = self._contexts.get(context_id)
        if context is None or not context.ready.is_set():
            return False
        if directive is Directive.INIT:
            context.init_event.set()
        elif directive is Directive.PAUSE:
            context.pause_event.set()
        elif directive is Directive.RESUME:
            context.pause_event.clear()
        elif directive is Directive.STOP:
            context.stop_event.set()
        return True

    def close(self, context_id: str, timeout: float) -> bool:
        with self._lock:
            context = self._contexts.pop(context_id, None)
        if context is None:
            return True
        context.stop_event.set()
        thread = context.thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ── Context threads ─────────────────────────────────────────────────────

    def _spawn(self, context: WorkerContext) -> None:
        context.thread = threading.Thread(
            target=self._context_main,
            args=(context,),
            daemon=True,
            name=f"harvest-{context.worker_id}",
        )
        context.thread.start()

    def _context_main(self, context: WorkerContext) -> None:
        context.ready.set()
        slice_seconds = self.config.worker.wait_slice_s
        while not context.init_event.wait(slice_seconds):
            if context.stop_event.is_set():
                context.ready.clear()
                return

        worker = self._build_worker(context)
        context.worker = worker
        try:
            phase = worker.run()
            logger.debug(f"Context {context.context_id} ({context.worker_id}) exited in {phase.value}")
        finally:
            context.ready.clear()
            if worker.failure is not None:
                with self._lock:
                    self.failures.append(worker.failure)

    def _build_worker(self, context: WorkerContext) -> FleetWorker:
        waiter = StopAwareWaiter(
            self.coordinator.registry,
            stop_event=context.stop_event,
            pause_event=context.pause_event,
            slice_seconds=self.config.worker.wait_slice_s,
        )
        authenticator = (
            self.authenticator_factory(context.worker_id) if self.authenticator_factory else None
        )
        return FleetWorker(
            context_id=context.context_id,
            coordinator=self.coordinator,
            inspector=self.inspector_factory(context.worker_id),
            retrieval=self.retrieval,
            output=self.output,
            waiter=waiter,
            policy=self.config.worker,
            authenticator=authenticator,
            cooldown=self.cooldown,
            events=self.events,
            start_delay=context.start_delay,
        )

    # ── Control plane ───────────────────────────────────────────────────────

    def start(
        self,
        worker_count: Optional[int] = None,
        start_id: Optional[int] = None,
        max_id: Optional[int] = None,
    ) -> List[str]:
        """Start a fleet; unspecified arguments come from ``config.fleet``."""
        policy = self.config.fleet
        return self.coordinator.start_fleet(
            worker_count if worker_count is not None else policy.worker_count,
            start_id if start_id is not None else policy.start_id,
            max_id if max_id is not None else policy.max_id,
        )

    def stop(self) -> None:
        """User stop: every worker exits and clears its checkpoint."""
        self.coordinator.broadcast_stop(user_requested=True)
        self.cooldown.join(self.config.fleet.teardown_timeout_s)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every context thread to exit; ``True`` if they all did."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            contexts = list(self._contexts.values())
        for context in contexts:
            if context.thread is None:
                continue
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            context.thread.join(remaining)
        return not any(context.alive for context in contexts)

    def restart_worker(self, worker_id: str, *, timeout: Optional[float] = None) -> str:
        """Kill a worker's thread and host a fresh worker on the same context.

        The stop is local to the context, so the worker keeps its checkpoint
        and the replacement resumes from it.

        Raises:
            FleetStateError: If the worker is unknown or its thread will not exit.
        """
        timeout = self.config.fleet.teardown_timeout_s if timeout is None else timeout
        with self._lock:
            context = next(
                (ctx for ctx in self._contexts.values() if ctx.worker_id == worker_id), None
            )
        if context is None:
            raise FleetStateError(f"No execution context hosts worker {worker_id}")

        context.stop_event.set()
        if context.thread is not None:
            context.thread.join(timeout)
            if context.thread.is_alive():
                raise FleetStateError(f"Worker {worker_id} did not exit within {timeout}s")

        replacement = WorkerContext(context_id=context.context_id, worker_id=worker_id)
        replacement.init_event.set()
        if context.pause_event.is_set():
            replacement.pause_event.set()
        with self._lock:
            self._contexts[context.context_id] = replacement
        self.events.emit(worker_id, "Execution context reloaded")
        self._spawn(replacement)
        return replacement.context_id

    def status(self) -> Dict[str, Any]:
        snapshot: RegistrySnapshot = self.coordinator.snapshot()
        with self._lock:
            contexts = {ctx.worker_id: ctx.alive for ctx in self._contexts.values()}
            failures = list(self.failures)
        return {
            "snapshot": snapshot,
            "threads": contexts,
            "cooldown": self.cooldown.state.value,
            "failures": failures,
        }

    def shutdown(self) -> None:
        """Release the retrieval service and the store."""
        closer = getattr(self.retrieval, "close", None)
        if callable(closer):
            closer()
        store_close = getattr(self.store, "close", None)
        if callable(store_close):
            store_close()
