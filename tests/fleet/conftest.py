"""Shared fixtures for harvest fleet tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from RecordHarvest.Fleet.config.models import CooldownPolicy, FleetPolicy, WorkerPolicy
from RecordHarvest.Fleet.coordinator import Coordinator
from RecordHarvest.Fleet.locks import configure_lock_root, reset_lock_root
from RecordHarvest.Fleet.output import ArtifactLayout
from RecordHarvest.Fleet.store import MemoryStore
from RecordHarvest.Fleet.waits import StopAwareWaiter
from RecordHarvest.Fleet.worker import FleetWorker

from fakes import FakeLauncher, FakeRetrieval, FakeSite


@pytest.fixture(autouse=True)
def lock_root(tmp_path: Path) -> Iterator[Path]:
    """Keep lock files inside the test's temporary directory."""
    lock_dir = configure_lock_root(tmp_path / "run")
    yield lock_dir
    reset_lock_root()


@pytest.fixture
def fleet_policy() -> FleetPolicy:
    return FleetPolicy(stagger_seconds=0.0, init_delivery_interval_s=0.0, teardown_timeout_s=2.0)


@pytest.fixture
def worker_policy() -> WorkerPolicy:
    return WorkerPolicy(
        auth_max_attempts=2,
        auth_retry_s=0.0,
        identify_timeout_s=0.05,
        identify_poll_s=0.01,
        locate_max_retries=1,
        locate_backoff_s=0.0,
        fetch_poll_attempts=5,
        fetch_poll_interval_s=0.01,
        fetch_max_failures=3,
        frozen_pause_s=0.0,
        frozen_max_cycles=2,
        wait_slice_s=0.01,
    )


@pytest.fixture
def cooldown_policy() -> CooldownPolicy:
    return CooldownPolicy(
        pause_seconds=0.3,
        min_pause_seconds=0.05,
        max_pause_seconds=0.3,
        resume_delivery_attempts=3,
        resume_delivery_interval_s=0.0,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def output(tmp_path: Path) -> ArtifactLayout:
    return ArtifactLayout(tmp_path / "out")


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def retrieval() -> FakeRetrieval:
    return FakeRetrieval()


@pytest.fixture
def coordinator(
    store: MemoryStore, fleet_policy: FleetPolicy, launcher: FakeLauncher, output: ArtifactLayout
) -> Coordinator:
    return Coordinator(
        store, policy=fleet_policy, launcher=launcher, output=output, sleep=lambda _: None
    )


@pytest.fixture
def make_worker(
    coordinator: Coordinator,
    output: ArtifactLayout,
    retrieval: FakeRetrieval,
    worker_policy: WorkerPolicy,
) -> Callable[..., FleetWorker]:
    """Build a worker bound to ``ctx-<worker_id>`` as registered by ``FakeLauncher``."""

    def _make(site: FakeSite, worker_id: str = "T1", **kwargs: Any) -> FleetWorker:
        waiter = kwargs.pop(
            "waiter",
            StopAwareWaiter(coordinator.registry, slice_seconds=worker_policy.wait_slice_s),
        )
        return FleetWorker(
            context_id=f"ctx-{worker_id}",
            coordinator=coordinator,
            inspector=site.inspector(worker_id),
            retrieval=kwargs.pop("retrieval", retrieval),
            output=output,
            waiter=waiter,
            policy=kwargs.pop("policy", worker_policy),
            **kwargs,
        )

    return _make
