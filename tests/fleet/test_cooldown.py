"""Tests for the fleet-wide cooldown protocol."""

from __future__ import annotations

import time

import pytest

from RecordHarvest.Fleet.config.models import CooldownPolicy, FleetPolicy
from RecordHarvest.Fleet.cooldown import CooldownProtocol, CooldownState
from RecordHarvest.Fleet.coordinator import COORDINATOR_ID, Coordinator
from RecordHarvest.Fleet.models import Directive
from RecordHarvest.Fleet.store import MemoryStore

from fakes import FakeLauncher


@pytest.fixture
def protocol(coordinator: Coordinator, cooldown_policy: CooldownPolicy) -> CooldownProtocol:
    coordinator.start_fleet(2)
    return CooldownProtocol(coordinator, cooldown_policy, slice_seconds=0.01)


class TestTrigger:
    def test_freezes_fleet_and_delivers_pause(
        self, protocol: CooldownProtocol, coordinator: Coordinator, launcher: FakeLauncher
    ) -> None:
        until = protocol.trigger("T1", "throttle signal detected")

        flags = coordinator.flags()
        assert flags.frozen
        assert flags.cooldown_until == until
        assert flags.cooldown_reason == "throttle signal detected"
        assert ("ctx-T1", Directive.PAUSE) in launcher.delivered
        assert ("ctx-T2", Directive.PAUSE) in launcher.delivered
        assert protocol.join(timeout=5)

    def test_resumes_fleet_after_deadline(
        self, protocol: CooldownProtocol, coordinator: Coordinator, launcher: FakeLauncher
    ) -> None:
        started = time.time()
        protocol.trigger("T1", "throttled")

        assert protocol.join(timeout=5)
        assert time.time() - started >= 0.25
        assert not coordinator.flags().frozen
        assert coordinator.flags().cooldown_until is None
        assert ("ctx-T1", Directive.RESUME) in launcher.delivered
        assert ("ctx-T2", Directive.RESUME) in launcher.delivered
        assert protocol.history[0].outcome == "resumed"
        assert protocol.state is CooldownState.NORMAL
        assert coordinator.events.recent(COORDINATOR_ID)[-1].level == "success"

    def test_concurrent_triggers_are_deduplicated(self, protocol: CooldownProtocol) -> None:
        first = protocol.trigger("T1", "throttled")
        second = protocol.trigger("T2", "throttled")

        assert second == first
        assert len(protocol.history) == 1
        assert protocol.history[0].triggered_by == "T1"
        assert protocol.join(timeout=5)

    def test_requested_pause_is_clamped(self, protocol: CooldownProtocol) -> None:
        protocol.trigger("T1", "throttled", pause_seconds=1000)

        cycle = protocol.history[0]
        assert cycle.until - cycle.started_at == pytest.approx(0.3)
        assert protocol.join(timeout=5)

    def test_stop_during_wait_aborts_resume(
        self, protocol: CooldownProtocol, coordinator: Coordinator, launcher: FakeLauncher
    ) -> None:
        protocol.trigger("T1", "throttled")
        coordinator.broadcast_stop()

        assert protocol.join(timeout=5)
        assert protocol.history[0].outcome == "aborted"
        flags = coordinator.flags()
        assert flags.stop_requested
        assert not flags.frozen
        assert not any(directive is Directive.RESUME for _, directive in launcher.delivered)


class TestResumeDelivery:
    def _protocol(self, store: MemoryStore, launcher: FakeLauncher) -> CooldownProtocol:
        coordinator = Coordinator(
            store,
            policy=FleetPolicy(stagger_seconds=0.0, init_delivery_interval_s=0.0),
            launcher=launcher,
            sleep=lambda _: None,
        )
        coordinator.start_fleet(1)
        policy = CooldownPolicy(
            pause_seconds=0.05,
            min_pause_seconds=0.01,
            max_pause_seconds=0.05,
            resume_delivery_attempts=3,
            resume_delivery_interval_s=0.0,
        )
        return CooldownProtocol(coordinator, policy, background=False, slice_seconds=0.01)

    def test_retries_until_context_is_ready(self, store: MemoryStore) -> None:
        launcher = FakeLauncher(not_ready=2)
        protocol = self._protocol(store, launcher)

        protocol.trigger("T1", "throttled")

        assert launcher.attempts[("ctx-T1", Directive.RESUME)] == 3
        assert protocol.history[0].undelivered == []

    def test_reports_contexts_that_never_resume(self, store: MemoryStore) -> None:
        launcher = FakeLauncher()
        protocol = self._protocol(store, launcher)
        launcher.never_ready.add("ctx-T1")

        protocol.trigger("T1", "throttled")

        cycle = protocol.history[0]
        assert cycle.undelivered == ["T1"]
        assert launcher.attempts[("ctx-T1", Directive.RESUME)] == 3
        assert protocol.coordinator.events.recent(COORDINATOR_ID)[-1].level == "error"

    def test_trigger_after_cycle_starts_new_cycle(self, store: MemoryStore) -> None:
        protocol = self._protocol(store, FakeLauncher())

        protocol.trigger("T1", "throttled")
        protocol.trigger("T1", "throttled again")

        assert [cycle.reason for cycle in protocol.history] == ["throttled", "throttled again"]


def test_policy_rejects_inverted_bounds() -> None:
    with pytest.raises(ValueError):
        CooldownPolicy(pause_seconds=5, min_pause_seconds=10, max_pause_seconds=1)


def test_policy_clamp_defaults() -> None:
    policy = CooldownPolicy()

    assert policy.clamp(None) == 100.0
    assert policy.clamp(0) == 1.0
    assert policy.clamp(500) == 100.0
