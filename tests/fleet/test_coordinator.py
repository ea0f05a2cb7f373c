"""Tests for the work coordinator.

Tests cover:
- Fleet start (staggered launch, init delivery retry, resume seeding)
- Work assignment (ordering, skip rules, max_id, probe limit, pointer)
- Completion and release (idempotency, lock ownership)
- Stop broadcast and teardown
- Mutual exclusion under concurrent requests
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from RecordHarvest.Fleet.checkpoints import CHECKPOINT_KEY
from RecordHarvest.Fleet.config.models import FleetPolicy
from RecordHarvest.Fleet.coordinator import Coordinator
from RecordHarvest.Fleet.errors import FleetStateError
from RecordHarvest.Fleet.models import (
    CompletedEntry,
    Directive,
    ItemOutcome,
    ItemStatus,
    LockEntry,
    SubItem,
    WorkerStatus,
)
from RecordHarvest.Fleet.output import ArtifactLayout
from RecordHarvest.Fleet.store import MemoryStore, SQLiteKeyValueStore, WorkerScope

from fakes import FakeLauncher


def _assign(coordinator: Coordinator, worker_id: str) -> int | None:
    return coordinator.request_work(worker_id).item_id


class TestStartFleet:
    def test_launches_staggered_workers(self, store: MemoryStore, output: ArtifactLayout) -> None:
        """Workers T1..Tn start (i-1)*stagger seconds apart and each receives init."""
        launcher = FakeLauncher()
        coordinator = Coordinator(
            store,
            policy=FleetPolicy(stagger_seconds=10.0, init_delivery_interval_s=0.0),
            launcher=launcher,
            output=output,
            sleep=lambda _: None,
        )

        worker_ids = coordinator.start_fleet(3, 1, 10)

        assert worker_ids == ["T1", "T2", "T3"]
        assert launcher.launched == [("T1", 0.0), ("T2", 10.0), ("T3", 20.0)]
        assert launcher.delivered == [
            ("ctx-T1", Directive.INIT),
            ("ctx-T2", Directive.INIT),
            ("ctx-T3", Directive.INIT),
        ]
        fleet = coordinator.snapshot().fleet
        assert fleet["T2"].context_id == "ctx-T2"
        assert fleet["T2"].status is WorkerStatus.INITIALIZING

    def test_init_delivery_retries_until_ready(
        self, store: MemoryStore, fleet_policy: FleetPolicy
    ) -> None:
        launcher = FakeLauncher(not_ready=2)
        coordinator = Coordinator(store, policy=fleet_policy, launcher=launcher, sleep=lambda _: None)

        coordinator.start_fleet(1)

        assert launcher.attempts[("ctx-T1", Directive.INIT)] == 3
        assert ("ctx-T1", Directive.INIT) in launcher.delivered

    def test_init_never_ready_reports_error(self, store: MemoryStore) -> None:
        launcher = FakeLauncher(never_ready={"ctx-T1"})
        policy = FleetPolicy(
            stagger_seconds=0.0, init_delivery_attempts=3, init_delivery_interval_s=0.0
        )
        coordinator = Coordinator(store, policy=policy, launcher=launcher, sleep=lambda _: None)

        coordinator.start_fleet(2)

        assert launcher.attempts[("ctx-T1", Directive.INIT)] == 3
        assert coordinator.events.recent("T1")[-1].level == "error"
        assert ("ctx-T2", Directive.INIT) in launcher.delivered

    def test_resume_seeds_completed_from_output(
        self, coordinator: Coordinator, output: ArtifactLayout
    ) -> None:
        output.write_manifest(2, "Record 2", [SubItem("a", "Doc a")], worker_id="T9")

        coordinator.start_fleet(1, 1, 4)

        assert set(coordinator.snapshot().completed) == {2}
        assert [_assign(coordinator, "T1") for _ in range(4)] == [1, 3, 4, None]

    def test_resume_disabled_ignores_output(
        self, coordinator: Coordinator, output: ArtifactLayout
    ) -> None:
        output.write_manifest(2, "Record 2", [SubItem("a", "Doc a")])

        coordinator.start_fleet(1, 1, 4, resume=False)

        assert coordinator.snapshot().completed == {}

    def test_restart_stops_previous_fleet(
        self, coordinator: Coordinator, launcher: FakeLauncher
    ) -> None:
        coordinator.start_fleet(1, 1, 5)
        _assign(coordinator, "T1")

        coordinator.start_fleet(2, 1, 5)

        assert ("ctx-T1", Directive.STOP) in launcher.delivered
        assert "ctx-T1" in launcher.closed
        snapshot = coordinator.snapshot()
        assert snapshot.flags.stop_requested is False
        assert snapshot.locks == {}
        assert snapshot.next_id == 1
        assert set(snapshot.fleet) == {"T1", "T2"}

    def test_clears_stale_checkpoints(self, coordinator: Coordinator, store: MemoryStore) -> None:
        WorkerScope(store, "T1").set({CHECKPOINT_KEY: {"phase": "checking", "item_id": 9}})

        coordinator.start_fleet(1)

        assert WorkerScope(store, "T1").get([CHECKPOINT_KEY]) == {}

    @pytest.mark.parametrize(
        ("worker_count", "start_id", "max_id"),
        [(0, 1, None), (1, 0, None), (1, 5, 3)],
    )
    def test_rejects_invalid_arguments(
        self, coordinator: Coordinator, worker_count: int, start_id: int, max_id: int | None
    ) -> None:
        with pytest.raises(FleetStateError):
            coordinator.start_fleet(worker_count, start_id, max_id)

    def test_requires_launcher(self, store: MemoryStore) -> None:
        with pytest.raises(FleetStateError, match="launcher"):
            Coordinator(store).start_fleet(1)


class TestRequestWork:
    @pytest.fixture
    def started(self, coordinator: Coordinator) -> Coordinator:
        coordinator.start_fleet(2, 1, 5)
        return coordinator

    def test_assigns_ids_in_order(self, started: Coordinator) -> None:
        assert _assign(started, "T1") == 1
        assert _assign(started, "T2") == 2
        assert _assign(started, "T1") == 3
        assert started.snapshot().next_id == 4

    def test_done_past_max_id(self, started: Coordinator) -> None:
        assigned = [_assign(started, "T1") for _ in range(5)]

        assert assigned == [1, 2, 3, 4, 5]
        assert started.request_work("T1").done
        assert started.request_work("T2").done

    def test_skips_ids_locked_by_another_worker(self, started: Coordinator) -> None:
        started.registry.save_locks({1: LockEntry(holder="T2", acquired_at=0.0)})

        assert _assign(started, "T1") == 2

    def test_own_lock_is_eligible(self, started: Coordinator) -> None:
        started.registry.save_locks({1: LockEntry(holder="T1", acquired_at=0.0)})

        assert _assign(started, "T1") == 1
        assert started.snapshot().locks[1].holder == "T1"

    def test_request_while_holding_lock_gets_next_id(self, started: Coordinator) -> None:
        assert _assign(started, "T1") == 1

        assert _assign(started, "T1") == 2
        assert set(started.snapshot().locks) == {1, 2}

    def test_released_ids_are_not_revisited(self, started: Coordinator) -> None:
        first = _assign(started, "T1")
        started.release_not_found("T1", first)

        later = [_assign(started, "T1") for _ in range(5)]

        assert first not in later
        assert later[-1] is None

    def test_pointer_never_moves_backwards(self, started: Coordinator) -> None:
        for _ in range(3):
            _assign(started, "T1")
        started.complete_work("T1", 1)

        assert started.snapshot().next_id == 4
        assert _assign(started, "T2") == 4

    def test_probe_limit_bounds_a_single_request(self, store: MemoryStore, launcher: FakeLauncher) -> None:
        coordinator = Coordinator(store, launcher=launcher)
        coordinator.registry.reset(
            start_id=1,
            max_id=None,
            probe_limit=3,
            completed={
                item: CompletedEntry(output_ref=None, completed_at=0.0, holder=None)
                for item in (1, 2, 3)
            },
        )

        assert coordinator.request_work("T1").done
        assert coordinator.snapshot().next_id == 1

    def test_unbounded_range_without_max_id(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(1)

        assert [_assign(coordinator, "T1") for _ in range(3)] == [1, 2, 3]

    def test_unbounded_scan_ends_after_consecutive_not_found(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(1)
        for _ in range(5):
            coordinator.release_not_found("T1", _assign(coordinator, "T1"))

        assert coordinator.request_work("T1").done
        assert coordinator.snapshot().next_id == 6

    def test_existing_record_breaks_the_not_found_run(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(1)
        for _ in range(4):
            coordinator.release_not_found("T1", _assign(coordinator, "T1"))
        coordinator.release_empty("T1", _assign(coordinator, "T1"))
        for _ in range(4):
            coordinator.release_not_found("T1", _assign(coordinator, "T1"))

        assert _assign(coordinator, "T1") == 10

    def test_ids_in_flight_do_not_break_the_not_found_run(
        self, coordinator: Coordinator
    ) -> None:
        coordinator.start_fleet(2)
        assert _assign(coordinator, "T2") == 1
        for _ in range(5):
            coordinator.release_not_found("T1", _assign(coordinator, "T1"))

        assert coordinator.request_work("T1").done
        assert coordinator.snapshot().locks[1].holder == "T2"

    def test_bounded_range_ignores_not_found_run(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(1, 1, 10)
        for _ in range(6):
            coordinator.release_not_found("T1", _assign(coordinator, "T1"))

        assert _assign(coordinator, "T1") == 7

    def test_stop_returns_done_until_cleared(self, started: Coordinator) -> None:
        started.broadcast_stop()

        assert started.request_work("T1").done

        started.clear_stop()
        assert _assign(started, "T1") == 1

    def test_marks_worker_state(self, started: Coordinator) -> None:
        item = _assign(started, "T1")
        record = started.snapshot().fleet["T1"]
        assert record.status is WorkerStatus.WORKING
        assert record.current_item == item

        started.complete_work("T1", item)
        record = started.snapshot().fleet["T1"]
        assert record.status is WorkerStatus.IDLE
        assert record.current_item is None


class TestCompleteWork:
    @pytest.fixture
    def started(self, coordinator: Coordinator) -> Coordinator:
        coordinator.start_fleet(2, 1, 5)
        return coordinator

    def test_success_records_completion_and_releases_lock(self, started: Coordinator) -> None:
        item = _assign(started, "T1")

        started.complete_work("T1", item, ItemOutcome.SUCCESS, "out/1/manifest.json")

        snapshot = started.snapshot()
        assert snapshot.locks == {}
        assert snapshot.completed[item].output_ref == "out/1/manifest.json"
        assert snapshot.completed[item].holder == "T1"
        assert snapshot.status_of(item) is ItemStatus.COMPLETED

    def test_is_idempotent(self, started: Coordinator) -> None:
        item = _assign(started, "T1")
        started.complete_work("T1", item, output_ref="first")
        started.complete_work("T1", item, output_ref="second")

        snapshot = started.snapshot()
        assert list(snapshot.completed) == [item]
        assert snapshot.completed[item].output_ref == "first"

    def test_keeps_lock_held_by_another_worker(self, started: Coordinator) -> None:
        item = _assign(started, "T1")

        started.complete_work("T2", item)

        assert started.snapshot().locks[item].holder == "T1"

    def test_release_causes_are_recorded(self, started: Coordinator) -> None:
        first = _assign(started, "T1")
        second = _assign(started, "T2")

        started.release_not_found("T1", first)
        started.release_empty("T2", second)

        snapshot = started.snapshot()
        assert snapshot.status_of(first) is ItemStatus.NOT_FOUND
        assert snapshot.status_of(second) is ItemStatus.EMPTY
        assert snapshot.completed == {}
        assert snapshot.locks == {}


class TestBroadcastStop:
    def test_tears_down_fleet(self, coordinator: Coordinator, launcher: FakeLauncher) -> None:
        coordinator.start_fleet(2, 1, 5)
        _assign(coordinator, "T1")

        flags = coordinator.broadcast_stop()

        assert flags.stop_requested and flags.user_stop
        snapshot = coordinator.snapshot()
        assert snapshot.fleet == {}
        assert snapshot.locks == {}
        assert ("ctx-T1", Directive.STOP) in launcher.delivered
        assert sorted(launcher.closed) == ["ctx-T1", "ctx-T2"]

    def test_is_idempotent(self, coordinator: Coordinator, launcher: FakeLauncher) -> None:
        coordinator.start_fleet(1)
        coordinator.broadcast_stop()
        coordinator.broadcast_stop()

        assert launcher.closed == ["ctx-T1"]
        assert coordinator.flags().stop_requested

    def test_stuck_context_raises(self, store: MemoryStore, fleet_policy: FleetPolicy) -> None:
        launcher = FakeLauncher(stuck={"ctx-T2"})
        coordinator = Coordinator(store, policy=fleet_policy, launcher=launcher, sleep=lambda _: None)
        coordinator.start_fleet(2)

        with pytest.raises(FleetStateError, match="T2"):
            coordinator.broadcast_stop()

    def test_without_launcher_only_sets_flags(self, store: MemoryStore) -> None:
        coordinator = Coordinator(store)

        flags = coordinator.broadcast_stop()

        assert flags.stop_requested
        assert coordinator.request_work("T1").done


class TestFleetMembership:
    def test_get_assignment_by_context(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(2)

        assert coordinator.get_assignment("ctx-T2") == "T2"
        assert coordinator.get_assignment("ctx-unknown") is None

    def test_retire_worker(self, coordinator: Coordinator) -> None:
        coordinator.start_fleet(2)

        coordinator.retire_worker("T1")
        coordinator.retire_worker("T1")

        assert set(coordinator.snapshot().fleet) == {"T2"}

    def test_pause_and_lift(self, coordinator: Coordinator, launcher: FakeLauncher) -> None:
        coordinator.start_fleet(1)

        flags = coordinator.pause_fleet(1000.0, "throttled")
        assert flags.frozen and flags.cooldown_until == 1000.0
        assert ("ctx-T1", Directive.PAUSE) in launcher.delivered

        flags = coordinator.lift_pause()
        assert not flags.frozen and flags.cooldown_until is None


class TestMutualExclusion:
    def test_concurrent_requests_never_share_an_id(self, tmp_path: Path) -> None:
        """Many threads hammering request_work on a SQLite store get disjoint ids."""
        store = SQLiteKeyValueStore(tmp_path / "fleet.sqlite")
        coordinator = Coordinator(store)
        coordinator.registry.reset(start_id=1, max_id=120, probe_limit=5000)
        assigned: list[int] = []
        guard = threading.Lock()

        def drain(worker_id: str) -> None:
            while True:
                assignment = coordinator.request_work(worker_id)
                if assignment.done:
                    return
                with guard:
                    assigned.append(assignment.item_id)

        threads = [threading.Thread(target=drain, args=(f"T{i}",)) for i in range(1, 7)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        try:
            assert sorted(assigned) == list(range(1, 121))
            assert len(coordinator.snapshot().locks) == 120
        finally:
            store.close()
