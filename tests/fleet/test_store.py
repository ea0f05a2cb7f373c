"""Tests for key/value stores, worker scopes, checkpoints, and the registry view."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from RecordHarvest.Fleet.checkpoints import CHECKPOINT_KEY, CheckpointStore
from RecordHarvest.Fleet.models import Checkpoint, ItemOutcome, Phase, SubItem
from RecordHarvest.Fleet.registry import Registry
from RecordHarvest.Fleet.store import MemoryStore, PersistentStore, SQLiteKeyValueStore, WorkerScope


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> PersistentStore:
    if request.param == "memory":
        yield MemoryStore()
        return
    store = SQLiteKeyValueStore(tmp_path / "kv.sqlite")
    yield store
    store.close()


class TestKeyValueContract:
    def test_get_set_remove(self, any_store: PersistentStore) -> None:
        any_store.set({"a": {"x": 1}, "b": [1, 2]})

        assert any_store.get(["a", "b", "missing"]) == {"a": {"x": 1}, "b": [1, 2]}

        any_store.remove(["a", "missing"])
        assert any_store.get(["a", "b"]) == {"b": [1, 2]}

    def test_reads_are_copies(self, any_store: PersistentStore) -> None:
        any_store.set({"a": {"x": 1}})

        value = any_store.get(["a"])["a"]
        value["x"] = 99

        assert any_store.get(["a"])["a"] == {"x": 1}

    def test_mutex_is_reentrant(self, any_store: PersistentStore) -> None:
        with any_store.mutex():
            with any_store.mutex():
                any_store.set({"n": 1})

        assert any_store.get(["n"]) == {"n": 1}

    def test_mutex_serialises_read_modify_write(self, any_store: PersistentStore) -> None:
        any_store.set({"n": 0})

        def bump() -> None:
            for _ in range(25):
                with any_store.mutex():
                    current = any_store.get(["n"])["n"]
                    any_store.set({"n": current + 1})

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert any_store.get(["n"]) == {"n": 100}


class TestSQLitePersistence:
    def test_values_survive_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "kv.sqlite"
        first = SQLiteKeyValueStore(path)
        first.set({"registry": {"next_id": 7}})
        first.close()

        second = SQLiteKeyValueStore(path)
        try:
            assert second.get(["registry"]) == {"registry": {"next_id": 7}}
        finally:
            second.close()


class TestWorkerScope:
    def test_keys_are_namespaced(self) -> None:
        store = MemoryStore()
        WorkerScope(store, "T1").set({"checkpoint": 1})
        WorkerScope(store, "T2").set({"checkpoint": 2})

        assert store.get(["worker:T1:checkpoint"]) == {"worker:T1:checkpoint": 1}
        assert WorkerScope(store, "T2").get(["checkpoint"]) == {"checkpoint": 2}

        WorkerScope(store, "T1").remove(["checkpoint"])
        assert WorkerScope(store, "T1").get(["checkpoint"]) == {}
        assert WorkerScope(store, "T2").get(["checkpoint"]) == {"checkpoint": 2}

    def test_requires_identity(self) -> None:
        with pytest.raises(ValueError):
            WorkerScope(MemoryStore(), "")


class TestCheckpointStore:
    def test_round_trip_with_sub_items(self) -> None:
        store = MemoryStore()
        checkpoints = CheckpointStore(store, "T1", now=lambda: 42.0)
        a, b = SubItem("a", "Doc a"), SubItem("b", "Doc b")
        cp = Checkpoint(
            phase=Phase.FETCHING,
            item_id=5,
            record_label="Record 5",
            sub_items=(a, b),
            sub_item=a,
            remaining=(b,),
            locator="https://records.example/5/a",
            fetch_job_id="job-1",
        )

        saved = checkpoints.save(cp)
        loaded = checkpoints.load()

        assert saved.updated_at == 42.0
        assert loaded == saved
        assert loaded.position == 1 and loaded.total == 2

    def test_unreadable_checkpoint_is_discarded(self) -> None:
        store = MemoryStore()
        WorkerScope(store, "T1").set({CHECKPOINT_KEY: {"phase": "teleporting"}})

        assert CheckpointStore(store, "T1").load() is None
        assert WorkerScope(store, "T1").get([CHECKPOINT_KEY]) == {}

    def test_next_sub_item_resets_step_counters(self) -> None:
        a, b = SubItem("a"), SubItem("b")
        cp = Checkpoint(
            phase=Phase.VERIFYING,
            item_id=1,
            sub_items=(a, b),
            sub_item=a,
            remaining=(b,),
            retries=2,
            frozen_cycles=1,
            fetch_failures=1,
            locator="x",
            fetch_job_id="j",
        )

        following = cp.next_sub_item()
        assert following.phase is Phase.CHECKING
        assert following.sub_item == b
        assert (following.retries, following.frozen_cycles, following.fetch_failures) == (0, 0, 0)
        assert following.locator is None and following.fetch_job_id is None

        finished = following.next_sub_item()
        assert finished.phase is Phase.REPORTING
        assert finished.outcome is ItemOutcome.SUCCESS


class TestRegistry:
    def test_flags_version_increments(self) -> None:
        registry = Registry(MemoryStore())

        first = registry.update_flags(stop_requested=True)
        second = registry.update_flags(stop_requested=False)

        assert (first.version, second.version) == (1, 2)
        registry.reset(start_id=1, max_id=None, probe_limit=10)
        assert registry.flags().version == 3
        assert not registry.flags().stop_requested

    def test_integer_keys_survive_json(self) -> None:
        registry = Registry(MemoryStore())
        registry.save_resolved({12: ItemOutcome.EMPTY})

        assert registry.resolved() == {12: ItemOutcome.EMPTY}

    def test_update_unknown_worker_is_ignored(self) -> None:
        registry = Registry(MemoryStore())

        assert registry.update_worker("T1", current_item=3) is None
        assert registry.fleet() == {}
