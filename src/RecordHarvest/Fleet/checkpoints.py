"""Per-worker checkpoint persistence.

A checkpoint is written under the worker's :class:`~RecordHarvest.Fleet.store.WorkerScope`
before any step whose side effects may outlive the current context, and it is
deleted once the record has been reported. Loading a checkpoint is how a
recreated worker finds out where it was.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .models import Checkpoint
from .store import PersistentStore, WorkerScope

__all__ = ["CheckpointStore", "CHECKPOINT_KEY"]

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "checkpoint"


class CheckpointStore:
    """Load, save, and clear one worker's checkpoint."""

    def __init__(
        self,
        store: PersistentStore,
        worker_id: str,
        *,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.scope = WorkerScope(store, worker_id)
        self.now = now

    @property
    def worker_id(self) -> str:
        return self.scope.worker_id

    def load(self) -> Optional[Checkpoint]:
        raw = self.scope.get([CHECKPOINT_KEY]).get(CHECKPOINT_KEY)
        if raw is None:
            return None
        try:
            return Checkpoint.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Discarding unreadable checkpoint for {self.worker_id}: {exc}")
            self.clear()
            return None

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        stamped = checkpoint.advance(checkpoint.phase, updated_at=self.now())
        self.scope.set({CHECKPOINT_KEY: stamped.to_dict()})
        logger.debug(
            f"Checkpoint {self.worker_id}: phase={stamped.phase.value} "
            f"item={stamped.item_id} sub={stamped.sub_item.sub_id if stamped.sub_item else None}"
        )
        return stamped

    def clear(self) -> None:
        self.scope.remove([CHECKPOINT_KEY])
