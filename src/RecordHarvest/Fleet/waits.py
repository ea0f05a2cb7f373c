"""Stop-aware waiting for worker threads.

Every wait a worker performs (artifact polling, retry backoff, local freezes,
cooldown holds) goes through :class:`StopAwareWaiter`. Waits are sliced; at
each slice boundary the waiter re-reads the global flags from the store and
checks the context's own events, raising:

- :class:`~RecordHarvest.Fleet.errors.Stopped` once a stop is requested, and
- :class:`~RecordHarvest.Fleet.errors.Suspended` once the fleet is paused.

Reading flags from the store rather than from memory means a worker recreated
mid-cooldown observes the same pause as its peers.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from .errors import Stopped, Suspended
from .models import GlobalFlags
from .registry import Registry

__all__ = ["StopAwareWaiter"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StopAwareWaiter:
    """Sliced waits interrupted by the global stop and pause flags."""

    def __init__(
        self,
        registry: Registry,
        *,
        stop_event: Optional[threading.Event] = None,
        pause_event: Optional[threading.Event] = None,
        slice_seconds: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.stop_event = stop_event or threading.Event()
        self.pause_event = pause_event or threading.Event()
        self.slice_seconds = max(float(slice_seconds), 0.001)
        self.clock = clock

    def check(self, *, allow_pause: bool = False) -> GlobalFlags:
        """Raise if stopped (or paused, unless ``allow_pause``); return current flags."""
        if self.stop_event.is_set():
            raise Stopped("execution context stopped")
        flags = self.registry.flags()
        if flags.stop_requested:
            raise Stopped("stop requested")
        if not allow_pause and (flags.frozen or self.pause_event.is_set()):
            raise Suspended(flags.cooldown_reason or "fleet paused")
        return flags

    def sleep(self, seconds: float, *, allow_pause: bool = False) -> None:
        """Sleep ``seconds``, checking flags at least once per slice."""
        deadline = self.clock() + max(float(seconds), 0.0)
        while True:
            self.check(allow_pause=allow_pause)
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            self.stop_event.wait(min(self.slice_seconds, remaining))

    def poll(
        self,
        query: Callable[[], Optional[T]],
        *,
        timeout: float,
        interval: float,
    ) -> Optional[T]:
        """Call ``query`` until it returns a non-``None`` value or ``timeout`` elapses."""
        deadline = self.clock() + timeout
        while True:
            self.check()
            value = query()
            if value is not None:
                return value
            if self.clock() >= deadline:
                return None
            self.sleep(min(interval, max(deadline - self.clock(), 0.0)))

    def hold_while_paused(self, now_wall: Callable[[], float] = time.time) -> None:
        """Block until the pause is lifted; raise ``Stopped`` if a stop arrives meanwhile."""
        while True:
            flags = self.check(allow_pause=True)
            if not flags.frozen and not self.pause_event.is_set():
                return
            if flags.frozen and flags.cooldown_until is not None:
                logger.debug(
                    "Holding for cooldown, %.1fs remaining", max(flags.cooldown_until - now_wall(), 0.0)
                )
            self.stop_event.wait(self.slice_seconds)
