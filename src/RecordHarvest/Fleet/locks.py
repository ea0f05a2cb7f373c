# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.locks",
#   "purpose": "File locking helpers for the shared registry, artifacts, and status logs",
#   "sections": [
#     {"id": "configure-lock-root", "name": "configure_lock_root", "anchor": "function-configure-lock-root", "kind": "function"},
#     {"id": "registry-lock", "name": "registry_lock", "anchor": "function-registry-lock", "kind": "function"},
#     {"id": "artifact-lock", "name": "artifact_lock", "anchor": "function-artifact-lock", "kind": "function"},
#     {"id": "status-lock", "name": "status_lock", "anchor": "function-status-lock", "kind": "function"},
#     {"id": "lock-metrics-snapshot", "name": "lock_metrics_snapshot", "anchor": "function-lock-metrics-snapshot", "kind": "function"},
#     {"id": "reset-lock-root", "name": "reset_lock_root", "anchor": "function-reset-lock-root", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Cross-process file locks for the harvest fleet.

Responsibilities
----------------
- Map logical resources (the shared registry database, artifact promotions,
  status JSONL logs) to well-known lock files under a configurable root.
- Let runners and tests isolate lock directories via
  :func:`configure_lock_root` / :func:`reset_lock_root`.
- Record acquisition and hold timings, exposed through
  :func:`lock_metrics_snapshot` for the ``status`` command.

Design Notes
------------
- Locks are :mod:`filelock` hard locks by default; ``RHV_LOCK_USE_SOFT`` opts
  into soft locks and ``RHV_LOCK_TIMEOUT_<CATEGORY>`` overrides timeouts.
- A lock file is derived from a hash of the guarded path, so two processes
  pointing at the same SQLite file contend on the same lock.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

from filelock import FileLock, SoftFileLock, Timeout

__all__ = [
    "Timeout",
    "configure_lock_root",
    "registry_lock",
    "artifact_lock",
    "status_lock",
    "lock_metrics_snapshot",
    "reset_lock_root",
]

LOGGER = logging.getLogger("RecordHarvest.Fleet.locks")
logging.getLogger("filelock").setLevel(logging.INFO)

_LOCK_DIR_NAME = "locks"
_SOFT_LOCK_ENV = "RHV_LOCK_USE_SOFT"
_LOCK_ROOT_ENV = "RHV_LOCK_ROOT"
_LOCK_TIMEOUT_ENV_PREFIX = "RHV_LOCK_TIMEOUT_"

_DEFAULT_TIMEOUTS: Dict[str, float] = {
    "registry": 10.0,
    "artifact": 30.0,
    "status": 5.0,
}

_DEFAULT_POLL_INTERVAL = 0.05  # seconds

_lock_config_guard = threading.RLock()
_lock_dir: Optional[Path] = None


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    timeout_total: int = 0
    wait_ms_samples: List[float] = field(default_factory=list)
    hold_ms_samples: List[float] = field(default_factory=list)


_metrics_guard = threading.RLock()
_metrics: Dict[str, _LockMetrics] = {}


def configure_lock_root(run_root: Path) -> Path:
    """Set the base directory where lock files are created.

    Args:
        run_root: Directory owning the run state. A ``locks`` subdirectory is
            created inside it.

    Returns:
        Path to the configured lock directory.
    """

    resolved = Path(run_root).expanduser().resolve(strict=False)
    lock_dir = resolved / _LOCK_DIR_NAME
    lock_dir.mkdir(parents=True, exist_ok=True)
    with _lock_config_guard:
        global _lock_dir
        _lock_dir = lock_dir
    return lock_dir


def reset_lock_root() -> None:
    """Forget the configured lock root so the next lock recomputes it."""

    with _lock_config_guard:
        global _lock_dir
        _lock_dir = None


def _get_lock_dir() -> Path:
    with _lock_config_guard:
        if _lock_dir is not None:
            return _lock_dir
        env_root = os.getenv(_LOCK_ROOT_ENV)
        if env_root:
            return configure_lock_root(Path(env_root))
    return configure_lock_root(Path.cwd())


def _timeout_for(category: str, override: Optional[float]) -> float:
    if override is not None:
        return float(override)
    env_name = f"{_LOCK_TIMEOUT_ENV_PREFIX}{category.upper()}"
    raw = os.getenv(env_name)
    if raw:
        try:
            value = float(raw)
            if value < 0:
                raise ValueError
            return value
        except ValueError:
            LOGGER.warning("Invalid %s value '%s'; falling back to default.", env_name, raw)
    return _DEFAULT_TIMEOUTS[category]


def _lock_file_for(category: str, target: Path) -> Path:
    digest = hashlib.sha256(str(target).encode("utf-8")).hexdigest()[:24]
    return _get_lock_dir() / f"{category}.{digest}.lock"


def _record(category: str, wait_ms: float, hold_ms: Optional[float]) -> None:
    with _metrics_guard:
        metrics = _metrics.setdefault(category, _LockMetrics())
        metrics.wait_ms_samples.append(wait_ms)
        if hold_ms is None:
            metrics.timeout_total += 1
        else:
            metrics.acquire_total += 1
            metrics.hold_ms_samples.append(hold_ms)


def _p95(samples: Iterable[float]) -> float:
    ordered = sorted(float(value) for value in samples if value >= 0)
    if not ordered:
        return 0.0
    return ordered[int((len(ordered) - 1) * 0.95)]


@contextlib.contextmanager
def _category_lock(
    category: str, target: Path, *, timeout: Optional[float] = None
) -> Iterator[None]:
    resolved_target = Path(target).expanduser().resolve(strict=False)
    lock_file = _lock_file_for(category, resolved_target)
    lock_cls = SoftFileLock if os.getenv(_SOFT_LOCK_ENV) else FileLock
    lock_timeout = _timeout_for(category, timeout)
    lock = lock_cls(str(lock_file), timeout=lock_timeout, thread_local=False)

    start = time.monotonic()
    try:
        lock.acquire(timeout=lock_timeout, poll_interval=_DEFAULT_POLL_INTERVAL)
    except Timeout:
        wait_ms = (time.monotonic() - start) * 1000.0
        LOGGER.info(
            "lock-timeout category=%s wait_ms=%.3f lock_file=%s target=%s",
            category,
            wait_ms,
            lock_file,
            resolved_target,
        )
        _record(category, wait_ms, None)
        raise

    acquired_at = time.monotonic()
    wait_ms = (acquired_at - start) * 1000.0
    try:
        yield None
    finally:
        lock.release()
        hold_ms = (time.monotonic() - acquired_at) * 1000.0
        _record(category, wait_ms, hold_ms)
        LOGGER.debug(
            "lock-release category=%s hold_ms=%.3f wait_ms=%.3f", category, hold_ms, wait_ms
        )


def registry_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Return a context manager serialising read-modify-write of the shared registry."""

    return _category_lock("registry", path, timeout=timeout)


def artifact_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Return a context manager guarding artifact promotion into the output tree."""

    return _category_lock("artifact", path, timeout=timeout)


def status_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Return a context manager guarding status JSONL appends."""

    return _category_lock("status", path, timeout=timeout)


def lock_metrics_snapshot(*, reset: bool = False) -> Dict[str, Dict[str, Union[int, float]]]:
    """Return collected lock metrics, optionally clearing them."""

    with _metrics_guard:
        snapshot: Dict[str, Dict[str, Union[int, float]]] = {}
        for category, metrics in _metrics.items():
            summary: Dict[str, Union[int, float]] = {
                "acquire_total": metrics.acquire_total,
                "timeout_total": metrics.timeout_total,
                "wait_ms_p95": _p95(metrics.wait_ms_samples),
            }
            if metrics.hold_ms_samples:
                summary["hold_ms_p95"] = _p95(metrics.hold_ms_samples)
            snapshot[category] = summary
        if reset:
            _metrics.clear()
        return snapshot
