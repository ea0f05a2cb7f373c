"""Tenacity retry policies used across the fleet.

Three kinds of retry exist:

- **Delivery**: handing a directive (``init``/``resume``) to a worker context
  that may not be ready yet. Retried while delivery returns ``False``, with a
  fixed interval and an attempt ceiling.
- **Authentication**: bounded iterative retry on ``TransientUIError``. This
  replaces the self-recursive login retry of older tooling.
- **HTTP download**: transient httpx transport errors and 5xx responses.

Worker-side policies accept a ``sleep`` callable so that their waits go
through the stop-aware waiter and abort on stop or pause.

Example:
    >>> policy = delivery_policy(max_attempts=30, interval=1.0)
    >>> delivered = policy(launcher.deliver, context_id, Directive.RESUME)
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .errors import TransientUIError

logger = logging.getLogger(__name__)

__all__ = [
    "auth_policy",
    "delivery_policy",
    "deliver_with_retry",
    "http_policy",
]


def delivery_policy(
    *,
    max_attempts: int = 30,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Retrying:
    """Retry a delivery callable while it returns ``False``.

    The last ``False`` is returned rather than raised once attempts run out
    (``retry_error_callback``), so callers decide how loudly to fail.
    """

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda delivered: delivered is False),
        retry_error_callback=lambda state: state.outcome.result(),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        sleep=sleep,
    )


def deliver_with_retry(
    deliver: Callable[[], bool],
    *,
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Call ``deliver`` until it reports success or attempts run out."""
    policy = delivery_policy(max_attempts=max_attempts, interval=interval, sleep=sleep)
    return bool(policy(deliver))


def auth_policy(
    *,
    max_attempts: int = 5,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Retrying:
    """Retry authentication on transient UI errors, re-raising the last one."""

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(TransientUIError),
        before_sleep=before_sleep_log(logger, logging.WARNING, exc_info=False),
        reraise=True,
        sleep=sleep,
    )


def _is_retryable_http(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def http_policy(
    *,
    max_attempts: int = 3,
    max_wait: float = 8.0,
    sleep: Optional[Callable[[float], None]] = None,
) -> Retrying:
    """Retry transient httpx failures with exponential backoff."""

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.5, max=max_wait),
        retry=retry_if_exception(_is_retryable_http),
        before_sleep=before_sleep_log(logger, logging.WARNING, exc_info=False),
        reraise=True,
        sleep=sleep or time.sleep,
    )
