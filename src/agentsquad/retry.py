"""Retry/backoff helpers for recoverable operations."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


class RecoverableError(Exception):
    """Transient failure that can be retried."""


class FatalError(Exception):
    """Non-recoverable failure that should stop immediately."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    multiplier: float = 2.0
    max_backoff_seconds: float = 1.0


# tmux needs a moment after new-session before the session is addressable.
SESSION_START_POLICY = RetryPolicy(max_attempts=12, initial_backoff_seconds=0.005, multiplier=2.0)


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    backoff = policy.initial_backoff_seconds
    last_error: Exception | None = None

    while attempt < policy.max_attempts:
        attempt += 1
        try:
            return operation()
        except FatalError:
            raise
        except RecoverableError as exc:
            last_error = exc
            if attempt >= policy.max_attempts:
                break
            sleep(backoff)
            backoff = min(backoff * policy.multiplier, policy.max_backoff_seconds)

    if last_error is not None:
        raise last_error
    raise RuntimeError("Retry policy exhausted without executing operation.")


def wait_until(
    predicate: Callable[[], bool],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``predicate`` under ``policy``; return whether it ever held."""

    def _poll() -> bool:
        if not predicate():
            raise RecoverableError("condition not met")
        return True

    try:
        return run_with_retry(_poll, policy=policy, sleep=sleep)
    except RecoverableError:
        return False
