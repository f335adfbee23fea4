# polling.py
"""
Bounded readiness polling for resources that have to be started before they accept
a license change (SQL VMs, Managed Instances) or stopped first (SSIS runtimes).

Exponential backoff with a cap, a maximum attempt count, an overall timeout, and a
cancellation token that interrupts the sleep between attempts.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import config


class PollTimeoutError(Exception):
    pass


class PollCancelledError(Exception):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    interval: float = 30.0
    backoff: float = 1.5
    max_interval: float = 300.0
    max_attempts: int = 40
    timeout: float = 3600.0

    def delay(self, attempt: int) -> float:
        """Sleep before attempt number `attempt + 1` (attempt is 1-based)."""
        d = self.interval * (self.backoff ** max(attempt - 1, 0))
        return min(d, self.max_interval)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            interval=config.POLL_INTERVAL,
            backoff=config.POLL_BACKOFF,
            max_interval=config.POLL_MAX_INTERVAL,
            max_attempts=config.POLL_MAX_ATTEMPTS,
            timeout=config.POLL_TIMEOUT,
        )


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        return self._event.wait(max(seconds, 0.0))


def wait_until(
    check: Callable[[], bool],
    policy: RetryPolicy,
    cancel_token: Optional[CancellationToken] = None,
    description: str = "resource",
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Call check() until it returns True. Returns the number of attempts used.
    Raises PollTimeoutError / PollCancelledError.
    """
    token = cancel_token or CancellationToken()
    started = clock()

    for attempt in range(1, policy.max_attempts + 1):
        if token.cancelled:
            raise PollCancelledError(f"Cancelled while waiting for {description}")
        if check():
            return attempt

        if attempt == policy.max_attempts:
            break

        delay = policy.delay(attempt)
        remaining = policy.timeout - (clock() - started)
        if remaining <= 0:
            break
        delay = min(delay, remaining)
        print(f"[INFO] Waiting {delay:.0f}s for {description} (attempt {attempt}/{policy.max_attempts})")
        if token.wait(delay):
            raise PollCancelledError(f"Cancelled while waiting for {description}")

    raise PollTimeoutError(
        f"{description} not ready after {policy.max_attempts} attempts / {policy.timeout:.0f}s"
    )


def finish_deferred(
    deferred: List[Tuple[str, str, Any]],
    *,
    is_ready: Callable[[Any], bool],
    apply: Callable[[Any], None],
    restore: Callable[[Any], None],
    policy: RetryPolicy,
    cancel_token: Optional[CancellationToken],
    report,
    category: str,
) -> None:
    """
    Second pass over resources whose state change was kicked off earlier:
    wait for each to become ready, apply the license change, then put it back the
    way it was. One failure never stops the others; a cancellation does.
    `deferred` holds (resource_id, display_name, item) tuples.
    """
    for idx, (rid, name, item) in enumerate(deferred):
        try:
            wait_until(lambda: is_ready(item), policy, cancel_token, description=name)
        except PollCancelledError as e:
            print(f"[WARN] {e}; {len(deferred) - idx} deferred update(s) abandoned")
            for pending_rid, _, _ in deferred[idx:]:
                report.record_failed(category, pending_rid)
            return
        except PollTimeoutError as e:
            print(f"[ERROR] {e}")
            report.record_failed(category, rid)
            _restore(restore, item, name)
            continue
        except Exception as e:
            print(f"[ERROR] {name}: state check failed: {e}")
            report.record_failed(category, rid)
            _restore(restore, item, name)
            continue

        try:
            apply(item)
            report.record_changed(category, rid)
        except Exception as e:
            print(f"[ERROR] {name}: license update failed: {e}")
            report.record_failed(category, rid)
        finally:
            _restore(restore, item, name)


def _restore(restore: Callable[[Any], None], item: Any, name: str) -> None:
    try:
        restore(item)
    except Exception as e:
        print(f"[WARN] {name}: could not return resource to its previous state: {e}")
