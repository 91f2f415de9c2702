"""
Process-lifetime resolver state.

Nothing here is persisted: a restart gives every key a fresh set of attempts
and clears the quota-exhausted flag. The flag also lapses when the UTC day
changes.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine, Sequence
from datetime import datetime, timedelta
from typing import Any

from .models import RetryState, utc_now

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when work is abandoned through a CancellationToken."""


class CancellationToken:
    """Cooperative cancellation flag passed into resolution and pagination."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("Operation cancelled")


class RetrySession:
    """
    Per-key failed attempt counter with a fixed ceiling and backoff schedule.

    With the default schedule the 1st attempt runs immediately, the 2nd
    waits 2 s and the 3rd waits 60 s. After max_attempts failures the key is
    benched until the session ends, the key resolves or it has seen no
    failure for the retention window. At most max_tracked keys are kept;
    the least recently failed are forgotten first.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delays: Sequence[float] = (2.0, 60.0),
        clock: Callable[[], datetime] = utc_now,
        max_tracked: int = 10_000,
        retention: timedelta = timedelta(days=1),
    ):
        self.max_attempts = max_attempts
        self.delays = tuple(delays)
        self.clock = clock
        self.max_tracked = max_tracked
        self.retention = retention
        # Ordered by last failure, oldest first
        self._states: dict[str, RetryState] = {}

    def state(self, key: str) -> RetryState | None:
        return self._states.get(key)

    def attempts(self, key: str) -> int:
        state = self._states.get(key)
        if state is None or self._is_stale(state):
            return 0
        return state.attempts

    def is_benched(self, key: str) -> bool:
        return self.attempts(key) >= self.max_attempts

    def delay_for(self, key: str) -> float:
        """Seconds to wait before the next attempt for key."""
        attempts = self.attempts(key)
        if attempts == 0 or not self.delays:
            return 0.0
        return self.delays[min(attempts - 1, len(self.delays) - 1)]

    def record_failure(self, key: str) -> RetryState:
        state = self._states.pop(key, None)
        if state is None or self._is_stale(state):
            state = RetryState(key=key)
        state.attempts += 1
        state.last_attempt_at = self.clock()
        self._states[key] = state
        self._prune()
        logger.debug(f"Key {key} failed attempt {state.attempts}/{self.max_attempts}")
        return state

    def clear(self, key: str) -> None:
        self._states.pop(key, None)

    def _is_stale(self, state: RetryState) -> bool:
        return state.last_attempt_at < self.clock() - self.retention

    def _prune(self) -> None:
        while self._states:
            oldest = next(iter(self._states.values()))
            if len(self._states) <= self.max_tracked and not self._is_stale(oldest):
                break
            del self._states[oldest.key]
            logger.debug(f"Forgetting retry state for {oldest.key}")

    def __len__(self) -> int:
        return len(self._states)


class InflightRegistry:
    """Outstanding resolution per key, used to collapse duplicate requests."""

    def __init__(self):
        self._operations: dict[str, asyncio.Task] = {}

    def get(self, key: str) -> asyncio.Task | None:
        return self._operations.get(key)

    def start(self, key: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """
        Run coro as the single operation for key.

        The entry is removed as soon as the operation settles.
        """
        if key in self._operations:
            coro.close()
            raise RuntimeError(f"Operation already in flight for {key}")

        task = asyncio.ensure_future(self._run(key, coro))
        self._operations[key] = task
        return task

    async def _run(self, key: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        finally:
            self._operations.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._operations

    def __len__(self) -> int:
        return len(self._operations)


class ResolverSession:
    """All session-scoped state owned by one EnrichmentResolver."""

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (2.0, 60.0),
        clock: Callable[[], datetime] = utc_now,
    ):
        # UTC date key of the day the daily quota ran out, if it has
        self.quota_exhausted_on: str | None = None
        self.retries = RetrySession(max_attempts, retry_delays, clock)
        self.inflight = InflightRegistry()

    def mark_quota_exhausted(self, date_key: str) -> None:
        self.quota_exhausted_on = date_key

    def is_quota_exhausted(self, date_key: str) -> bool:
        return self.quota_exhausted_on == date_key
