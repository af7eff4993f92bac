from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type
from tenacity.stop import stop_base
from tenacity.wait import wait_base

if TYPE_CHECKING:
    from ..core.types import AsyncSleep, Clock
    from .config import RetryPolicy
    from .types import BeforeSleepCallback


class RetryPolicyState:
    """Mutable bookkeeping for one connect cycle under a `RetryPolicy`.

    Only the connection that owns the state mutates it, and it is reset at the
    start of every connect cycle. ``attempts`` counts failed attempts and is
    left untouched by a success so that diagnostics can report it.
    """

    __slots__ = ("_clock", "_rng", "attempts", "current_sleep", "policy", "start_time", "success_time")

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        clock: Clock = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self._rng = rng or random.Random()
        self.current_sleep = 0.0
        self.start_time: float | None = None
        self.success_time: float | None = None
        self.attempts = 0

    def reset(self) -> None:
        self.current_sleep = 0.0
        self.start_time = self._clock()
        self.success_time = None
        self.attempts = 0

    def record_failure(self) -> None:
        self.attempts += 1

    def record_success(self) -> None:
        self.success_time = self._clock()

    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return self._clock() - self.start_time

    def expired(self) -> bool:
        policy = self.policy
        if policy.max_retries > 0 and self.attempts >= policy.max_retries:
            return True
        return policy.max_total_time > 0 and self.elapsed() >= policy.max_total_time

    def next_sleep(self) -> float:
        """Compute and remember the next sleep, in seconds.

        The first sleep of a cycle is ``base_sleep``; every following one is
        drawn from ``[base_sleep, min(max_sleep, 3 * previous)]``.
        """
        base = self.policy.base_sleep
        if self.current_sleep == 0.0:
            sleep = base
        else:
            upper = min(self.policy.max_sleep, self.current_sleep * 3)
            # uniform() may round a hair past either bound
            sleep = min(max(self._rng.uniform(base, upper), base), upper)
        self.current_sleep = sleep
        return sleep


class wait_decorrelated_jitter(wait_base):  # noqa: N801
    """Tenacity wait strategy delegating to a `RetryPolicyState`."""

    def __init__(self, state: RetryPolicyState) -> None:
        self._state = state

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._state.next_sleep()


class stop_when_policy_expired(stop_base):  # noqa: N801
    """Tenacity stop condition delegating to a `RetryPolicyState`."""

    def __init__(self, state: RetryPolicyState) -> None:
        self._state = state

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._state.expired()


def build_async_retrying(
    state: RetryPolicyState,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    *,
    sleep: AsyncSleep = asyncio.sleep,
    before_sleep: BeforeSleepCallback | None = None,
) -> AsyncRetrying:
    """Build an `AsyncRetrying` loop for one connect cycle.

    The loop raises `tenacity.RetryError` once the policy is exhausted, so the
    caller can tell "gave up" apart from a single failure. Exceptions that do
    not match ``retry_on`` propagate immediately.
    """

    def _record_failure(_retry_state: RetryCallState) -> None:
        state.record_failure()

    return AsyncRetrying(
        stop=stop_when_policy_expired(state),
        wait=wait_decorrelated_jitter(state),
        retry=retry_if_exception_type(retry_on),
        after=_record_failure,
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=False,
    )
