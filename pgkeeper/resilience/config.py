from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

# The monitor declares a node unreachable after this many seconds without
# contact; main loop reconnects must fit several attempts in that window.
NETWORK_PARTITION_TIMEOUT = 20.0

# Provisioning scripts may start every node at once, so initialization keeps
# trying for as long as a server would reasonably take to come up.
INIT_RETRY_TIMEOUT = 60.0

DEFAULT_BASE_SLEEP = 0.005
DEFAULT_MAX_SLEEP = 2.0


class RetryPolicy(BaseModel):
    """Connection retry policy: exponential backoff with decorrelated jitter.

    A policy is exhausted once ``max_retries`` failed attempts were made, or
    once ``max_total_time`` seconds elapsed since the first attempt. A zero
    value disables the corresponding bound; with both at zero the policy only
    ends on success or when the caller cancels the task.

    Each sleep is drawn uniformly from ``[base_sleep, min(max_sleep, 3 * previous)]``.
    See: https://aws.amazon.com/blogs/architecture/exponential-backoff-and-jitter/
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_total_time: float = Field(default=0.0, ge=0, description="Maximum time spent retrying in seconds (0 = unbounded)")
    max_retries: int = Field(default=0, ge=0, description="Maximum number of failed attempts (0 = unbounded)")
    max_sleep: float = Field(default=DEFAULT_MAX_SLEEP, gt=0, description="Cap on a single sleep in seconds")
    base_sleep: float = Field(default=DEFAULT_BASE_SLEEP, gt=0, description="Base sleep in seconds")

    @model_validator(mode="after")
    def _check_sleep_bounds(self) -> Self:
        if self.base_sleep > self.max_sleep:
            msg = f"base_sleep ({self.base_sleep}) must not exceed max_sleep ({self.max_sleep})"
            raise ValueError(msg)
        return self

    @property
    def is_unbounded(self) -> bool:
        return self.max_total_time == 0 and self.max_retries == 0

    @classmethod
    def main_loop(cls) -> Self:
        """Keep reconnecting from the keeper main loop.

        The loop itself enforces the network partition timeout, so the policy
        has no bound of its own and only caps the sleep well inside it.
        """
        return cls(
            max_total_time=0.0,
            max_retries=0,
            max_sleep=NETWORK_PARTITION_TIMEOUT / 10,
            base_sleep=0.1,
        )

    @classmethod
    def interactive(cls) -> Self:
        """A handful of quick attempts for commands run by a human."""
        return cls(max_total_time=0.0, max_retries=3, max_sleep=DEFAULT_MAX_SLEEP, base_sleep=0.1)

    @classmethod
    def init(cls) -> Self:
        """Bounded total time, for nodes provisioned in parallel."""
        return cls(
            max_total_time=INIT_RETRY_TIMEOUT,
            max_retries=0,
            max_sleep=DEFAULT_MAX_SLEEP,
            base_sleep=DEFAULT_BASE_SLEEP,
        )

    @classmethod
    def monitor_interactive(cls) -> Self:
        """Interactive commands talking to the monitor, which may be failing over itself."""
        return cls(
            max_total_time=NETWORK_PARTITION_TIMEOUT,
            max_retries=0,
            max_sleep=DEFAULT_MAX_SLEEP,
            base_sleep=0.5,
        )
