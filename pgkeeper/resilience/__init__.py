"""Connection retry policies."""

from __future__ import annotations

from .config import RetryPolicy
from .retry import RetryPolicyState, build_async_retrying, stop_when_policy_expired, wait_decorrelated_jitter

__all__ = [
    "RetryPolicy",
    "RetryPolicyState",
    "build_async_retrying",
    "stop_when_policy_expired",
    "wait_decorrelated_jitter",
]
