"""Shared fixtures for unit tests: a fake clock that only moves when slept on."""

from __future__ import annotations

import pytest


class FakeClock:
    """Monotonic clock advanced by its own ``sleep`` coroutine."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
