from __future__ import annotations

from collections.abc import Awaitable, Callable

type Clock = Callable[[], float]
type AsyncSleep = Callable[[float], Awaitable[None]]
