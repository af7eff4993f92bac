"""Core module exports."""

from __future__ import annotations

from .types import AsyncSleep, Clock

__all__ = [
    "AsyncSleep",
    "Clock",
]
