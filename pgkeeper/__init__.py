"""Postgres interaction core of a high-availability keeper agent."""

from __future__ import annotations

__version__ = "0.1.0"
