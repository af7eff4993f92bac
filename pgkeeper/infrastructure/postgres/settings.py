"""Read-only checks that a server can take part in an HA group.

The checks only inform the caller. Nothing here changes a setting; see
`PostgresAdmin` for that.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from ...logger import get_logger
from .models import NODE_ARRAY_MAX_COUNT
from .query import RowsResult

if TYPE_CHECKING:
    from collections.abc import Mapping

    from asyncpg import Record

    from .connection import PostgresConnection

logger = get_logger(__name__)

# one walsender and one slot for every other node a group may hold
MIN_MAX_WAL_SENDERS = NODE_ARRAY_MAX_COUNT
MIN_MAX_REPLICATION_SLOTS = NODE_ARRAY_MAX_COUNT

ALLOWED_WAL_LEVELS = frozenset({"replica", "logical"})

CITUS_LIBRARY = "citus"
MONITOR_LIBRARY = "pgautofailover"

SETTINGS_SQL = """
select name, setting
  from pg_settings
 where name in ('max_wal_senders', 'max_replication_slots', 'wal_level',
                'wal_log_hints', 'shared_preload_libraries')
"""


class SettingCheck(BaseModel):
    """Outcome of checking one server setting against its requirement."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str | None
    requirement: str
    ok: bool


def preload_libraries(value: str) -> list[str]:
    """Split ``shared_preload_libraries`` into library names, in load order."""
    return [name for part in value.split(",") if (name := part.strip().strip('"').strip())]


def _at_least(name: str, value: str | None, floor: int) -> SettingCheck:
    ok = value is not None and value.isdigit() and int(value) >= floor
    return SettingCheck(name=name, value=value, requirement=f">= {floor}", ok=ok)


def evaluate_postgresql_settings(
    settings: Mapping[str, str],
    *,
    is_citus_instance: bool = False,
) -> tuple[SettingCheck, ...]:
    """Check replication capacity, and Citus load order when relevant."""
    wal_level = settings.get("wal_level")
    wal_log_hints = settings.get("wal_log_hints")

    checks = [
        _at_least("max_wal_senders", settings.get("max_wal_senders"), MIN_MAX_WAL_SENDERS),
        _at_least("max_replication_slots", settings.get("max_replication_slots"), MIN_MAX_REPLICATION_SLOTS),
        SettingCheck(
            name="wal_level",
            value=wal_level,
            requirement=" or ".join(sorted(ALLOWED_WAL_LEVELS)),
            ok=wal_level in ALLOWED_WAL_LEVELS,
        ),
        SettingCheck(name="wal_log_hints", value=wal_log_hints, requirement="on", ok=wal_log_hints == "on"),
    ]

    if is_citus_instance:
        libraries = settings.get("shared_preload_libraries")
        loaded = preload_libraries(libraries or "")
        checks.append(
            SettingCheck(
                name="shared_preload_libraries",
                value=libraries,
                requirement=f"{CITUS_LIBRARY} loaded first",
                ok=bool(loaded) and loaded[0] == CITUS_LIBRARY,
            )
        )

    return tuple(checks)


def evaluate_monitor_settings(settings: Mapping[str, str]) -> tuple[SettingCheck, ...]:
    libraries = settings.get("shared_preload_libraries")
    return (
        SettingCheck(
            name="shared_preload_libraries",
            value=libraries,
            requirement=f"includes {MONITOR_LIBRARY}",
            ok=MONITOR_LIBRARY in preload_libraries(libraries or ""),
        ),
    )


def _setting_from_row(row: Record) -> tuple[str, str]:
    return row["name"], row["setting"]


class SettingsChecker:
    """Runs the setting checks against a connected server."""

    __slots__ = ("_connection",)

    def __init__(self, connection: PostgresConnection) -> None:
        self._connection = connection

    async def afetch_settings(self) -> dict[str, str]:
        result = RowsResult(_setting_from_row)
        await self._connection.aexecute_with_params(SETTINGS_SQL, decoder=result)
        return dict(result.require())

    def _report(self, kind: str, checks: tuple[SettingCheck, ...]) -> bool:
        failed = [check for check in checks if not check.ok]
        for check in failed:
            logger.warning(
                "Postgres setting does not meet requirement",
                check=kind,
                setting=check.name,
                value=check.value,
                requirement=check.requirement,
            )
        if not failed:
            logger.debug("Postgres settings are compatible", check=kind)
        return not failed

    async def acheck_postgresql_settings(self, is_citus_instance: bool = False) -> bool:
        """Tell whether this server has what streaming replication needs.

        Parameters
        ----------
        is_citus_instance
            Also require Citus to be the first preloaded library.

        Returns
        -------
        bool
            True when every check passes. Failures are logged one by one.
        """
        settings = await self.afetch_settings()
        checks = evaluate_postgresql_settings(settings, is_citus_instance=is_citus_instance)
        return self._report("postgresql", checks)

    async def acheck_monitor_settings(self) -> bool:
        """Tell whether the monitor extension is preloaded on this server."""
        settings = await self.afetch_settings()
        return self._report("monitor", evaluate_monitor_settings(settings))
