"""Facts about a Postgres instance that the failover logic consumes.

Log positions are always fetched as text and compared as 64-bit integers,
never as strings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ...logger import get_logger
from .enums import ConnectionType, ResultKind, SyncState
from .exceptions import LocalValidationError, ResultParseError
from .lsn import LogPosition, has_reached_target_lsn
from .models import PostgresControlData, PostgresMetadata
from .query import ParamType, RowsResult
from .slots import STANDBY_SLOT_PREFIX, node_id_from_slot_name

if TYPE_CHECKING:
    from asyncpg import Record

    from .connection import PostgresConnection

logger = get_logger(__name__)

# sync_state is one of sync, async, quorum or potential
PGSR_SYNC_STATE_MAXLENGTH = 10

IS_IN_RECOVERY_SQL = "select pg_is_in_recovery()"

# receive LSN on a streaming standby, replay LSN when restoring from archives
CURRENT_LSN_EXPR = """case when pg_is_in_recovery()
                     then coalesce(pg_last_wal_receive_lsn(), pg_last_wal_replay_lsn())
                     else pg_current_wal_flush_lsn()
                 end"""

POSTGRES_METADATA_SQL = f"""
select pg_is_in_recovery() as is_in_recovery,
       coalesce(rep.sync_state, '') as sync_state,
       coalesce({CURRENT_LSN_EXPR}, '0/0'::pg_lsn)::text as current_lsn,
       control.pg_control_version,
       control.catalog_version_no,
       control.system_identifier::text as system_identifier,
       checkpoint.timeline_id
  from pg_control_system() as control
       cross join pg_control_checkpoint() as checkpoint
       left join (
           select sync_state::text
             from pg_stat_replication
            where starts_with(application_name, $1)
         order by case sync_state
                       when 'sync' then 1
                       when 'quorum' then 2
                       when 'potential' then 3
                       else 4
                  end
            limit 1
       ) as rep on true
"""

CURRENT_LSN_SQL = f"select ({CURRENT_LSN_EXPR})::text"

SLOT_LSN_SQL = """
select slot_name::text, restart_lsn::text
  from pg_replication_slots
 where slot_type = 'physical'
"""


def _metadata_from_row(row: Record) -> PostgresMetadata:
    sync_state = row["sync_state"]
    if len(sync_state) > PGSR_SYNC_STATE_MAXLENGTH:
        msg = f'sync_state "{sync_state}" is longer than {PGSR_SYNC_STATE_MAXLENGTH} characters'
        raise ValueError(msg)

    return PostgresMetadata(
        is_in_recovery=row["is_in_recovery"],
        sync_state=SyncState(sync_state),
        current_lsn=row["current_lsn"],
        control=PostgresControlData(
            pg_control_version=row["pg_control_version"],
            catalog_version_no=row["catalog_version_no"],
            system_identifier=int(row["system_identifier"]),
            timeline_id=row["timeline_id"],
        ),
    )


def _slot_position_from_row(row: Record) -> tuple[str, LogPosition | None]:
    restart_lsn = row["restart_lsn"]
    return row["slot_name"], LogPosition.parse(restart_lsn) if restart_lsn is not None else None


class MetadataCollector:
    """Composes queries into the facts the failover state machine needs."""

    __slots__ = ("_connection", "_slot_prefix")

    def __init__(self, connection: PostgresConnection, *, slot_prefix: str = STANDBY_SLOT_PREFIX) -> None:
        self._connection = connection
        self._slot_prefix = slot_prefix

    async def ais_in_recovery(self) -> bool:
        return bool(await self._connection.aquery_single(IS_IN_RECOVERY_SQL, ResultKind.BOOL))

    async def aget_postgres_metadata(self) -> PostgresMetadata:
        """Read recovery state, sync state, current LSN and control data at once.

        Raises
        ------
        ResultParseError
            When the server does not return exactly one well-formed row.
        """
        result = RowsResult(_metadata_from_row)
        await self._connection.aexecute_with_params(
            POSTGRES_METADATA_SQL,
            [ParamType.TEXT],
            [self._slot_prefix],
            result,
        )
        rows = result.require()
        if len(rows) != 1:
            msg = f"expected a single row of Postgres metadata, got {len(rows)}"
            raise ResultParseError(msg)

        metadata = rows[0]
        logger.debug(
            "Fetched Postgres metadata",
            is_in_recovery=metadata.is_in_recovery,
            sync_state=metadata.sync_state.value,
            current_lsn=metadata.current_lsn,
            timeline_id=metadata.control.timeline_id,
        )
        return metadata

    async def acurrent_lsn(self) -> LogPosition:
        """Receive (or replay) position on a standby, flush position on a primary."""
        text = await self._connection.aquery_single(CURRENT_LSN_SQL, ResultKind.STRING)
        if text is None:
            msg = "server did not report its current LSN"
            raise ResultParseError(msg)
        return LogPosition.parse(str(text))

    async def ahas_reached_target_lsn(self, target: LogPosition | str) -> tuple[bool, LogPosition]:
        """Compare this instance's current LSN with ``target``.

        Returns
        -------
        tuple[bool, LogPosition]
            Whether the target is reached, and the current LSN.
        """
        target_lsn = LogPosition.coerce(target)
        current = await self.acurrent_lsn()
        reached = has_reached_target_lsn(target_lsn, current)
        logger.debug("Checked target LSN", target_lsn=str(target_lsn), current_lsn=str(current), reached=reached)
        return reached, current

    async def _astandby_slot_positions(self) -> list[LogPosition | None]:
        result = RowsResult(_slot_position_from_row)
        await self._connection.aexecute_with_params(SLOT_LSN_SQL, decoder=result)
        return [
            position
            for slot_name, position in result.require()
            if node_id_from_slot_name(slot_name, prefix=self._slot_prefix) is not None
        ]

    async def aone_slot_has_reached_target_lsn(
        self,
        target: LogPosition | str,
    ) -> tuple[bool, LogPosition | None]:
        """Tell whether the most advanced standby slot has reached ``target``.

        Returns
        -------
        tuple[bool, LogPosition | None]
            Whether one slot reached the target, and that slot's restart LSN
            (``None`` when no standby slot has one).
        """
        target_lsn = LogPosition.coerce(target)
        positions = [p for p in await self._astandby_slot_positions() if p is not None]
        if not positions:
            return False, None

        best = max(positions)
        return has_reached_target_lsn(target_lsn, best), best

    async def aall_slots_have_reached_target_lsn(
        self,
        target: LogPosition | str,
    ) -> tuple[bool, LogPosition | None]:
        """Tell whether every standby slot has reached ``target``.

        This is the check to use before promotion. With no standby slot at
        all, nothing proves the target was reached and the answer is False.

        Returns
        -------
        tuple[bool, LogPosition | None]
            Whether all slots reached the target, and the least advanced
            restart LSN (``None`` when a slot has none, or there are no slots).
        """
        target_lsn = LogPosition.coerce(target)
        positions = await self._astandby_slot_positions()
        if not positions or any(p is None for p in positions):
            return False, None

        laggard = min(p for p in positions if p is not None)
        return has_reached_target_lsn(target_lsn, laggard), laggard

    async def aidentify_system(self) -> None:
        """Check that the upstream accepts a replication connection.

        Raises
        ------
        LocalValidationError
            If the connection is not an upstream (walsender) connection.
        """
        if self._connection.connection_type is not ConnectionType.UPSTREAM:
            msg = "IDENTIFY_SYSTEM needs an upstream replication connection"
            raise LocalValidationError(msg)

        await self._connection.aexecute("IDENTIFY_SYSTEM")
        logger.info("Upstream accepted a replication connection", url=self._connection.safe_url)
