"""Replication slots kept in line with the monitor's list of nodes.

Each standby node gets a physical slot named after its node id. On every
call the reconciler reads the slots actually present on the server (nothing
is cached between calls, since the monitor changes membership in the
meantime), then:

- creates the slots of required nodes that have none,
- drops managed slots whose node is no longer required,
- on a standby, also advances inactive slots to the LSN the monitor reports.

Slots that do not follow the naming scheme are left alone, and active slots
are never dropped. Running a reconciliation twice with the same nodes issues
no statement that changes anything the second time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from ...logger import get_logger
from .enums import ResultKind
from .exceptions import QueryError, SlotNameError
from .lsn import LogPosition
from .query import NAMEDATALEN, ParamType, RowsResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from asyncpg import Record

    from .connection import PostgresConnection
    from .models import NodeAddressArray

logger = get_logger(__name__)

STANDBY_SLOT_PREFIX = "pgautofailover_standby_"

REPLICATION_SLOT_NAME_MAXLENGTH = NAMEDATALEN - 1

# duplicate_object: someone else created the slot between our existence check and create
SQLSTATE_DUPLICATE_OBJECT = "42710"

LIST_SLOTS_SQL = """
select slot_name::text, slot_type, active, restart_lsn::text
  from pg_replication_slots
 where slot_type = 'physical'
 order by slot_name
"""

SLOT_EXISTS_SQL = "select exists(select 1 from pg_replication_slots where slot_name = $1)"

CREATE_SLOT_SQL = "select pg_create_physical_replication_slot($1, true)"

DROP_SLOT_SQL = """
select pg_drop_replication_slot(slot_name)
  from pg_replication_slots
 where slot_name = $1 and not active
"""

ADVANCE_SLOT_SQL = "select pg_replication_slot_advance($1, $2)"


def replication_slot_name(node_id: int, *, prefix: str = STANDBY_SLOT_PREFIX) -> str:
    """Return the slot name of a node.

    Raises
    ------
    SlotNameError
        When the name would not fit in a Postgres identifier. This is a
        configuration error, not something to retry.
    """
    name = f"{prefix}{node_id}"
    if len(name) > REPLICATION_SLOT_NAME_MAXLENGTH:
        msg = f'replication slot name "{name}" is longer than {REPLICATION_SLOT_NAME_MAXLENGTH} characters'
        raise SlotNameError(msg)
    return name


def node_id_from_slot_name(slot_name: str, *, prefix: str = STANDBY_SLOT_PREFIX) -> int | None:
    """Return the node id a managed slot belongs to, or None for other slots."""
    if not slot_name.startswith(prefix):
        return None
    suffix = slot_name[len(prefix) :]
    if not suffix.isascii() or not suffix.isdigit():
        return None
    return int(suffix)


class ReplicationSlot(BaseModel):
    """A physical replication slot as found in ``pg_replication_slots``."""

    model_config = ConfigDict(frozen=True)

    slot_name: str
    slot_type: str = "physical"
    active: bool = False
    restart_lsn: str | None = None

    @classmethod
    def from_record(cls, row: Record) -> ReplicationSlot:
        return cls(
            slot_name=row["slot_name"],
            slot_type=row["slot_type"],
            active=row["active"],
            restart_lsn=row["restart_lsn"],
        )

    @property
    def position(self) -> LogPosition | None:
        return LogPosition.parse(self.restart_lsn) if self.restart_lsn is not None else None


class SlotPlan(BaseModel):
    """Slots to create and drop to match a set of required nodes."""

    model_config = ConfigDict(frozen=True)

    to_create: tuple[str, ...] = Field(default_factory=tuple)
    to_drop: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.to_drop


class SlotReconciliation(BaseModel):
    """What a reconciliation pass actually did."""

    model_config = ConfigDict(frozen=True)

    created: tuple[str, ...] = Field(default_factory=tuple)
    dropped: tuple[str, ...] = Field(default_factory=tuple)
    skipped: tuple[str, ...] = Field(default_factory=tuple, description="Slots not dropped because in use")
    advanced: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.dropped or self.advanced)


def plan_slot_changes(
    required: NodeAddressArray,
    existing: Iterable[ReplicationSlot],
    *,
    prefix: str = STANDBY_SLOT_PREFIX,
) -> SlotPlan:
    """Compute the slots to create and to drop.

    Raises
    ------
    SlotNameError
        When a required node's slot name would be too long.
    """
    required_names = {replication_slot_name(node_id, prefix=prefix): node_id for node_id in required.node_ids}
    existing_names = {slot.slot_name for slot in existing}

    to_create = sorted(
        (name for name in required_names if name not in existing_names),
        key=required_names.__getitem__,
    )
    managed = {name: node_id_from_slot_name(name, prefix=prefix) for name in existing_names}
    to_drop = sorted(
        (name for name, node_id in managed.items() if node_id is not None and name not in required_names),
        key=lambda name: managed[name] or 0,
    )
    return SlotPlan(to_create=tuple(to_create), to_drop=tuple(to_drop))


class ReplicationSlotReconciler:
    """Creates, drops and advances the replication slots of a node's peers."""

    __slots__ = ("_connection", "_prefix")

    def __init__(self, connection: PostgresConnection, *, prefix: str = STANDBY_SLOT_PREFIX) -> None:
        self._connection = connection
        self._prefix = prefix

    async def alist_slots(self) -> list[ReplicationSlot]:
        """Read the physical slots currently on the server."""
        result = RowsResult(ReplicationSlot.from_record)
        await self._connection.aexecute_with_params(LIST_SLOTS_SQL, decoder=result)
        return result.require()

    async def aslot_exists(self, slot_name: str) -> bool:
        exists = await self._connection.aquery_single(SLOT_EXISTS_SQL, ResultKind.BOOL, [ParamType.NAME], [slot_name])
        return bool(exists)

    async def acreate_slot(self, slot_name: str) -> bool:
        """Create a physical slot that reserves WAL right away.

        Returns
        -------
        bool
            False when the slot already existed, True when it was created.
        """
        if await self.aslot_exists(slot_name):
            logger.debug("Replication slot already exists", slot_name=slot_name)
            return False

        try:
            await self._connection.aexecute_with_params(CREATE_SLOT_SQL, [ParamType.NAME], [slot_name])
        except QueryError as e:
            if e.sqlstate != SQLSTATE_DUPLICATE_OBJECT:
                raise
            logger.info("Replication slot was created concurrently", slot_name=slot_name)
            return False

        logger.info("Created replication slot", slot_name=slot_name)
        return True

    async def adrop_slot(self, slot_name: str) -> bool:
        """Drop a slot unless it is in use.

        Returns
        -------
        bool
            True when the slot was dropped, False when it is active or gone.
        """
        result = RowsResult(lambda _row: True)
        await self._connection.aexecute_with_params(DROP_SLOT_SQL, [ParamType.NAME], [slot_name], result)
        dropped = bool(result.require())
        if dropped:
            logger.info("Dropped replication slot", slot_name=slot_name)
        else:
            logger.warning("Replication slot not dropped, it is active or already gone", slot_name=slot_name)
        return dropped

    async def aadvance_slot(self, slot_name: str, lsn: LogPosition | str) -> None:
        target = LogPosition.coerce(lsn)
        await self._connection.aexecute_with_params(
            ADVANCE_SLOT_SQL,
            [ParamType.NAME, ParamType.LSN],
            [slot_name, target],
        )
        logger.debug("Advanced replication slot", slot_name=slot_name, lsn=str(target))

    async def _aapply(self, plan: SlotPlan) -> tuple[list[str], list[str], list[str]]:
        created: list[str] = []
        dropped: list[str] = []
        skipped: list[str] = []

        for slot_name in plan.to_drop:
            (dropped if await self.adrop_slot(slot_name) else skipped).append(slot_name)
        for slot_name in plan.to_create:
            if await self.acreate_slot(slot_name):
                created.append(slot_name)

        return created, dropped, skipped

    async def acreate_and_drop(self, nodes: NodeAddressArray) -> SlotReconciliation:
        """Make the slots on this server match ``nodes``, used on a primary."""
        existing = await self.alist_slots()
        plan = plan_slot_changes(nodes, existing, prefix=self._prefix)
        if plan.is_empty:
            return SlotReconciliation()

        created, dropped, skipped = await self._aapply(plan)
        return SlotReconciliation(created=tuple(created), dropped=tuple(dropped), skipped=tuple(skipped))

    async def amaintain(self, nodes: NodeAddressArray) -> SlotReconciliation:
        """Create, drop, then advance slots to the LSN of each node, used on a standby.

        A slot is only ever moved forward, never while it is in use, and
        never for a node whose LSN is unknown (``0/0``).
        """
        existing = await self.alist_slots()
        plan = plan_slot_changes(nodes, existing, prefix=self._prefix)
        created, dropped, skipped = await self._aapply(plan)

        advanced: list[str] = []
        for slot in existing:
            node_id = node_id_from_slot_name(slot.slot_name, prefix=self._prefix)
            node = nodes.get(node_id) if node_id is not None else None
            if node is None or slot.active or slot.position is None:
                continue
            target = node.position
            if target.position == 0 or target <= slot.position:
                continue
            await self.aadvance_slot(slot.slot_name, target)
            advanced.append(slot.slot_name)

        return SlotReconciliation(
            created=tuple(created),
            dropped=tuple(dropped),
            skipped=tuple(skipped),
            advanced=tuple(advanced),
        )
