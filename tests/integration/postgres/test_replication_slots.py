"""Replication slot reconciliation against a real PostgreSQL server."""

from __future__ import annotations

import pytest

from pgkeeper.infrastructure.postgres import (
    MetadataCollector,
    NodeAddress,
    NodeAddressArray,
    PostgresAdmin,
    PostgresConnection,
    ReplicationSlotReconciler,
    replication_slot_name,
)

pytestmark = pytest.mark.integration


def _nodes(*node_ids: int, lsn: str = "0/0") -> NodeAddressArray:
    return NodeAddressArray.of(*(NodeAddress(node_id=i, host=f"node{i}", lsn=lsn) for i in node_ids))


async def _generate_wal(pgsql: PostgresConnection) -> None:
    await pgsql.aexecute(
        "create table if not exists wal_filler(id int); insert into wal_filler select generate_series(1, 1000)"
    )


class TestReconciliation:
    """Test create-and-drop reconciliation on a primary."""

    async def test_reconcile_is_idempotent(self, pgsql: PostgresConnection) -> None:
        reconciler = ReplicationSlotReconciler(pgsql)

        first = await reconciler.acreate_and_drop(_nodes(1, 2, 3))
        second = await reconciler.acreate_and_drop(_nodes(1, 2, 3))

        assert first.created == tuple(replication_slot_name(i) for i in (1, 2, 3))
        assert not second.changed
        assert [slot.slot_name for slot in await reconciler.alist_slots()] == list(first.created)

    async def test_shrinking_membership_drops_one_slot(self, pgsql: PostgresConnection) -> None:
        reconciler = ReplicationSlotReconciler(pgsql)
        await reconciler.acreate_and_drop(_nodes(1, 2, 3))

        result = await reconciler.acreate_and_drop(_nodes(1, 3))

        assert result.dropped == (replication_slot_name(2),)
        assert result.created == ()
        assert not await reconciler.aslot_exists(replication_slot_name(2))

    async def test_created_slots_reserve_wal(self, pgsql: PostgresConnection) -> None:
        reconciler = ReplicationSlotReconciler(pgsql)
        await reconciler.acreate_and_drop(_nodes(1))

        (slot,) = await reconciler.alist_slots()

        assert slot.active is False
        assert slot.position is not None


class TestSlotLSNChecks:
    """Test target LSN checks that read standby slots."""

    async def test_all_slots_reach_a_past_target(self, pgsql: PostgresConnection) -> None:
        collector = MetadataCollector(pgsql)
        target = await collector.acurrent_lsn()
        # physical slots reserve WAL from the last checkpoint's redo pointer
        await PostgresAdmin(pgsql).acheckpoint()
        await ReplicationSlotReconciler(pgsql).acreate_and_drop(_nodes(1, 2))

        reached, laggard = await collector.aall_slots_have_reached_target_lsn(target)

        assert reached is True
        assert laggard is not None
        assert laggard >= target

    async def test_slots_do_not_reach_a_future_target(self, pgsql: PostgresConnection) -> None:
        collector = MetadataCollector(pgsql)
        await ReplicationSlotReconciler(pgsql).acreate_and_drop(_nodes(1))
        await _generate_wal(pgsql)
        target = await collector.acurrent_lsn()

        assert (await collector.aall_slots_have_reached_target_lsn(target))[0] is False
        assert (await collector.aone_slot_has_reached_target_lsn(target))[0] is False

    async def test_no_standby_slot_never_reaches(self, pgsql: PostgresConnection) -> None:
        collector = MetadataCollector(pgsql)

        assert await collector.aall_slots_have_reached_target_lsn("0/0") == (False, None)


class TestMaintain:
    async def test_maintain_advances_inactive_slot(self, pgsql: PostgresConnection) -> None:
        """Verify a standby keeps its slots close to the monitor's LSN.

        Arrange
        -------
        - A slot created, then some WAL written past it

        Act
        ---
        - Maintain with the node reported at the current LSN

        Assert
        ------
        - The slot is advanced and its restart LSN moved forward
        """
        reconciler = ReplicationSlotReconciler(pgsql)
        await reconciler.acreate_and_drop(_nodes(1))
        (before,) = await reconciler.alist_slots()
        await _generate_wal(pgsql)
        current = await MetadataCollector(pgsql).acurrent_lsn()

        result = await reconciler.amaintain(_nodes(1, lsn=str(current)))

        (after,) = await reconciler.alist_slots()
        assert result.advanced == (replication_slot_name(1),)
        assert before.position is not None
        assert after.position is not None
        assert after.position > before.position
