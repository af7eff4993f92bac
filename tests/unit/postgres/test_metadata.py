from __future__ import annotations

from typing import Any

import pytest

from pgkeeper.infrastructure.postgres.enums import ConnectionType, SyncState
from pgkeeper.infrastructure.postgres.exceptions import LocalValidationError, ResultParseError
from pgkeeper.infrastructure.postgres.lsn import LogPosition
from pgkeeper.infrastructure.postgres.metadata import (
    CURRENT_LSN_EXPR,
    CURRENT_LSN_SQL,
    IS_IN_RECOVERY_SQL,
    POSTGRES_METADATA_SQL,
    SLOT_LSN_SQL,
    MetadataCollector,
)
from pgkeeper.infrastructure.postgres.slots import STANDBY_SLOT_PREFIX


@pytest.fixture
def metadata_row(make_record: Any) -> Any:
    def _row(**overrides: Any) -> Any:
        values = {
            "is_in_recovery": False,
            "sync_state": "sync",
            "current_lsn": "0/3000060",
            "pg_control_version": 1300,
            "catalog_version_no": 202307071,
            "system_identifier": "7312345678901234567",
            "timeline_id": 1,
        }
        values.update(overrides)
        return make_record(**values)

    return _row


@pytest.fixture
def slot_rows(make_record: Any) -> Any:
    def _rows(**slots: str | None) -> list[Any]:
        return [make_record(slot_name=name, restart_lsn=lsn) for name, lsn in slots.items()]

    return _rows


class TestPostgresMetadata:
    """Test the composed metadata read."""

    async def test_reads_every_fact_at_once(self, scripted: Any, metadata_row: Any) -> None:
        scripted.respond(POSTGRES_METADATA_SQL, [metadata_row()])

        metadata = await MetadataCollector(scripted).aget_postgres_metadata()

        assert metadata.is_in_recovery is False
        assert metadata.sync_state is SyncState.SYNC
        assert metadata.position == LogPosition(0x3000060)
        assert metadata.control.system_identifier == 7312345678901234567
        assert metadata.control.timeline_id == 1
        assert scripted.statements(POSTGRES_METADATA_SQL) == [[STANDBY_SLOT_PREFIX]]

    async def test_no_standby_gives_unknown_sync_state(self, scripted: Any, metadata_row: Any) -> None:
        scripted.respond(POSTGRES_METADATA_SQL, [metadata_row(sync_state="", is_in_recovery=True)])

        metadata = await MetadataCollector(scripted).aget_postgres_metadata()

        assert metadata.sync_state is SyncState.UNKNOWN
        assert metadata.is_in_recovery is True

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sync_state": "bogus"},
            {"sync_state": "x" * 11},
            {"current_lsn": "not-an-lsn"},
            {"system_identifier": "abc"},
        ],
    )
    async def test_malformed_row_is_a_parse_error(
        self,
        scripted: Any,
        metadata_row: Any,
        overrides: dict[str, Any],
    ) -> None:
        scripted.respond(POSTGRES_METADATA_SQL, [metadata_row(**overrides)])

        with pytest.raises(ResultParseError):
            await MetadataCollector(scripted).aget_postgres_metadata()

    async def test_requires_exactly_one_row(self, scripted: Any) -> None:
        scripted.respond(POSTGRES_METADATA_SQL, [])

        with pytest.raises(ResultParseError, match="got 0"):
            await MetadataCollector(scripted).aget_postgres_metadata()

    async def test_is_in_recovery(self, scripted: Any, make_record: Any) -> None:
        scripted.respond(IS_IN_RECOVERY_SQL, [make_record(pg_is_in_recovery=True)])

        assert await MetadataCollector(scripted).ais_in_recovery() is True


class TestTargetLSN:
    """Test local and slot based target LSN checks."""

    @pytest.mark.parametrize(
        ("current", "expected"),
        [("0/2000000", False), ("0/3000000", True), ("0/4000000", True)],
    )
    async def test_local_current_lsn(self, scripted: Any, make_record: Any, current: str, expected: bool) -> None:
        scripted.respond(CURRENT_LSN_SQL, [make_record(lsn=current)])

        reached, position = await MetadataCollector(scripted).ahas_reached_target_lsn("0/3000000")

        assert reached is expected
        assert position == LogPosition.parse(current)

    def test_current_lsn_matches_metadata_on_a_standby(self) -> None:
        """Both reads report the receive LSN of a streaming standby, falling back to replay."""
        assert CURRENT_LSN_EXPR in CURRENT_LSN_SQL
        assert CURRENT_LSN_EXPR in POSTGRES_METADATA_SQL
        assert "coalesce(pg_last_wal_receive_lsn(), pg_last_wal_replay_lsn())" in CURRENT_LSN_EXPR

    async def test_null_current_lsn_is_a_parse_error(self, scripted: Any, make_record: Any) -> None:
        scripted.respond(CURRENT_LSN_SQL, [make_record(lsn=None)])

        with pytest.raises(ResultParseError):
            await MetadataCollector(scripted).acurrent_lsn()

    async def test_one_slot_uses_most_advanced_standby(self, scripted: Any, slot_rows: Any) -> None:
        scripted.respond(
            SLOT_LSN_SQL,
            slot_rows(
                pgautofailover_standby_1="0/9000000",
                pgautofailover_standby_2="0/A000000",
                logical_sink="0/F000000",
            ),
        )

        reached, position = await MetadataCollector(scripted).aone_slot_has_reached_target_lsn("0/9800000")

        assert reached is True
        assert position == LogPosition(0xA000000)

    async def test_all_slots_use_least_advanced_standby(self, scripted: Any, slot_rows: Any) -> None:
        """Verify the aggregate check requires every standby slot.

        Arrange
        -------
        - Two standby slots on either side of the target, one foreign slot ahead

        Assert
        ------
        - Not reached, reported position is the laggard's
        """
        scripted.respond(
            SLOT_LSN_SQL,
            slot_rows(
                pgautofailover_standby_1="0/9000000",
                pgautofailover_standby_2="0/A000000",
                logical_sink="0/F000000",
            ),
        )

        reached, position = await MetadataCollector(scripted).aall_slots_have_reached_target_lsn("0/9800000")

        assert reached is False
        assert position == LogPosition(0x9000000)

    async def test_all_slots_reached(self, scripted: Any, slot_rows: Any) -> None:
        scripted.respond(
            SLOT_LSN_SQL,
            slot_rows(pgautofailover_standby_1="0/3000000", pgautofailover_standby_2="0/4000000"),
        )

        reached, position = await MetadataCollector(scripted).aall_slots_have_reached_target_lsn("0/3000000")

        assert reached is True
        assert position == LogPosition(0x3000000)

    async def test_no_standby_slot_is_never_reached(self, scripted: Any, slot_rows: Any) -> None:
        scripted.respond(SLOT_LSN_SQL, slot_rows(logical_sink="0/F000000"))
        collector = MetadataCollector(scripted)

        assert await collector.aone_slot_has_reached_target_lsn("0/1") == (False, None)
        assert await collector.aall_slots_have_reached_target_lsn("0/1") == (False, None)

    async def test_slot_without_restart_lsn_blocks_aggregate(self, scripted: Any, slot_rows: Any) -> None:
        scripted.respond(
            SLOT_LSN_SQL,
            slot_rows(pgautofailover_standby_1="0/5000000", pgautofailover_standby_2=None),
        )
        collector = MetadataCollector(scripted)

        assert await collector.aall_slots_have_reached_target_lsn("0/1") == (False, None)
        assert await collector.aone_slot_has_reached_target_lsn("0/1") == (True, LogPosition(0x5000000))


class TestIdentifySystem:
    """Test the upstream replication protocol check."""

    async def test_runs_on_upstream_connection(self, scripted: Any) -> None:
        scripted.connection_type = ConnectionType.UPSTREAM

        await MetadataCollector(scripted).aidentify_system()

        assert scripted.executed == [("IDENTIFY_SYSTEM", False)]

    async def test_rejects_other_connection_types(self, scripted: Any) -> None:
        with pytest.raises(LocalValidationError):
            await MetadataCollector(scripted).aidentify_system()

        assert scripted.executed == []
