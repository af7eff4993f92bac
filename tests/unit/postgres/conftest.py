"""Shared fakes for pgkeeper.infrastructure.postgres unit tests.

Provides:
- FakeRecord: stand-in for asyncpg.Record (index and key access)
- raw_connection / connect_mock: a mocked asyncpg connection and connect()
- ScriptedConnection: answers known SQL with canned rows, through the real decoders
- FakeSlotServer: a ScriptedConnection that keeps replication slots in memory
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from pgkeeper.infrastructure.postgres.enums import ConnectionType, ResultKind
from pgkeeper.infrastructure.postgres.query import SingleValueResult, bind_params
from pgkeeper.infrastructure.postgres.slots import (
    ADVANCE_SLOT_SQL,
    CREATE_SLOT_SQL,
    DROP_SLOT_SQL,
    LIST_SLOTS_SQL,
    SLOT_EXISTS_SQL,
)

if TYPE_CHECKING:
    from pgkeeper.infrastructure.postgres.query import ResultDecoder, ScalarValue


class FakeRecord:
    """Row with asyncpg.Record style access: ``row[0]``, ``row["name"]``, ``len(row)``."""

    def __init__(self, **values: Any) -> None:
        self._values = values
        self._items = list(values.values())

    def __getitem__(self, key: int | str) -> Any:
        if isinstance(key, int):
            return self._items[key]
        return self._values[key]

    def __len__(self) -> int:
        return len(self._items)


type RowsProvider = Sequence[FakeRecord] | Callable[[list[object]], Sequence[FakeRecord]]


class ScriptedConnection:
    """A PostgresConnection double answering SQL text with canned rows."""

    def __init__(self, connection_type: ConnectionType = ConnectionType.LOCAL) -> None:
        self.connection_type = connection_type
        self.safe_url = "postgresql://keeper@localhost:5432/postgres"
        self.responses: dict[str, RowsProvider] = {}
        self.calls: list[tuple[str, list[object]]] = []
        self.executed: list[tuple[str, bool]] = []

    def respond(self, sql: str, rows: RowsProvider) -> None:
        self.responses[sql] = rows

    def _rows(self, sql: str, args: list[object]) -> Sequence[FakeRecord]:
        provider = self.responses[sql]
        return provider(args) if callable(provider) else provider

    async def aexecute(self, sql: str, *, sensitive: bool = False) -> str:
        self.executed.append((sql, sensitive))
        return sql.split()[0].upper()

    async def aexecute_with_params(
        self,
        sql: str,
        param_types: Sequence[Any] = (),
        param_values: Sequence[object] = (),
        decoder: ResultDecoder | None = None,
    ) -> None:
        args = bind_params(param_types, param_values)
        self.calls.append((sql, args))
        rows = self._rows(sql, args)
        if decoder is not None:
            decoder.decode(rows)

    async def aquery_single(
        self,
        sql: str,
        kind: ResultKind,
        param_types: Sequence[Any] = (),
        param_values: Sequence[object] = (),
    ) -> ScalarValue:
        result = SingleValueResult(kind)
        await self.aexecute_with_params(sql, param_types, param_values, result)
        return result.require()

    def statements(self, sql: str) -> list[list[object]]:
        return [args for called, args in self.calls if called == sql]


class FakeSlotServer(ScriptedConnection):
    """Replication slots held in memory, created, dropped and advanced by SQL."""

    def __init__(self) -> None:
        super().__init__()
        # slot_name -> (active, restart position)
        self.slots: dict[str, tuple[bool, int | None]] = {}
        self.respond(LIST_SLOTS_SQL, self._list)
        self.respond(SLOT_EXISTS_SQL, lambda args: [FakeRecord(exists=args[0] in self.slots)])
        self.respond(CREATE_SLOT_SQL, self._create)
        self.respond(DROP_SLOT_SQL, self._drop)
        self.respond(ADVANCE_SLOT_SQL, self._advance)

    def add_slot(self, name: str, *, active: bool = False, restart: int | None = 0x1000000) -> None:
        self.slots[name] = (active, restart)

    def _list(self, _args: list[object]) -> list[FakeRecord]:
        rows = []
        for name in sorted(self.slots):
            active, restart = self.slots[name]
            restart_lsn = None if restart is None else f"{restart >> 32:X}/{restart & 0xFFFFFFFF:X}"
            rows.append(FakeRecord(slot_name=name, slot_type="physical", active=active, restart_lsn=restart_lsn))
        return rows

    def _create(self, args: list[object]) -> list[FakeRecord]:
        name = str(args[0])
        self.slots[name] = (False, 0x1000000)
        return [FakeRecord(pg_create_physical_replication_slot=(name, "0/1000000"))]

    def _drop(self, args: list[object]) -> list[FakeRecord]:
        name = str(args[0])
        if name not in self.slots or self.slots[name][0]:
            return []
        del self.slots[name]
        return [FakeRecord(pg_drop_replication_slot=None)]

    def _advance(self, args: list[object]) -> list[FakeRecord]:
        name, position = str(args[0]), args[1]
        assert isinstance(position, int)
        active, _ = self.slots[name]
        self.slots[name] = (active, position)
        return [FakeRecord(pg_replication_slot_advance=(name, None))]

    def changes(self) -> list[str]:
        """SQL statements that changed slots, in order."""
        changing = {CREATE_SLOT_SQL, DROP_SLOT_SQL, ADVANCE_SLOT_SQL}
        return [sql for sql, _ in self.calls if sql in changing]


@pytest.fixture
def make_record() -> type[FakeRecord]:
    return FakeRecord


@pytest.fixture
def scripted() -> ScriptedConnection:
    return ScriptedConnection()


@pytest.fixture
def slot_server() -> FakeSlotServer:
    return FakeSlotServer()


@pytest.fixture
def raw_connection() -> MagicMock:
    """Mocked asyncpg connection, open until close() is awaited."""
    raw = MagicMock()
    closed = {"value": False}

    async def _close(timeout: float | None = None) -> None:  # noqa: ARG001
        closed["value"] = True

    raw.is_closed.side_effect = lambda: closed["value"]
    raw.close = AsyncMock(side_effect=_close)
    raw.fetch = AsyncMock(return_value=[])
    raw.execute = AsyncMock(return_value="SELECT 1")
    raw.add_listener = AsyncMock()
    raw.remove_listener = AsyncMock()
    return raw


@pytest.fixture
def connect_mock(monkeypatch: pytest.MonkeyPatch, raw_connection: MagicMock) -> AsyncMock:
    """Replace asyncpg.connect; by default every call returns ``raw_connection``."""
    mock = AsyncMock(return_value=raw_connection)
    monkeypatch.setattr(asyncpg, "connect", mock)
    return mock

