"""Typed parameters, result decoders and driver error translation.

Statements take positional parameters typed by a small closed set of OIDs
(`ParamType`). Results are handed, exactly once and only on success, to a
decoder that owns its output:

- `SingleValueResult` reads row 0, column 0 as one expected kind.
- `RowsResult` turns every row into a caller-defined object.

A decoder that cannot make sense of the rows sets ``parsed_ok = False`` and
leaves its output as it was.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Protocol

import asyncpg

from ...logger import get_logger
from .enums import ResultKind
from .exceptions import (
    ConnectionFailedError,
    LocalValidationError,
    ParamTypeError,
    PgsqlError,
    QueryError,
    ResultParseError,
)
from .lsn import LogPosition

if TYPE_CHECKING:
    from asyncpg import Record

logger = get_logger(__name__)

NAMEDATALEN = 64

INT4_MIN, INT4_MAX = -(2**31), 2**31 - 1
INT8_MIN, INT8_MAX = -(2**63), 2**63 - 1

# connection_failure, used when the driver reports a socket level error
SQLSTATE_CONNECTION_FAILURE = "08006"

# Errors raised by asyncpg (or the socket underneath) that we translate.
DRIVER_ERRORS: tuple[type[BaseException], ...] = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

type ScalarValue = bool | int | str | None

_TRUE_TEXT = frozenset({"t", "true", "on", "yes", "1"})
_FALSE_TEXT = frozenset({"f", "false", "off", "no", "0"})


class ParamType(IntEnum):
    """OIDs of the parameter types statements may bind, from ``pg_type.h``."""

    BOOL = 16
    NAME = 19
    INT8 = 20
    INT4 = 23
    TEXT = 25
    LSN = 3220

    def coerce(self, value: object) -> object:
        """Check a Python value against this type and convert it for asyncpg.

        ``None`` binds SQL NULL for every type. LSN values bind as their
        64-bit integer position, which is how asyncpg encodes ``pg_lsn``.

        Raises
        ------
        ParamTypeError
            When the value does not fit the type.
        """
        if value is None:
            return None

        match self:
            case ParamType.BOOL:
                if isinstance(value, bool):
                    return value
                if isinstance(value, str) and value.lower() in _TRUE_TEXT | _FALSE_TEXT:
                    return value.lower() in _TRUE_TEXT
            case ParamType.NAME | ParamType.TEXT:
                if isinstance(value, str):
                    if self is ParamType.NAME and len(value.encode()) >= NAMEDATALEN:
                        msg = f'name "{value}" is longer than {NAMEDATALEN - 1} bytes'
                        raise ParamTypeError(msg)
                    return value
            case ParamType.INT4 | ParamType.INT8:
                low, high = (INT4_MIN, INT4_MAX) if self is ParamType.INT4 else (INT8_MIN, INT8_MAX)
                number: int | None = None
                if isinstance(value, int) and not isinstance(value, bool):
                    number = value
                elif isinstance(value, str) and value.lstrip("-").isdigit():
                    number = int(value)
                if number is not None:
                    if not low <= number <= high:
                        msg = f"{number} is out of range for {self.name}"
                        raise ParamTypeError(msg)
                    return number
            case ParamType.LSN:
                if isinstance(value, LogPosition | str):
                    return LogPosition.coerce(value).position

        msg = f"cannot bind {value!r} as {self.name}"
        raise ParamTypeError(msg)


def bind_params(param_types: Sequence[ParamType], param_values: Sequence[object]) -> list[object]:
    if len(param_types) != len(param_values):
        msg = f"got {len(param_values)} parameter values for {len(param_types)} parameter types"
        raise ParamTypeError(msg)
    return [param_type.coerce(value) for param_type, value in zip(param_types, param_values, strict=True)]


def quote_ident(name: str) -> str:
    """Quote an identifier for statements that cannot take bind parameters."""
    if not name or "\x00" in name:
        msg = f"invalid identifier {name!r}"
        raise LocalValidationError(msg)
    if len(name.encode()) >= NAMEDATALEN:
        msg = f'identifier "{name}" is longer than {NAMEDATALEN - 1} bytes'
        raise LocalValidationError(msg)
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal for statements that cannot take bind parameters."""
    if "\x00" in value:
        msg = "string literals cannot contain NUL characters"
        raise LocalValidationError(msg)
    quoted = value.replace("'", "''")
    if "\\" in value:
        return "E'" + quoted.replace("\\", "\\\\") + "'"
    return "'" + quoted + "'"


class ResultDecoder(Protocol):
    """Receives the rows of a successful statement, exactly once."""

    sqlstate: str | None

    def decode(self, rows: Sequence[Record]) -> None: ...


def _convert(kind: ResultKind, raw: object) -> tuple[bool, ScalarValue]:
    if raw is None:
        return True, None

    match kind:
        case ResultKind.BOOL:
            if isinstance(raw, bool):
                return True, raw
            if isinstance(raw, str) and raw in {"t", "f"}:
                return True, raw == "t"
        case ResultKind.INT | ResultKind.BIGINT:
            low, high = (INT4_MIN, INT4_MAX) if kind is ResultKind.INT else (INT8_MIN, INT8_MAX)
            number: int | None = None
            if isinstance(raw, int) and not isinstance(raw, bool):
                number = raw
            elif isinstance(raw, str) and raw.lstrip("-").isdigit():
                number = int(raw)
            if number is not None and low <= number <= high:
                return True, number
        case ResultKind.STRING:
            if isinstance(raw, str):
                return True, raw

    return False, None


@dataclass(slots=True)
class SingleValueResult:
    """A query expected to return one row of one column of a known kind.

    SQL NULL decodes successfully as ``None``.
    """

    kind: ResultKind
    sqlstate: str | None = None
    parsed_ok: bool = False
    value: ScalarValue = None

    def decode(self, rows: Sequence[Record]) -> None:
        self.parsed_ok = False

        if len(rows) != 1:
            logger.debug("Expected a single row", kind=self.kind.value, row_count=len(rows))
            return
        if len(rows[0]) < 1:
            logger.debug("Expected at least one column", kind=self.kind.value)
            return

        ok, value = _convert(self.kind, rows[0][0])
        if not ok:
            logger.debug("Unexpected value type", kind=self.kind.value, value_type=type(rows[0][0]).__name__)
            return

        self.value = value
        self.parsed_ok = True

    def require(self) -> ScalarValue:
        """Return the decoded value, or raise `ResultParseError`."""
        if not self.parsed_ok:
            msg = f"failed to parse a single {self.kind.value} value from the query result"
            raise ResultParseError(msg, sqlstate=self.sqlstate)
        return self.value


@dataclass(slots=True)
class RowsResult[T]:
    """Every row of a result, converted by ``row_factory`` into ``rows``."""

    row_factory: Callable[[Record], T]
    rows: list[T] = field(default_factory=list)
    sqlstate: str | None = None
    parsed_ok: bool = False

    def decode(self, rows: Sequence[Record]) -> None:
        self.parsed_ok = False
        try:
            decoded = [self.row_factory(row) for row in rows]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Failed to decode query rows", error=str(e), row_count=len(rows))
            return
        self.rows.extend(decoded)
        self.parsed_ok = True

    def require(self) -> list[T]:
        if not self.parsed_ok:
            msg = "failed to parse the rows of the query result"
            raise ResultParseError(msg, sqlstate=self.sqlstate)
        return self.rows


def translate_error(error: BaseException, *, connection_lost: bool = False) -> PgsqlError:
    """Map a driver error to this package's error classes.

    Parameters
    ----------
    error
        One of `DRIVER_ERRORS`.
    connection_lost
        True when the connection was found closed after the error, whatever
        the error itself says.
    """
    if isinstance(error, PgsqlError):
        return error

    if isinstance(error, asyncpg.PostgresError):
        sqlstate: str | None = error.sqlstate
        message = str(error) or type(error).__name__
        if (
            connection_lost
            or (sqlstate or "").startswith("08")
            or isinstance(error, asyncpg.exceptions.CannotConnectNowError)
        ):
            return ConnectionFailedError(message, sqlstate=sqlstate or SQLSTATE_CONNECTION_FAILURE)
        return QueryError(message, sqlstate=sqlstate)

    if connection_lost or isinstance(error, OSError | asyncpg.exceptions.ConnectionDoesNotExistError):
        return ConnectionFailedError(str(error) or type(error).__name__, sqlstate=SQLSTATE_CONNECTION_FAILURE)

    return QueryError(str(error) or type(error).__name__)
