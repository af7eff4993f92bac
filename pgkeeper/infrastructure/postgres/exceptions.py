"""Errors raised by the Postgres interaction layer.

Three families matter to callers:

- `ConnectionFailedError`: the server could not be reached or the session
  died. Transient; the caller re-runs its connect cycle.
- `QueryError`: the server rejected a statement. Never retried.
- `LocalValidationError`: bad input caught before any network call. Fatal to
  the triggering call.

`RetriesExhaustedError` tells "gave up after N attempts" apart from a single
failed attempt.
"""

from __future__ import annotations

CONNECTION_EXCEPTION_CLASS = "08"


class PgsqlError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, *, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.sqlstate = sqlstate

    @property
    def is_connection_class(self) -> bool:
        return self.sqlstate is not None and self.sqlstate.startswith(CONNECTION_EXCEPTION_CLASS)


class ConnectionFailedError(PgsqlError):
    """The connection could not be established or was lost."""


class RetriesExhaustedError(PgsqlError):
    """A connect cycle gave up because its retry policy expired."""

    def __init__(self, message: str, *, attempts: int, elapsed: float, last_error: BaseException | None) -> None:
        sqlstate = last_error.sqlstate if isinstance(last_error, PgsqlError) else None
        super().__init__(message, sqlstate=sqlstate)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error


class QueryError(PgsqlError):
    """The server (or the driver, while encoding parameters) rejected a statement."""


class ResultParseError(PgsqlError):
    """A query succeeded but its result did not have the expected shape."""


class NotConnectedError(PgsqlError):
    """The raw connection was accessed before `aconnect()`."""


class LocalValidationError(PgsqlError, ValueError):
    """Input rejected locally, before any network call."""


class ConnectionStringError(LocalValidationError):
    pass


class SlotNameError(LocalValidationError):
    pass


class LSNFormatError(LocalValidationError):
    pass


class ParamTypeError(LocalValidationError):
    pass
