"""One logical connection to a Postgres server.

A `PostgresConnection` owns a single asyncpg connection, its status and the
state of its retry policy. It is meant for exactly one caller at a time: keep
one instance per `ConnectionType` rather than sharing one across tasks.

Connecting retries under the configured `RetryPolicy`. Statements never
retry: when one fails with a connection-class error the connection is
dropped, its status goes to ``bad`` and `ConnectionFailedError` is raised so
the caller can decide when to run `aconnect()` again, and under which policy.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Self

import asyncpg
from tenacity import RetryCallState, RetryError

from ...logger import get_logger
from ...resilience import RetryPolicyState, build_async_retrying
from .config import ConnectionConfig, mask_password
from .enums import ConnectionStatus, ConnectionType, ResultKind
from .exceptions import ConnectionFailedError, NotConnectedError, PgsqlError, RetriesExhaustedError
from .query import DRIVER_ERRORS, SingleValueResult, bind_params, translate_error

if TYPE_CHECKING:
    import random
    from collections.abc import Sequence
    from types import TracebackType

    from asyncpg import Connection, Record

    from ...core.types import AsyncSleep, Clock
    from ...resilience import RetryPolicy
    from .config import PostgresSettings
    from .query import ParamType, ResultDecoder, ScalarValue

logger = get_logger(__name__)

CLOSE_TIMEOUT = 5.0

REDACTED_SQL = "<redacted>"


class PostgresConnection:
    """A single connection with bounded, jittered connect retries.

    Examples
    --------
    >>> pgsql = PostgresConnection(
    ...     "postgres://localhost:5432/postgres",
    ...     ConnectionType.LOCAL,
    ...     retry_policy=RetryPolicy.interactive(),
    ... )
    >>> async with pgsql:
    ...     in_recovery = await pgsql.aquery_single("select pg_is_in_recovery()", ResultKind.BOOL)
    """

    __slots__ = ("_config", "_connection", "_retry_state", "_sleep", "_status")

    def __init__(
        self,
        url: str,
        connection_type: ConnectionType,
        *,
        retry_policy: RetryPolicy,
        settings: PostgresSettings | None = None,
        sleep: AsyncSleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Validate the connection string; no network call happens here.

        Raises
        ------
        ConnectionStringError
            If the URL is malformed or longer than `MAXCONNINFO`.
        """
        self._config = ConnectionConfig.from_url(url, connection_type, settings)
        self._retry_state = RetryPolicyState(retry_policy, clock=clock, rng=rng)
        self._sleep = sleep
        self._connection: Connection[Record] | None = None
        self._status = ConnectionStatus.UNKNOWN

    async def __aenter__(self) -> Self:
        await self.aconnect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "PostgresConnection context manager exiting with exception",
                connection_type=self.connection_type.value,
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.afinish()

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def connection_type(self) -> ConnectionType:
        return self._config.connection_type

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def retry_state(self) -> RetryPolicyState:
        return self._retry_state

    @property
    def safe_url(self) -> str:
        return mask_password(self._config.url)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed()

    @property
    def connection(self) -> Connection[Record]:
        """Access the underlying asyncpg connection.

        Raises
        ------
        NotConnectedError
            If `aconnect()` has not succeeded yet, or the connection was dropped.
        """
        if self._connection is None:
            msg = "Connection not established. Call aconnect() first."
            raise NotConnectedError(msg)
        return self._connection

    def set_retry_policy(self, retry_policy: RetryPolicy) -> None:
        """Use another policy from the next connect cycle on."""
        self._retry_state.policy = retry_policy

    async def aconnect(self) -> Connection[Record]:
        """Return a live connection, connecting under the retry policy if needed.

        Raises
        ------
        RetriesExhaustedError
            When the policy expired before a connection could be made.
        QueryError
            When the server refused the connection for a non-transient reason,
            such as bad credentials. Not retried.
        """
        if self._connection is not None and not self._connection.is_closed():
            return self._connection

        state = self._retry_state
        state.reset()

        try:
            async for attempt in build_async_retrying(
                state,
                ConnectionFailedError,
                sleep=self._sleep,
                before_sleep=self._log_before_sleep,
            ):
                with attempt:
                    self._connection = await self._aopen()
        except RetryError as e:
            self._status = ConnectionStatus.BAD
            last_error = e.last_attempt.exception()
            elapsed = state.elapsed()
            logger.error(
                "Failed to connect, giving up",
                connection_type=self.connection_type.value,
                url=self.safe_url,
                attempts=state.attempts,
                elapsed_s=round(elapsed, 3),
                error=str(last_error),
            )
            msg = f"failed to connect to {self.safe_url} after {state.attempts} attempts in {elapsed:.3f} seconds"
            raise RetriesExhaustedError(
                msg,
                attempts=state.attempts,
                elapsed=elapsed,
                last_error=last_error,
            ) from last_error
        except PgsqlError:
            self._status = ConnectionStatus.BAD
            raise

        state.record_success()
        self._status = ConnectionStatus.OK
        logger.debug(
            "Connected",
            connection_type=self.connection_type.value,
            url=self.safe_url,
            attempts=state.attempts + 1,
            elapsed_s=round(state.elapsed(), 3),
        )
        return self.connection

    async def _aopen(self) -> Connection[Record]:
        try:
            return await asyncpg.connect(**self._config.to_connect_params())
        except DRIVER_ERRORS as e:
            error = translate_error(e)
            logger.debug(
                "Connection attempt failed",
                connection_type=self.connection_type.value,
                url=self.safe_url,
                sqlstate=error.sqlstate,
                error=str(e),
            )
            raise error from e

    def _log_before_sleep(self, retry_state: RetryCallState) -> None:
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "Failed to connect, retrying",
            connection_type=self.connection_type.value,
            url=self.safe_url,
            attempts=self._retry_state.attempts,
            sleep_s=round(sleep, 3),
        )

    async def afinish(self) -> None:
        """Release the connection. Safe to call when not connected."""
        connection, self._connection = self._connection, None
        if connection is None or connection.is_closed():
            return
        try:
            await connection.close(timeout=CLOSE_TIMEOUT)
        except DRIVER_ERRORS as e:
            logger.warning("Failed to close connection cleanly, terminating it", error=str(e))
            connection.terminate()

    async def _afail(self, error: BaseException, sql: str, *, sensitive: bool = False) -> PgsqlError:
        connection_lost = self._connection is not None and self._connection.is_closed()
        translated = translate_error(error, connection_lost=connection_lost)
        if isinstance(translated, ConnectionFailedError):
            self._status = ConnectionStatus.BAD
            await self.afinish()
        logger.error(
            "Failed to run statement",
            connection_type=self.connection_type.value,
            sqlstate=translated.sqlstate,
            error=translated.message,
            sql=REDACTED_SQL if sensitive else sql,
        )
        return translated

    async def aexecute(self, sql: str, *, sensitive: bool = False) -> str:
        """Run one or more statements without reading any result.

        Set ``sensitive`` for statements carrying secrets, such as a password,
        so that they are kept out of the logs.

        Returns
        -------
        str
            Status of the last statement, e.g. ``"CHECKPOINT"``.

        Raises
        ------
        ConnectionFailedError
            On a connection-class failure; the connection is dropped.
        QueryError
            On any other error reported by the server.
        """
        connection = await self.aconnect()
        try:
            return await connection.execute(sql)
        except DRIVER_ERRORS as e:
            raise await self._afail(e, sql, sensitive=sensitive) from e

    async def aexecute_with_params(
        self,
        sql: str,
        param_types: Sequence[ParamType] = (),
        param_values: Sequence[object] = (),
        decoder: ResultDecoder | None = None,
    ) -> None:
        """Run a parameterized statement and hand its rows to ``decoder``.

        Parameters are checked against their declared types before anything
        is sent. The decoder is called exactly once, and only on success; on
        failure it gets the error's SQLSTATE instead.

        Raises
        ------
        ParamTypeError
            When a parameter value does not fit its declared type.
        ConnectionFailedError
            On a connection-class failure; the connection is dropped.
        QueryError
            On any other error reported by the server.
        """
        args = bind_params(param_types, param_values)
        connection = await self.aconnect()
        try:
            rows = await connection.fetch(sql, *args)
        except DRIVER_ERRORS as e:
            error = await self._afail(e, sql)
            if decoder is not None:
                decoder.sqlstate = error.sqlstate
            raise error from e

        if decoder is not None:
            decoder.decode(rows)

    async def aquery_single(
        self,
        sql: str,
        kind: ResultKind,
        param_types: Sequence[ParamType] = (),
        param_values: Sequence[object] = (),
    ) -> ScalarValue:
        """Run a query returning one value of ``kind``.

        Raises
        ------
        ResultParseError
            When the result is not exactly one value of the expected kind.
        """
        result = SingleValueResult(kind)
        await self.aexecute_with_params(sql, param_types, param_values, result)
        return result.require()
