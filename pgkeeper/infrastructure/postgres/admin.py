"""Statements that change the server's configuration or catalog.

Utility statements (``ALTER SYSTEM``, ``CREATE DATABASE`` and friends) do
not accept bind parameters, so names and values are quoted locally with
`quote_ident` and `quote_literal`. Each ``ALTER SYSTEM`` is sent on its own,
since it cannot run inside the implicit transaction of a multi-statement
query, and is followed by a configuration reload.

Creations check the catalog first and do nothing when the object is
already there.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ...logger import get_logger
from .enums import ResultKind
from .exceptions import LocalValidationError, ResultParseError
from .models import GUC
from .query import ParamType, RowsResult, quote_ident, quote_literal

if TYPE_CHECKING:
    from pydantic import SecretStr

    from .connection import PostgresConnection

logger = get_logger(__name__)

RELOAD_CONF_SQL = "select pg_reload_conf()"
CURRENT_SETTING_SQL = "select current_setting($1)"
DATABASE_EXISTS_SQL = "select exists(select 1 from pg_database where datname = $1)"
ROLE_EXISTS_SQL = "select exists(select 1 from pg_roles where rolname = $1)"
EXTENSION_VERSION_SQL = "select extversion from pg_extension where extname = $1"
HAS_REPLICA_SQL = "select exists(select 1 from pg_stat_replication where usename = $1)"


class PostgresAdmin:
    """Mutating administration of one server, one explicit call at a time."""

    __slots__ = ("_connection",)

    def __init__(self, connection: PostgresConnection) -> None:
        self._connection = connection

    async def areload_conf(self) -> bool:
        reloaded = bool(await self._connection.aquery_single(RELOAD_CONF_SQL, ResultKind.BOOL))
        logger.debug("Reloaded Postgres configuration", reloaded=reloaded)
        return reloaded

    async def acurrent_setting(self, name: str) -> GUC:
        """Read the value of a configuration parameter in this session.

        Raises
        ------
        QueryError
            When the server does not know the parameter.
        """
        value = await self._connection.aquery_single(
            CURRENT_SETTING_SQL,
            ResultKind.STRING,
            [ParamType.TEXT],
            [name],
        )
        if value is None:
            msg = f'setting "{name}" has no value'
            raise ResultParseError(msg)
        return GUC(name=name, value=str(value))

    async def aalter_system_set(self, guc: GUC) -> None:
        """Persist ``guc`` with ``ALTER SYSTEM`` and reload the configuration."""
        await self._connection.aexecute(f"alter system set {quote_ident(guc.name)} to {quote_literal(guc.value)}")
        logger.info("Changed Postgres setting", setting=guc.name, value=guc.value)
        await self.areload_conf()

    async def _aalter_system_reset(self, name: str) -> None:
        await self._connection.aexecute(f"alter system reset {quote_ident(name)}")
        logger.info("Reset Postgres setting", setting=name)

    async def aset_synchronous_standby_names(self, value: str) -> None:
        await self.aalter_system_set(GUC(name="synchronous_standby_names", value=value))

    async def adisable_synchronous_replication(self) -> None:
        await self.aset_synchronous_standby_names("")

    async def aset_default_transaction_read_only(self) -> None:
        await self.aalter_system_set(GUC(name="default_transaction_read_only", value="on"))

    async def aset_default_transaction_read_write(self) -> None:
        await self.aalter_system_set(GUC(name="default_transaction_read_only", value="off"))

    async def areset_primary_conninfo(self) -> None:
        """Forget the upstream of a standby, e.g. before it becomes a primary."""
        await self._aalter_system_reset("primary_conninfo")
        await self._aalter_system_reset("primary_slot_name")
        await self.areload_conf()

    async def acheckpoint(self) -> None:
        await self._connection.aexecute("checkpoint")
        logger.info("Checkpoint done")

    async def aget_hba_file_path(self) -> str:
        return (await self.acurrent_setting("hba_file")).value

    async def acreate_database(self, dbname: str, owner: str | None = None) -> bool:
        """Create a database unless it exists.

        Returns
        -------
        bool
            True when the database was created.
        """
        exists = await self._connection.aquery_single(DATABASE_EXISTS_SQL, ResultKind.BOOL, [ParamType.NAME], [dbname])
        if exists:
            logger.debug("Database already exists", dbname=dbname)
            return False

        sql = f"create database {quote_ident(dbname)}"
        if owner:
            sql += f" owner {quote_ident(owner)}"
        await self._connection.aexecute(sql)
        logger.info("Created database", dbname=dbname, owner=owner)
        return True

    async def acreate_extension(self, name: str) -> None:
        await self._connection.aexecute(f"create extension if not exists {quote_ident(name)} cascade")
        logger.info("Created extension", extension=name)

    async def aalter_extension_update_to(self, name: str, version: str) -> bool:
        """Update an installed extension to ``version``.

        Returns
        -------
        bool
            True when an update was issued, False when already at ``version``.

        Raises
        ------
        LocalValidationError
            When the extension is not installed.
        """
        result = RowsResult(lambda row: row["extversion"])
        await self._connection.aexecute_with_params(EXTENSION_VERSION_SQL, [ParamType.NAME], [name], result)
        versions = result.require()
        if not versions:
            msg = f'extension "{name}" is not installed'
            raise LocalValidationError(msg)
        current = versions[0]
        if current == version:
            return False

        await self._connection.aexecute(f"alter extension {quote_ident(name)} update to {quote_literal(version)}")
        logger.info("Updated extension", extension=name, from_version=current, to_version=version)
        return True

    async def acreate_user(
        self,
        user_name: str,
        password: SecretStr | None = None,
        *,
        login: bool = True,
        superuser: bool = False,
        replication: bool = False,
        connection_limit: int | None = None,
    ) -> bool:
        """Create a role unless it exists. The password never reaches the logs.

        Returns
        -------
        bool
            True when the role was created.
        """
        exists = await self._connection.aquery_single(ROLE_EXISTS_SQL, ResultKind.BOOL, [ParamType.NAME], [user_name])
        if exists:
            logger.debug("Role already exists", user_name=user_name)
            return False

        options = [
            "login" if login else "nologin",
            "superuser" if superuser else "nosuperuser",
            "replication" if replication else "noreplication",
        ]
        if connection_limit is not None:
            options.append(f"connection limit {int(connection_limit)}")
        if password is not None:
            options.append(f"password {quote_literal(password.get_secret_value())}")

        await self._connection.aexecute(
            f"create role {quote_ident(user_name)} with {' '.join(options)}",
            sensitive=password is not None,
        )
        logger.info("Created role", user_name=user_name, login=login, superuser=superuser, replication=replication)
        return True

    async def ahas_replica(self, user_name: str) -> bool:
        """Tell whether a standby streams from this server as ``user_name``."""
        return bool(
            await self._connection.aquery_single(HAS_REPLICA_SQL, ResultKind.BOOL, [ParamType.NAME], [user_name])
        )
