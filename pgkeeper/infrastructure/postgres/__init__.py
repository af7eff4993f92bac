"""Postgres interaction for an HA keeper, on asyncpg.

This module provides:

- `PostgresConnection`: one connection with retried, jittered connects
- `MetadataCollector`: recovery state, sync state, LSN and control data
- `ReplicationSlotReconciler`: slots kept in line with the group's nodes
- `NotificationListener`: LISTEN sessions dispatched to a handler
- `SettingsChecker` and `PostgresAdmin`: capability checks and administration

Usage
-----
Read what the failover logic needs::

    local = PostgresConnection(url, ConnectionType.LOCAL, retry_policy=RetryPolicy.main_loop())
    async with local:
        metadata = await MetadataCollector(local).aget_postgres_metadata()

Keep replication slots in line with the monitor::

    reconciler = ReplicationSlotReconciler(local)
    await reconciler.acreate_and_drop(other_nodes)  # on a primary
    await reconciler.amaintain(other_nodes)         # on a standby
"""

from .admin import PostgresAdmin
from .config import (
    MAXCONNINFO,
    ConnectionConfig,
    PostgresSettings,
    conninfo_to_url,
    hostname_from_uri,
    mask_password,
    validate_connection_string,
)
from .connection import PostgresConnection
from .enums import ConnectionStatus, ConnectionType, ResultKind, SyncState
from .exceptions import (
    ConnectionFailedError,
    ConnectionStringError,
    LocalValidationError,
    LSNFormatError,
    NotConnectedError,
    ParamTypeError,
    PgsqlError,
    QueryError,
    ResultParseError,
    RetriesExhaustedError,
    SlotNameError,
)
from .listener import NotificationHandler, NotificationListener, StateNotification
from .lsn import LogPosition, has_reached_target_lsn
from .metadata import MetadataCollector
from .models import (
    GUC,
    NODE_ARRAY_MAX_COUNT,
    NodeAddress,
    NodeAddressArray,
    PostgresControlData,
    PostgresMetadata,
    ReplicationSource,
    SSLOptions,
)
from .query import ParamType, RowsResult, SingleValueResult, quote_ident, quote_literal
from .settings import SettingCheck, SettingsChecker
from .slots import (
    STANDBY_SLOT_PREFIX,
    ReplicationSlot,
    ReplicationSlotReconciler,
    SlotPlan,
    SlotReconciliation,
    node_id_from_slot_name,
    plan_slot_changes,
    replication_slot_name,
)

__all__ = [
    "GUC",
    "MAXCONNINFO",
    "NODE_ARRAY_MAX_COUNT",
    "STANDBY_SLOT_PREFIX",
    "ConnectionConfig",
    "ConnectionFailedError",
    "ConnectionStatus",
    "ConnectionStringError",
    "ConnectionType",
    "LSNFormatError",
    "LocalValidationError",
    "LogPosition",
    "MetadataCollector",
    "NodeAddress",
    "NodeAddressArray",
    "NotConnectedError",
    "NotificationHandler",
    "NotificationListener",
    "ParamType",
    "ParamTypeError",
    "PgsqlError",
    "PostgresAdmin",
    "PostgresConnection",
    "PostgresControlData",
    "PostgresMetadata",
    "PostgresSettings",
    "QueryError",
    "ReplicationSlot",
    "ReplicationSlotReconciler",
    "ReplicationSource",
    "ResultKind",
    "ResultParseError",
    "RetriesExhaustedError",
    "RowsResult",
    "SSLOptions",
    "SettingCheck",
    "SettingsChecker",
    "SingleValueResult",
    "SlotNameError",
    "SlotPlan",
    "SlotReconciliation",
    "StateNotification",
    "SyncState",
    "conninfo_to_url",
    "has_reached_target_lsn",
    "hostname_from_uri",
    "mask_password",
    "node_id_from_slot_name",
    "plan_slot_changes",
    "quote_ident",
    "quote_literal",
    "replication_slot_name",
    "validate_connection_string",
]
