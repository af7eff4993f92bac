from enum import StrEnum


class ConnectionType(StrEnum):
    """Which Postgres server a connection talks to."""

    LOCAL = "local"
    MONITOR = "monitor"
    COORDINATOR = "coordinator"
    UPSTREAM = "upstream"
    APPLICATION = "application"


class ConnectionStatus(StrEnum):
    UNKNOWN = "unknown"
    OK = "ok"
    BAD = "bad"


class SyncState(StrEnum):
    """``pg_stat_replication.sync_state`` values, empty when no standby is attached."""

    SYNC = "sync"
    ASYNC = "async"
    QUORUM = "quorum"
    POTENTIAL = "potential"
    UNKNOWN = ""


class ResultKind(StrEnum):
    BOOL = "bool"
    INT = "int"
    BIGINT = "bigint"
    STRING = "string"
