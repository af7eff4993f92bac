from __future__ import annotations

from typing import Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .config import MAXCONNINFO
from .enums import SyncState
from .exceptions import ConnectionStringError
from .lsn import LogPosition
from .query import NAMEDATALEN

# The monitor never lets a group grow past this many nodes.
NODE_ARRAY_MAX_COUNT = 12

HOST_NAME_MAX = 255


def _validate_lsn_text(value: str) -> str:
    LogPosition.parse(value)
    return value


class GUC(BaseModel):
    """A Postgres configuration parameter and its value."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1, max_length=NAMEDATALEN - 1)
    value: str


class NodeAddress(BaseModel):
    """Network address of a node in an HA group, as reported by the monitor."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    node_id: int = Field(ge=0)
    name: str = Field(default="", max_length=HOST_NAME_MAX)
    host: str = Field(min_length=1, max_length=HOST_NAME_MAX)
    port: int = Field(default=5432, ge=1, le=65535)
    lsn: str = Field(default="0/0", description="Last LSN the monitor knows for this node")
    is_primary: bool = Field(default=False)

    @field_validator("lsn")
    @classmethod
    def _check_lsn(cls, value: str) -> str:
        return _validate_lsn_text(value)

    @property
    def position(self) -> LogPosition:
        return LogPosition.parse(self.lsn)


class NodeAddressArray(BaseModel):
    """The other nodes of a group, capped at `NODE_ARRAY_MAX_COUNT`.

    Going over the cap, or listing a node twice, is a caller error and fails
    validation.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    nodes: tuple[NodeAddress, ...] = Field(default_factory=tuple, max_length=NODE_ARRAY_MAX_COUNT)

    @model_validator(mode="after")
    def _check_unique_node_ids(self) -> Self:
        node_ids = [node.node_id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            msg = f"node ids must be unique, got {node_ids}"
            raise ValueError(msg)
        return self

    @classmethod
    def of(cls, *nodes: NodeAddress) -> Self:
        return cls(nodes=nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_ids(self) -> frozenset[int]:
        return frozenset(node.node_id for node in self.nodes)

    def get(self, node_id: int) -> NodeAddress | None:
        return next((node for node in self.nodes if node.node_id == node_id), None)


class SSLOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    sslmode: str = Field(default="prefer")
    sslrootcert: str | None = None
    sslcrl: str | None = None
    sslcert: str | None = None
    sslkey: str | None = None

    def conninfo_params(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v}


def _quote_conninfo_value(value: str) -> str:
    if value and not any(c.isspace() or c in "'\\" for c in value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class ReplicationSource(BaseModel):
    """What a standby needs to stream from (or copy) its primary."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    primary_node: NodeAddress
    user_name: str = Field(max_length=NAMEDATALEN - 1)
    slot_name: str = Field(default="", max_length=NAMEDATALEN - 1)
    password: SecretStr | None = None
    maximum_backup_rate: str = Field(default="100M", max_length=20)
    backup_dir: str = Field(default="", max_length=MAXCONNINFO)
    application_name: str = Field(default="", max_length=NAMEDATALEN - 1)
    target_lsn: str = Field(default="")
    target_action: str = Field(default="", max_length=NAMEDATALEN - 1)
    target_timeline: str = Field(default="", max_length=NAMEDATALEN - 1)
    ssl_options: SSLOptions = Field(default_factory=SSLOptions)

    @field_validator("target_lsn")
    @classmethod
    def _check_target_lsn(cls, value: str) -> str:
        return _validate_lsn_text(value) if value else value

    def primary_conninfo(self) -> str:
        """Render the ``primary_conninfo`` string for this source.

        Raises
        ------
        ConnectionStringError
            When the rendered string would not fit in `MAXCONNINFO`.
        """
        params: dict[str, str] = {
            "host": self.primary_node.host,
            "port": str(self.primary_node.port),
            "user": self.user_name,
        }
        if self.password is not None:
            params["password"] = self.password.get_secret_value()
        if self.application_name:
            params["application_name"] = self.application_name
        params.update(self.ssl_options.conninfo_params())

        conninfo = " ".join(f"{key}={_quote_conninfo_value(value)}" for key, value in params.items())
        if len(conninfo) > MAXCONNINFO:
            msg = f"primary_conninfo is {len(conninfo)} characters long, the maximum is {MAXCONNINFO}"
            raise ConnectionStringError(msg)
        return conninfo


class PostgresControlData(BaseModel):
    """On-disk identity of an instance, compared against what the monitor expects."""

    model_config = ConfigDict(frozen=True)

    pg_control_version: int
    catalog_version_no: int
    system_identifier: int
    timeline_id: int


class PostgresMetadata(BaseModel):
    """The facts the failover logic needs about one instance."""

    model_config = ConfigDict(frozen=True)

    is_in_recovery: bool
    sync_state: SyncState
    current_lsn: str
    control: PostgresControlData

    @field_validator("current_lsn")
    @classmethod
    def _check_lsn(cls, value: str) -> str:
        return _validate_lsn_text(value)

    @property
    def position(self) -> LogPosition:
        return LogPosition.parse(self.current_lsn)
