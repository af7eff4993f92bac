"""Shared fixtures for pgkeeper.infrastructure.postgres integration tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from pgkeeper.infrastructure.postgres import (
    ConnectionType,
    NodeAddressArray,
    PostgresConnection,
    ReplicationSlotReconciler,
)
from pgkeeper.resilience import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterator

type ConnectionFactory = Callable[..., Awaitable[PostgresConnection]]


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    """Point testcontainers at the local Docker socket before any fixture runs."""
    if not os.environ.get("DOCKER_HOST"):
        possible_sockets = [
            Path("/var/run/docker.sock"),
            Path.home() / ".docker" / "run" / "docker.sock",
        ]
        for socket_path in possible_sockets:
            if socket_path.exists():
                os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
                os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
                break

    # Ryuk (testcontainers cleanup daemon) has known issues on macOS/Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


def _is_docker_available() -> bool:
    """Check if Docker daemon is accessible.

    Returns
    -------
    bool
        True if Docker daemon responds to ping, False otherwise.
    """
    try:
        client = from_env()
        client.ping()
    except (ImportError, DockerException):
        return False
    else:
        return True


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Provide a session-scoped PostgreSQL server with its default settings.

    Yields
    ------
    PostgresContainer
        Running PostgreSQL container instance.
    """
    if not _is_docker_available():
        pytest.skip("Docker daemon not accessible")

    with PostgresContainer("postgres:17-alpine", driver="asyncpg") as container:
        yield container


@pytest.fixture(scope="session")
def local_url(postgres_container: PostgresContainer) -> str:
    """Plain ``postgresql://`` URL of the container, as a keeper would be configured."""
    host = postgres_container.get_container_host_ip()
    port = postgres_container.get_exposed_port(5432)
    return (
        f"postgresql://{postgres_container.username}:{postgres_container.password}"
        f"@{host}:{port}/{postgres_container.dbname}"
    )


@pytest_asyncio.fixture
async def connect(local_url: str) -> AsyncIterator[ConnectionFactory]:
    """Open connections to the container and finish them all at teardown.

    Yields
    ------
    ConnectionFactory
        ``await connect(ConnectionType.LOCAL, url=None)`` returns a connected
        `PostgresConnection`.
    """
    opened: list[PostgresConnection] = []

    async def _connect(
        connection_type: ConnectionType = ConnectionType.LOCAL,
        url: str | None = None,
    ) -> PostgresConnection:
        pgsql = PostgresConnection(url or local_url, connection_type, retry_policy=RetryPolicy.init())
        opened.append(pgsql)
        await pgsql.aconnect()
        return pgsql

    try:
        yield _connect
    finally:
        for pgsql in opened:
            await pgsql.afinish()


@pytest_asyncio.fixture
async def pgsql(connect: ConnectionFactory) -> AsyncIterator[PostgresConnection]:
    """Provide a LOCAL connection and drop any standby slot a test left behind."""
    connection = await connect()
    try:
        yield connection
    finally:
        await ReplicationSlotReconciler(connection).acreate_and_drop(NodeAddressArray())
