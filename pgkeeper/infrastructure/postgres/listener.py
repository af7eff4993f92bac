"""LISTEN sessions and the dispatch of their notifications.

`NotificationListener.alisten` subscribes and returns at once. Notifications
asyncpg delivers are queued; the caller's loop decides when to wait for them
by calling `adispatch` (wait up to a timeout) or `adispatch_pending` (only
what has already arrived). Each dispatched notification goes to the handler
as ``(group_id, node_id, channel, payload)``.

A notification whose handler raises is logged and dropped; the session
goes on.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from ...logger import get_logger
from .exceptions import NotConnectedError
from .query import DRIVER_ERRORS, quote_ident, translate_error

if TYPE_CHECKING:
    from collections.abc import Iterable

    from asyncpg import Connection

    from .connection import PostgresConnection

logger = get_logger(__name__)

STATE_CHANNEL = "state"
LOG_CHANNEL = "log"

type NotificationHandler = Callable[[int, int, str, str], bool]


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    payload: str
    pid: int


class StateNotification(BaseModel):
    """A node state change, as the monitor publishes it on the ``state`` channel."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    formation: str = "default"
    group_id: int = Field(alias="groupId", ge=0)
    node_id: int = Field(alias="nodeId", ge=0)
    name: str = ""
    host: str
    port: int = Field(ge=1, le=65535)
    reported_state: str = Field(alias="reportedState")
    goal_state: str = Field(alias="goalState")
    health: str = "unknown"

    @classmethod
    def from_payload(cls, payload: str) -> StateNotification:
        """Parse a JSON payload.

        Raises
        ------
        pydantic.ValidationError
            When the payload is not valid JSON or misses a field.
        """
        return cls.model_validate_json(payload)


class NotificationListener:
    """Dispatches the notifications of one connection to one handler.

    Examples
    --------
    >>> listener = NotificationListener(monitor, on_notification, group_id=0, node_id=1)
    >>> await listener.alisten(["state"])
    >>> while running:
    ...     await listener.adispatch(timeout=1.0)
    """

    __slots__ = (
        "_channels",
        "_connection",
        "_group_id",
        "_handler",
        "_node_id",
        "_notification_received",
        "_queue",
        "_raw",
    )

    def __init__(
        self,
        connection: PostgresConnection,
        handler: NotificationHandler,
        *,
        group_id: int,
        node_id: int,
    ) -> None:
        self._connection = connection
        self._handler = handler
        self._group_id = group_id
        self._node_id = node_id
        self._channels: list[str] = []
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._raw: Connection | None = None
        self._notification_received = False

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(self._channels)

    @property
    def is_listening(self) -> bool:
        return self._raw is not None and not self._raw.is_closed() and bool(self._channels)

    @property
    def notification_received(self) -> bool:
        """Whether the last dispatch was woken up by a notification rather than a timeout."""
        return self._notification_received

    def _on_notification(self, _connection: object, pid: int, channel: str, payload: object) -> None:
        self._queue.put_nowait(Notification(channel=channel, payload=str(payload), pid=pid))

    def _on_termination(self, _connection: object) -> None:
        logger.warning("Connection closed while listening", channels=self._channels)
        self._raw = None
        self._channels.clear()

    async def alisten(self, channels: Iterable[str]) -> None:
        """Subscribe to ``channels``, connecting first if needed.

        Raises
        ------
        LocalValidationError
            When a channel name is not a valid identifier.
        ConnectionFailedError
            When the connection is lost while subscribing.
        """
        wanted = [name for name in channels if name not in self._channels]
        for name in wanted:
            quote_ident(name)

        raw = await self._connection.aconnect()
        if raw is not self._raw:
            raw.add_termination_listener(self._on_termination)
            self._raw = raw

        for name in wanted:
            try:
                await raw.add_listener(name, self._on_notification)
            except DRIVER_ERRORS as e:
                raise translate_error(e, connection_lost=raw.is_closed()) from e
            self._channels.append(name)
            logger.info("Listening for notifications", channel=name, group_id=self._group_id, node_id=self._node_id)

    async def aunlisten(self) -> None:
        """Unsubscribe from every channel. Safe to call when not listening."""
        raw, channels = self._raw, list(self._channels)
        self._channels.clear()
        if raw is None or raw.is_closed():
            return

        for name in channels:
            try:
                await raw.remove_listener(name, self._on_notification)
            except DRIVER_ERRORS as e:
                raise translate_error(e, connection_lost=raw.is_closed()) from e
        raw.remove_termination_listener(self._on_termination)
        self._raw = None
        logger.debug("Stopped listening", channels=channels)

    def _handle(self, notification: Notification) -> None:
        try:
            accepted = self._handler(self._group_id, self._node_id, notification.channel, notification.payload)
        except Exception as e:
            logger.warning(
                "Failed to handle notification",
                channel=notification.channel,
                payload=notification.payload,
                error=str(e),
                exc_info=True,
            )
            return

        if not accepted:
            logger.warning(
                "Notification rejected by handler",
                channel=notification.channel,
                payload=notification.payload,
            )

    async def adispatch(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for one notification and handle it.

        Returns
        -------
        bool
            True when a notification woke us up, False on timeout.

        Raises
        ------
        NotConnectedError
            When not listening, since nothing could ever arrive.
        """
        if not self.is_listening and self._queue.empty():
            msg = "Not listening on any channel. Call alisten() first."
            raise NotConnectedError(msg)

        try:
            notification = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            self._notification_received = False
            return False

        self._notification_received = True
        self._handle(notification)
        return True

    async def adispatch_pending(self) -> int:
        """Handle every notification already received, without waiting.

        Returns
        -------
        int
            How many notifications were handled.
        """
        count = 0
        while not self._queue.empty():
            self._handle(self._queue.get_nowait())
            count += 1
        self._notification_received = count > 0
        return count
