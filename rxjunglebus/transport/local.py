"""In-memory transport.

Plays both sides of the pub/sub connection inside one process: the client
side implements :class:`Transport` / :class:`ChannelHandle`, and a handful of
server-side helpers let tests and local tools inject publications, inspect
commands sent by the client, raise channel errors and simulate a dropped
connection or an expired token.

Example:
    >>> transport = LocalTransport()
    >>> transport.connect()
    >>> handle = transport.new_subscription("query:abc:control")
    >>> handle.on("publication", print).subscribe()
    >>> transport.publish("query:abc:control", {"statusCode": 100})
"""

import threading
from collections import defaultdict
from typing import Any

from opentelemetry._logs import LoggerProvider

from ..mechanism import TransportError
from ..telemetry import component_logger
from .base import (
    ChannelHandle,
    ChannelState,
    ConnectionState,
    SubscriptionErrorContext,
    TokenProvider,
    Transport,
)


class LocalChannel(ChannelHandle):
    def __init__(self, transport: "LocalTransport", channel: str):
        super().__init__(channel)
        self._transport = transport

    def subscribe(self) -> None:
        if self._state != ChannelState.UNSUBSCRIBED:
            return
        self._set_state(ChannelState.SUBSCRIBING)
        if self._transport.state == ConnectionState.CONNECTED:
            self._set_state(ChannelState.SUBSCRIBED)

    def unsubscribe(self) -> None:
        self._set_state(ChannelState.UNSUBSCRIBED)

    def publish(self, data: Any) -> None:
        if self._state != ChannelState.SUBSCRIBED:
            raise TransportError(
                RuntimeError(f"channel is {self._state.value}"),
                source=f"LocalChannel:{self.channel}",
                note="publish",
            )
        self._transport._record_command(self.channel, data)


class LocalTransport(Transport):
    """Single-process transport; every call runs synchronously on the caller."""

    def __init__(
        self,
        logger_provider: LoggerProvider | None = None,
        token_provider: TokenProvider | None = None,
    ):
        super().__init__(token_provider)
        self._logger = component_logger(
            logger_provider, "rxjunglebus.transport.local", source="LocalTransport"
        )
        self._handles: dict[str, LocalChannel] = {}
        self._commands: dict[str, list[Any]] = defaultdict(list)
        self._lock = threading.RLock()
        self.created_channels: list[str] = []
        self.tokens: list[str] = []

    # ---------------- client side ---------------- #

    def new_subscription(self, channel: str) -> ChannelHandle:
        with self._lock:
            if channel in self._handles:
                raise TransportError(
                    ValueError(f"subscription to '{channel}' already exists"),
                    source="LocalTransport",
                    note="new_subscription",
                )
            handle = LocalChannel(self, channel)
            self._handles[channel] = handle
            self.created_channels.append(channel)
        self._logger.debug(f"New subscription: {channel}")
        return handle

    def remove_subscription(self, handle: ChannelHandle) -> None:
        with self._lock:
            if self._handles.get(handle.channel) is handle:
                del self._handles[handle.channel]
        self._logger.debug(f"Removed subscription: {handle.channel}")

    def get_subscription(self, channel: str) -> ChannelHandle | None:
        with self._lock:
            return self._handles.get(channel)

    def connect(self) -> None:
        if self.state == ConnectionState.CONNECTED:
            return
        self._set_connection_state(ConnectionState.CONNECTING)
        self._set_connection_state(ConnectionState.CONNECTED)
        self._logger.info("Connected.")
        for handle in self._snapshot():
            if handle.state == ChannelState.SUBSCRIBING:
                handle._set_state(ChannelState.SUBSCRIBED)

    def disconnect(self) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            return
        for handle in self._snapshot():
            if handle.state == ChannelState.SUBSCRIBED:
                handle._set_state(ChannelState.SUBSCRIBING)
        self._set_connection_state(ConnectionState.DISCONNECTED, "disconnect called")
        self._logger.info("Disconnected.")

    # ---------------- server side ---------------- #

    def publish(self, channel: str, data: Any) -> bool:
        """Deliver a publication to ``channel``.

        Returns False when no subscribed handle exists for the channel.
        """
        handle = self.get_subscription(channel)
        if handle is None or handle.state != ChannelState.SUBSCRIBED:
            self._logger.debug(f"Dropped publication for {channel}: not subscribed")
            return False
        handle._emit_publication(data)
        return True

    def commands(self, channel: str) -> list[Any]:
        """Commands the client published on ``channel``, oldest first."""
        with self._lock:
            return list(self._commands[channel])

    def fail(self, channel: str, error_type: str, code: int = 0, message: str = "") -> None:
        """Raise an error event on the handle for ``channel``."""
        handle = self.get_subscription(channel)
        if handle is None:
            raise KeyError(channel)
        handle._emit_error(
            SubscriptionErrorContext(
                channel=channel, type=error_type, code=code, message=message
            )
        )

    def drop_connection(self, reason: str = "connection lost") -> None:
        """Simulate a transient connection loss.

        The connection moves to CONNECTING and every subscribed handle falls
        back to SUBSCRIBING. Call :meth:`connect` to restore it.
        """
        self._logger.warning(f"Connection dropped: {reason}")
        self._set_connection_state(ConnectionState.CONNECTING, reason)
        for handle in self._snapshot():
            # a listener may have replaced or removed handles mid-iteration
            if self.get_subscription(handle.channel) is not handle:
                continue
            if handle.state == ChannelState.SUBSCRIBED:
                handle._set_state(ChannelState.SUBSCRIBING)

    async def expire_token(self) -> str | None:
        """Simulate the server rejecting the current token.

        Awaits the token provider like a real connection would and records
        the token it returns in :attr:`tokens`.
        """
        self._logger.info("Token expired, refreshing.")
        token = await self.refresh_token()
        if token is not None:
            self.tokens.append(token)
        return token

    def _record_command(self, channel: str, data: Any) -> None:
        with self._lock:
            self._commands[channel].append(data)
        self._logger.debug(f"Command on {channel}: {data!r}")

    def _snapshot(self) -> list[LocalChannel]:
        with self._lock:
            return list(self._handles.values())
