"""Pub/sub transport abstractions.

The subscription engine only needs a small slice of a channel-based pub/sub
client: named channel handles that emit ``publication``, ``subscribed``,
``state`` and ``error`` events, can publish a command back to the server, and
a connection object with ``connect``/``disconnect``, lifecycle events and a
provider it awaits for fresh connection tokens.

Events are carried by ReactiveX subjects. ``on()`` registers a listener and
``remove_all_listeners()`` disposes every listener registered so far.

Channel states:
    UNSUBSCRIBED → SUBSCRIBING: subscribe() called
    SUBSCRIBING → SUBSCRIBED: server confirmed the subscription
    SUBSCRIBED → SUBSCRIBING: connection dropped, transport is retrying
    any → UNSUBSCRIBED: unsubscribe() called
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal

from reactivex import operators as ops
from reactivex.disposable import CompositeDisposable
from reactivex.subject import BehaviorSubject, Subject

ChannelEvent = Literal["publication", "subscribed", "state", "error"]
ConnectionEvent = Literal["connected", "connecting", "disconnected", "error"]
TokenProvider = Callable[[], Awaitable[str]]


class ChannelState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


class ConnectionState(Enum):
    """Observable states for the transport connection lifecycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class PublicationContext:
    channel: str
    data: Any


@dataclass(frozen=True)
class SubscribedContext:
    channel: str


@dataclass(frozen=True)
class StateContext:
    channel: str
    old_state: ChannelState
    new_state: ChannelState


@dataclass(frozen=True)
class SubscriptionErrorContext:
    """Error report handed to ``on_error`` callbacks.

    Attributes:
        channel: Channel the error relates to ("" when not channel specific).
        type: Short error category, or the server status text for
            server-signaled errors.
        code: Numeric code (the server status code when available).
        message: Human readable description.
        exception: The underlying exception, if any.
    """

    channel: str
    type: str
    code: int = 0
    message: str = ""
    exception: Exception | None = None


@dataclass(frozen=True)
class ConnectionContext:
    state: ConnectionState
    reason: str = ""


class _Emitter:
    """Named ReactiveX subjects with listener bookkeeping."""

    def __init__(self, events: tuple[str, ...]):
        self._subjects: dict[str, Subject] = {event: Subject() for event in events}
        self._listeners = CompositeDisposable()

    def on(self, event: str, fn: Callable[[Any], Any]) -> None:
        subject = self._subjects.get(event)
        if subject is None:
            raise ValueError(f"Unknown event '{event}'.")
        self._listeners.add(subject.subscribe(on_next=fn))

    def emit(self, event: str, ctx: Any) -> None:
        self._subjects[event].on_next(ctx)

    def remove_all_listeners(self) -> None:
        self._listeners.dispose()
        self._listeners = CompositeDisposable()


class ChannelHandle(ABC):
    """A named subscription to one channel of the transport."""

    def __init__(self, channel: str):
        self.channel = channel
        self._state = ChannelState.UNSUBSCRIBED
        self._emitter = _Emitter(("publication", "subscribed", "state", "error"))

    @property
    def state(self) -> ChannelState:
        return self._state

    def on(self, event: ChannelEvent, fn: Callable[[Any], Any]) -> "ChannelHandle":
        """Register a listener; returns ``self`` so calls can be chained."""
        self._emitter.on(event, fn)
        return self

    def remove_all_listeners(self) -> None:
        self._emitter.remove_all_listeners()

    def _set_state(self, new_state: ChannelState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._emitter.emit("state", StateContext(self.channel, old_state, new_state))
        if new_state == ChannelState.SUBSCRIBED:
            self._emitter.emit("subscribed", SubscribedContext(self.channel))

    def _emit_publication(self, data: Any) -> None:
        self._emitter.emit("publication", PublicationContext(self.channel, data))

    def _emit_error(self, ctx: SubscriptionErrorContext) -> None:
        self._emitter.emit("error", ctx)

    @abstractmethod
    def subscribe(self) -> None: ...

    @abstractmethod
    def unsubscribe(self) -> None: ...

    @abstractmethod
    def publish(self, data: Any) -> None:
        """Send a command (e.g. ``{"cmd": "pause"}``) to the channel's producer."""
        ...


class Transport(ABC):
    """Connection-level pub/sub client.

    ``token_provider`` is awaited whenever the connection needs a fresh
    token, e.g. after the server reports the current one as expired.
    """

    def __init__(self, token_provider: TokenProvider | None = None):
        self.token_provider = token_provider
        self._emitter = _Emitter(("connected", "connecting", "disconnected", "error"))
        self._connection_state_subject: BehaviorSubject[ConnectionState] = (
            BehaviorSubject(ConnectionState.DISCONNECTED)
        )

    @property
    def connection_state(self):
        """Observable stream of connection state changes.

        New subscribers immediately receive the current state.
        """
        return self._connection_state_subject.pipe(ops.share())

    @property
    def state(self) -> ConnectionState:
        return self._connection_state_subject.value

    def on(self, event: ConnectionEvent, fn: Callable[[Any], Any]) -> "Transport":
        self._emitter.on(event, fn)
        return self

    def remove_all_listeners(self) -> None:
        self._emitter.remove_all_listeners()

    def _set_connection_state(self, state: ConnectionState, reason: str = "") -> None:
        self._connection_state_subject.on_next(state)
        self._emitter.emit(state.value, ConnectionContext(state, reason))

    async def refresh_token(self) -> str | None:
        """Ask the token provider for a new connection token.

        Returns None when no provider is set. Provider failures propagate.
        """
        if self.token_provider is None:
            return None
        return await self.token_provider()

    def _emit_error(self, ctx: SubscriptionErrorContext) -> None:
        self._emitter.emit("error", ctx)

    @abstractmethod
    def new_subscription(self, channel: str) -> ChannelHandle:
        """Create a handle for ``channel``; raises if a live handle exists."""
        ...

    @abstractmethod
    def remove_subscription(self, handle: ChannelHandle) -> None: ...

    @abstractmethod
    def get_subscription(self, channel: str) -> ChannelHandle | None: ...

    @abstractmethod
    def connect(self) -> None: ...

    @abstractmethod
    def disconnect(self) -> None: ...
