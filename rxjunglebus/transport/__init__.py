"""Transport layer consumed by the subscription engine.

Re-exports the abstractions and the in-memory implementation.
"""

from .base import (
    ChannelEvent,
    ChannelHandle,
    ChannelState,
    ConnectionContext,
    ConnectionEvent,
    ConnectionState,
    PublicationContext,
    StateContext,
    SubscribedContext,
    SubscriptionErrorContext,
    TokenProvider,
    Transport,
)
from .local import LocalChannel, LocalTransport

__all__ = [
    # base
    "ChannelEvent",
    "ChannelHandle",
    "ChannelState",
    "ConnectionContext",
    "ConnectionEvent",
    "ConnectionState",
    "PublicationContext",
    "StateContext",
    "SubscribedContext",
    "SubscriptionErrorContext",
    "TokenProvider",
    "Transport",
    # local
    "LocalChannel",
    "LocalTransport",
]
