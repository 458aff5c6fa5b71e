"""Convenience exports for the :mod:`rxjunglebus` package."""

from .api import JungleBusAPI  # noqa: F401
from .backpressure import BackpressureController  # noqa: F401
from .channels import (  # noqa: F401
    ActiveStreams,
    StreamKind,
    control_channel,
    data_channel,
    mempool_channel,
    parse_cursor,
)
from .client import ClientOptions, JungleBusClient  # noqa: F401
from .codec import (  # noqa: F401
    CanonicalRecord,
    ControlMessage,
    ControlStatusCode,
    JSONFormat,
    ProtobufFormat,
    Transaction,
    WireFormat,
    decode,
    wire_format_factory,
)
from .delivery import DeliveryQueue  # noqa: F401
from .mechanism import (  # noqa: F401
    AuthenticationError,
    DecodeError,
    FetchError,
    JungleBusError,
    TransportError,
)
from .subscription import JungleBusSubscription  # noqa: F401
from .telemetry import (  # noqa: F401
    ConsoleLogRecordExporter,
    LogContext,
    OTelLogger,
    configure_metrics,
    configure_telemetry,
)
from .transport import (  # noqa: F401
    ChannelHandle,
    ChannelState,
    ConnectionState,
    LocalTransport,
    SubscriptionErrorContext,
    Transport,
)

__all__ = [
    "JungleBusError",
    "DecodeError",
    "TransportError",
    "FetchError",
    "AuthenticationError",

    # codec
    "Transaction",
    "ControlMessage",
    "ControlStatusCode",
    "CanonicalRecord",
    "WireFormat",
    "ProtobufFormat",
    "JSONFormat",
    "wire_format_factory",
    "decode",

    # channels
    "StreamKind",
    "ActiveStreams",
    "control_channel",
    "mempool_channel",
    "data_channel",
    "parse_cursor",

    # engine
    "DeliveryQueue",
    "BackpressureController",
    "JungleBusSubscription",

    # client
    "JungleBusAPI",
    "ClientOptions",
    "JungleBusClient",

    # transport
    "Transport",
    "ChannelHandle",
    "ChannelState",
    "ConnectionState",
    "SubscriptionErrorContext",
    "LocalTransport",

    # telemetry
    "configure_telemetry",
    "configure_metrics",
    "OTelLogger",
    "LogContext",
    "ConsoleLogRecordExporter",
]
