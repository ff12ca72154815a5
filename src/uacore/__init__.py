"""uacore: asyncio OPC UA session and subscription client core."""

from uacore.client import (
    BrowseResult,
    MonitoredItem,
    Session,
    Subscription,
    SubscriptionState,
    UAClient,
)
from uacore.core.config import ClientConfig, ConnectionStrategy, Settings, get_settings
from uacore.core.errors import (
    ConnectError,
    ConnectionClosed,
    ConnectionLost,
    EndpointNotFound,
    InvalidParameter,
    RequestTimeout,
    ServiceFault,
    SessionClosed,
    SessionCreateFailed,
    SessionError,
    TransportError,
    UACoreError,
    Unreachable,
)
from uacore.core.logging import configure_logging
from uacore.transport import Channel, ChannelState
from uacore.ua import (
    AttributeId,
    DataValue,
    MonitoringParameters,
    StatusCode,
    StatusCodes,
    SubscriptionParameters,
    TimestampsToReturn,
    Variant,
)

__version__ = "0.1.0"

__all__ = [
    "AttributeId",
    "BrowseResult",
    "Channel",
    "ChannelState",
    "ClientConfig",
    "ConnectError",
    "ConnectionClosed",
    "ConnectionLost",
    "ConnectionStrategy",
    "DataValue",
    "EndpointNotFound",
    "InvalidParameter",
    "MonitoredItem",
    "MonitoringParameters",
    "RequestTimeout",
    "ServiceFault",
    "Session",
    "SessionClosed",
    "SessionCreateFailed",
    "SessionError",
    "Settings",
    "StatusCode",
    "StatusCodes",
    "Subscription",
    "SubscriptionParameters",
    "SubscriptionState",
    "TimestampsToReturn",
    "TransportError",
    "UACoreError",
    "UAClient",
    "Unreachable",
    "Variant",
    "configure_logging",
    "get_settings",
]
