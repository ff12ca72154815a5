"""OPC UA value model and wire messages."""

from uacore.ua.types import (
    BAD,
    GOOD,
    UNCERTAIN,
    WELL_KNOWN_NODES,
    AttributeId,
    DataValue,
    MonitoringParameters,
    NodeClass,
    ReferenceDescription,
    StatusCode,
    StatusCodes,
    SubscriptionParameters,
    TimestampsToReturn,
    Variant,
    VariantType,
    resolve_node_id,
)

__all__ = [
    "BAD",
    "GOOD",
    "UNCERTAIN",
    "WELL_KNOWN_NODES",
    "AttributeId",
    "DataValue",
    "MonitoringParameters",
    "NodeClass",
    "ReferenceDescription",
    "StatusCode",
    "StatusCodes",
    "SubscriptionParameters",
    "TimestampsToReturn",
    "Variant",
    "VariantType",
    "resolve_node_id",
]
