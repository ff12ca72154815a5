"""OPC UA value model used by the client core and the simulation server.

Numeric identifiers (attribute ids, node classes, variant types,
timestamps-to-return and status codes) come from asyncua's implementation
of the OPC UA standard, so they match what any OPC UA stack puts on the wire.
Values themselves are modelled as a closed set of variant kinds rather than
an open dynamic payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from asyncua import ua
from asyncua.ua.status_codes import get_name_and_doc
from pydantic import BaseModel, ConfigDict, Field, model_validator

from uacore.core.errors import InvalidParameter

AttributeId = ua.AttributeIds
NodeClass = ua.NodeClass
TimestampsToReturn = ua.TimestampsToReturn
VariantType = ua.VariantType
StatusCodes = ua.StatusCodes

# Aliases accepted wherever a node id is expected.
WELL_KNOWN_NODES: dict[str, str] = {
    "RootFolder": "i=84",
    "ObjectsFolder": "i=85",
    "TypesFolder": "i=86",
    "ViewsFolder": "i=87",
    "Server": "i=2253",
}


def resolve_node_id(node_id: str) -> str:
    """Map a well-known alias to its node id; other ids pass through untouched."""
    return WELL_KNOWN_NODES.get(node_id, node_id)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Status codes ---

_SEVERITY_MASK = 0xC0000000
_SEVERITY_UNCERTAIN = 0x40000000


@dataclass(frozen=True)
class StatusCode:
    """An OPC UA status code.

    The two high bits carry the severity: 00 Good, 01 Uncertain, 10/11 Bad.

    Example:
        >>> StatusCode(StatusCodes.BadNodeIdUnknown).is_bad()
        True
    """

    value: int = StatusCodes.Good

    def is_good(self) -> bool:
        return self.value & _SEVERITY_MASK == 0

    def is_uncertain(self) -> bool:
        return self.value & _SEVERITY_MASK == _SEVERITY_UNCERTAIN

    def is_bad(self) -> bool:
        return bool(self.value & 0x80000000)

    @property
    def name(self) -> str:
        try:
            return get_name_and_doc(self.value)[0]
        except KeyError:
            return f"0x{self.value:08X}"

    def __str__(self) -> str:
        return f"{self.name} (0x{self.value:08X})"


GOOD = StatusCode(StatusCodes.Good)
UNCERTAIN = StatusCode(StatusCodes.Uncertain)
BAD = StatusCode(StatusCodes.Bad)


# --- Values ---

_INT32_RANGE = (-(2**31), 2**31 - 1)
_INT64_RANGE = (-(2**63), 2**63 - 1)

SUPPORTED_VARIANT_TYPES = frozenset(
    {
        VariantType.Null,
        VariantType.Boolean,
        VariantType.Int32,
        VariantType.Int64,
        VariantType.Float,
        VariantType.Double,
        VariantType.String,
        VariantType.DateTime,
    }
)


def _coerce_variant_type(raw: Any) -> VariantType:
    if isinstance(raw, VariantType):
        variant_type = raw
    elif isinstance(raw, str):
        try:
            variant_type = VariantType[raw]
        except KeyError:
            raise ValueError(f"unknown variant type {raw!r}") from None
    elif isinstance(raw, int):
        variant_type = VariantType(raw)
    else:
        raise ValueError(f"invalid variant type {raw!r}")
    if variant_type not in SUPPORTED_VARIANT_TYPES:
        raise ValueError(f"variant type {variant_type.name} is not supported")
    return variant_type


def _coerce_value(variant_type: VariantType, value: Any) -> Any:
    """Check `value` against `variant_type`, normalizing JSON-decoded forms."""
    if variant_type == VariantType.Null:
        if value is not None:
            raise ValueError("Null variant cannot carry a value")
        return None
    if value is None:
        raise ValueError(f"{variant_type.name} variant requires a value")

    if variant_type == VariantType.Boolean:
        if not isinstance(value, bool):
            raise ValueError(f"Boolean variant requires bool, got {type(value).__name__}")
        return value

    if variant_type in (VariantType.Int32, VariantType.Int64):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(
                f"{variant_type.name} variant requires int, got {type(value).__name__}"
            )
        low, high = _INT32_RANGE if variant_type == VariantType.Int32 else _INT64_RANGE
        if not low <= value <= high:
            raise ValueError(f"{value} is out of range for {variant_type.name}")
        return value

    if variant_type in (VariantType.Float, VariantType.Double):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(
                f"{variant_type.name} variant requires a number, got {type(value).__name__}"
            )
        return float(value)

    if variant_type == VariantType.String:
        if not isinstance(value, str):
            raise ValueError(f"String variant requires str, got {type(value).__name__}")
        return value

    # DateTime
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise ValueError(f"DateTime variant requires datetime, got {type(value).__name__}")
    return value


class Variant(BaseModel):
    """A value tagged with its OPC UA built-in type.

    Attributes:
        variant_type: One of SUPPORTED_VARIANT_TYPES
        value: Python value matching the type (None only for Null)
    """

    model_config = ConfigDict(frozen=True)

    variant_type: VariantType = VariantType.Null
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _check_value(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        variant_type = _coerce_variant_type(data.get("variant_type", VariantType.Null))
        return {
            "variant_type": variant_type,
            "value": _coerce_value(variant_type, data.get("value")),
        }

    @classmethod
    def of(cls, value: Any, variant_type: VariantType | None = None) -> Variant:
        """Wrap a Python value, inferring the variant type when not given.

        Raises:
            InvalidParameter: If the value has no supported variant type or
                does not fit the requested one
        """
        if isinstance(value, Variant):
            return value
        if variant_type is None:
            variant_type = _infer_variant_type(value)
        try:
            return cls(variant_type=variant_type, value=value)
        except ValueError as e:
            raise InvalidParameter(str(e)) from e

    @property
    def is_null(self) -> bool:
        return self.variant_type == VariantType.Null

    def __str__(self) -> str:
        return "null" if self.is_null else str(self.value)


def _infer_variant_type(value: Any) -> VariantType:
    if value is None:
        return VariantType.Null
    if isinstance(value, bool):
        return VariantType.Boolean
    if isinstance(value, int):
        return VariantType.Int64
    if isinstance(value, float):
        return VariantType.Double
    if isinstance(value, str):
        return VariantType.String
    if isinstance(value, datetime):
        return VariantType.DateTime
    raise InvalidParameter(f"no variant type for values of type {type(value).__name__}")


class DataValue(BaseModel):
    """A value sample with quality and timestamps. Immutable.

    Attributes:
        value: The sampled value
        status: Quality of the value; Bad/Uncertain values are still data
        source_timestamp: When the source produced the value
        server_timestamp: When the server observed the value
    """

    model_config = ConfigDict(frozen=True)

    value: Variant = Field(default_factory=Variant)
    status: StatusCode = GOOD
    source_timestamp: datetime | None = None
    server_timestamp: datetime | None = None

    @classmethod
    def of(cls, value: Any, status: StatusCode = GOOD) -> DataValue:
        """Wrap a Python value with a source timestamp of now."""
        return cls(value=Variant.of(value), status=status, source_timestamp=utcnow())

    @classmethod
    def bad(cls, status: StatusCode, server_timestamp: datetime | None = None) -> DataValue:
        return cls(status=status, server_timestamp=server_timestamp)

    def with_timestamps(self, timestamps: TimestampsToReturn) -> DataValue:
        """Return a copy carrying only the timestamps `timestamps` asks for."""
        keep_source = timestamps in (TimestampsToReturn.Source, TimestampsToReturn.Both)
        keep_server = timestamps in (TimestampsToReturn.Server, TimestampsToReturn.Both)
        return self.model_copy(
            update={
                "source_timestamp": self.source_timestamp if keep_source else None,
                "server_timestamp": self.server_timestamp if keep_server else None,
            }
        )


class ReferenceDescription(BaseModel):
    """One browse result: a reference from the browsed node to a target."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    browse_name: str
    display_name: str
    node_class: NodeClass

    def __str__(self) -> str:
        return self.browse_name


# --- Request parameters ---


@dataclass
class SubscriptionParameters:
    """Requested subscription settings; the server may revise them.

    Attributes:
        requested_publishing_interval: Publishing cycle length (ms)
        requested_lifetime_count: Idle cycles before the subscription is
            presumed lost
        requested_max_keep_alive_count: Idle cycles between keepalives
        max_notifications_per_publish: Notifications per cycle (0 = unlimited)
        publishing_enabled: Deliver data notifications
        priority: Relative priority among the session's subscriptions (0-255)
    """

    requested_publishing_interval: float = 1000.0
    requested_lifetime_count: int = 60
    requested_max_keep_alive_count: int = 10
    max_notifications_per_publish: int = 0
    publishing_enabled: bool = True
    priority: int = 0

    def validate(self) -> None:
        """Raise InvalidParameter if any setting is out of range."""
        if self.requested_publishing_interval <= 0:
            raise InvalidParameter(
                "requested_publishing_interval must be > 0, "
                f"got {self.requested_publishing_interval}"
            )
        if self.max_notifications_per_publish < 0:
            raise InvalidParameter(
                "max_notifications_per_publish must be >= 0, "
                f"got {self.max_notifications_per_publish}"
            )
        if self.requested_max_keep_alive_count < 1:
            raise InvalidParameter(
                "requested_max_keep_alive_count must be >= 1, "
                f"got {self.requested_max_keep_alive_count}"
            )
        if self.requested_lifetime_count < 1:
            raise InvalidParameter(
                f"requested_lifetime_count must be >= 1, got {self.requested_lifetime_count}"
            )
        if not 0 <= self.priority <= 255:
            raise InvalidParameter(f"priority must be within 0..255, got {self.priority}")


@dataclass
class MonitoringParameters:
    """Sampling and queueing policy for one monitored item.

    Attributes:
        sampling_interval: How often the server samples the target (ms)
        queue_size: Capacity of the client side notification queue
        discard_oldest: On overflow drop the oldest entry (True) or the new
            sample (False)
        deadband: 0.0 reports changed values only, a positive value reports
            numeric changes larger than it, None reports every sample
    """

    sampling_interval: float = 250.0
    queue_size: int = 1
    discard_oldest: bool = True
    deadband: float | None = 0.0

    def validate(self) -> None:
        """Raise InvalidParameter if any setting is out of range."""
        if self.queue_size < 1:
            raise InvalidParameter(f"queue_size must be >= 1, got {self.queue_size}")
        if self.sampling_interval < 0:
            raise InvalidParameter(
                f"sampling_interval must be >= 0, got {self.sampling_interval}"
            )
        if self.deadband is not None and self.deadband < 0:
            raise InvalidParameter(f"deadband must be >= 0, got {self.deadband}")
