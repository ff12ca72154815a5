"""Event payloads emitted by channels, clients and subscriptions.

Every payload is an immutable dataclass stamped with the UTC time it was
created. MonitoredItem "changed" listeners receive the DataValue itself, not
a wrapper.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BackoffEvent:
    """Emitted before the channel sleeps between two connection attempts.

    Attributes:
        endpoint: Endpoint URL being connected
        attempt: Number of the attempt that just failed (1-based)
        delay: Time the channel will wait before the next attempt (ms)
        error: Text of the failure that triggered the backoff
    """

    endpoint: str
    attempt: int
    delay: float
    error: str = ""
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ChannelStateChanged:
    """Emitted on every channel state transition."""

    endpoint: str
    previous: str
    current: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ConnectionLostEvent:
    """Emitted when an established connection drops unexpectedly."""

    endpoint: str
    error: str
    failed_requests: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ReconnectedEvent:
    """Emitted once the channel is connected again after a loss."""

    endpoint: str
    attempts: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ChannelClosedEvent:
    """Emitted when the channel is released for good.

    Attributes:
        endpoint: Endpoint URL of the channel
        reason: "disconnect" for a local close, "reconnect_exhausted" when the
            reconnect strategy gave up
    """

    endpoint: str
    reason: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SubscriptionStarted:
    """Emitted when the server acknowledged the subscription."""

    subscription_id: int
    publishing_interval: float
    lifetime_count: int
    max_keep_alive_count: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class KeepAliveEvent:
    """Emitted when a confirmed keepalive cycle completes."""

    subscription_id: int
    idle_intervals: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SubscriptionTerminated:
    """Emitted once when a subscription reaches the Terminated state.

    Attributes:
        subscription_id: Server assigned id
        reason: Why the subscription ended ("client", "lifetime_expired",
            "session_closed", "server_rejected", ...)
    """

    subscription_id: int
    reason: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MonitoredItemTerminated:
    """Emitted once when a monitored item stops."""

    subscription_id: int
    monitored_item_id: int
    node_id: str
    timestamp: datetime = field(default_factory=_utcnow)
