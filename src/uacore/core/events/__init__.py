"""Listener registry and event payloads for uacore.

Usage:
    >>> from uacore.core.events import BackoffEvent
    >>>
    >>> def on_backoff(event: BackoffEvent) -> None:
    ...     print(f"retrying in {event.delay} ms (attempt {event.attempt})")
    >>>
    >>> client.on("backoff", on_backoff)
"""

from uacore.core.events.emitter import EventEmitter, Listener, ListenerHandle
from uacore.core.events.events import (
    BackoffEvent,
    ChannelClosedEvent,
    ChannelStateChanged,
    ConnectionLostEvent,
    KeepAliveEvent,
    MonitoredItemTerminated,
    ReconnectedEvent,
    SubscriptionStarted,
    SubscriptionTerminated,
)

__all__ = [
    "BackoffEvent",
    "ChannelClosedEvent",
    "ChannelStateChanged",
    "ConnectionLostEvent",
    "EventEmitter",
    "KeepAliveEvent",
    "Listener",
    "ListenerHandle",
    "MonitoredItemTerminated",
    "ReconnectedEvent",
    "SubscriptionStarted",
    "SubscriptionTerminated",
]
