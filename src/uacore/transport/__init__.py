"""Links and the request/response channel built on top of them."""

from uacore.transport.channel import Channel, ChannelState
from uacore.transport.link import (
    Connector,
    Link,
    MemoryLink,
    TcpLink,
    memory_pipe,
    open_tcp_link,
    parse_endpoint,
)

__all__ = [
    "Channel",
    "ChannelState",
    "Connector",
    "Link",
    "MemoryLink",
    "TcpLink",
    "memory_pipe",
    "open_tcp_link",
    "parse_endpoint",
]
