"""Exception hierarchy for the uacore client.

Connection establishment, session level and transport level failures each
have their own branch so callers can tell a dead socket from a rejected
parameter. A Bad or Uncertain status code on a successful read or write is
never raised; it is returned as data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uacore.ua.types import StatusCode


class UACoreError(Exception):
    """Base class for all uacore errors."""


# --- Connection establishment ---


class ConnectError(UACoreError):
    """A connect() call failed and will not be retried further."""


class EndpointNotFound(ConnectError):
    """The server does not advertise the requested endpoint."""

    def __init__(self, endpoint: str, advertised: list[str] | None = None):
        self.endpoint = endpoint
        self.advertised = advertised or []
        super().__init__(
            f"endpoint {endpoint!r} is not advertised by the server "
            f"(advertised: {', '.join(self.advertised) or 'none'})"
        )


class Unreachable(ConnectError):
    """All connection attempts allowed by the strategy were exhausted."""

    def __init__(self, endpoint: str, attempts: int):
        self.endpoint = endpoint
        self.attempts = attempts
        super().__init__(f"could not reach {endpoint!r} after {attempts} attempt(s)")


# --- Session level ---


class SessionError(UACoreError):
    """Session or subscription level failure."""


class SessionCreateFailed(SessionError):
    """The session could not be created on the channel."""


class InvalidParameter(SessionError, ValueError):
    """A caller supplied parameter is out of range."""


class SessionClosed(SessionError):
    """The session, subscription or monitored item is no longer usable."""


# --- Transport level ---


class TransportError(UACoreError):
    """A single request could not complete over the channel."""


class ConnectionClosed(TransportError):
    """The channel was closed locally while the request was in flight."""


class ConnectionLost(TransportError):
    """The connection dropped unexpectedly while the request was in flight."""


class RequestTimeout(TransportError):
    """No response arrived within the request timeout."""

    def __init__(self, request_id: int, service: str, timeout: float):
        self.request_id = request_id
        self.service = service
        self.timeout = timeout
        super().__init__(
            f"{service} request {request_id} timed out after {timeout:g} ms"
        )


class ServiceFault(UACoreError):
    """The server rejected a request as a whole.

    Attributes:
        status: The bad service result returned by the server
        service: Name of the rejected service
    """

    def __init__(self, status: StatusCode, service: str):
        self.status = status
        self.service = service
        super().__init__(f"{service} failed: {status}")
