"""UAClient: entry point that owns a channel and the sessions created on it.

This module provides UAClient, a thin facade over Channel and Session that
carries the client configuration and re-emits connection events so callers
only need one object to watch.
"""

from __future__ import annotations

import dataclasses
from types import TracebackType

import structlog

from uacore.client.session import Session
from uacore.core.config import ClientConfig, ConnectionStrategy
from uacore.core.errors import ConnectionClosed, UACoreError
from uacore.core.events import EventEmitter, ListenerHandle
from uacore.core.logging import bound_endpoint
from uacore.transport.channel import Channel, ChannelState
from uacore.transport.link import Connector

logger = structlog.get_logger(__name__)

_FORWARDED_EVENTS = ("backoff", "connection_lost", "reconnected", "closed")


class UAClient(EventEmitter):
    """OPC UA client with retrying connect and automatic session restore.

    The client automatically:
    - Retries the initial connect with exponential backoff
    - Reconnects in the background after an unexpected loss
    - Restores sessions, subscriptions and monitored items afterwards

    Events (forwarded from the channel):
        backoff: BackoffEvent before each retry sleep
        connection_lost: ConnectionLostEvent
        reconnected: ReconnectedEvent
        closed: ChannelClosedEvent

    Example:
        >>> async with UAClient.create(max_retry=2) as client:
        ...     await client.connect("opc.tcp://localhost:4840")
        ...     session = await client.create_session()
        ...     print(await session.read("ns=1;s=Temperature"))
    """

    events = frozenset(_FORWARDED_EVENTS)

    def __init__(self, config: ClientConfig | None = None):
        super().__init__()
        self._config = config or ClientConfig.from_settings()
        self._channel: Channel | None = None
        self._sessions: list[Session] = []
        self._channel_handles: list[ListenerHandle] = []

    @classmethod
    def create(
        cls,
        *,
        max_retry: int | None = None,
        initial_delay: float | None = None,
        max_delay: float | None = None,
        endpoint_must_exist: bool | None = None,
        config: ClientConfig | None = None,
    ) -> UAClient:
        """Build a client, overriding selected fields of the configuration.

        Raises:
            InvalidParameter: A strategy value is out of range
        """
        config = config or ClientConfig.from_settings()
        base = config.connection_strategy
        strategy = ConnectionStrategy(
            max_retry=base.max_retry if max_retry is None else max_retry,
            initial_delay=base.initial_delay if initial_delay is None else initial_delay,
            max_delay=base.max_delay if max_delay is None else max_delay,
        )
        config = dataclasses.replace(
            config,
            connection_strategy=strategy,
            endpoint_must_exist=(
                config.endpoint_must_exist if endpoint_must_exist is None else endpoint_must_exist
            ),
        )
        return cls(config)

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_connected

    @property
    def sessions(self) -> list[Session]:
        return [session for session in self._sessions if not session.is_closed]

    # --- Connection lifecycle ---

    async def connect(self, endpoint_url: str, connector: Connector | None = None) -> None:
        """Open a channel to `endpoint_url`.

        Args:
            endpoint_url: opc.tcp:// URL of the server
            connector: Optional link factory (defaults to TCP)

        Raises:
            EndpointNotFound: The endpoint is not advertised and
                endpoint_must_exist is set
            Unreachable: The connection strategy was exhausted
        """
        if self._channel is not None and self._channel.state != ChannelState.DISCONNECTED:
            if self._channel.endpoint == endpoint_url:
                return
            await self.disconnect()
        if self._channel is not None:
            self._detach_channel()

        channel = Channel(endpoint_url, self._config, connector)
        self._channel = channel
        self._channel_handles = [
            channel.on(event, self._forwarder(event)) for event in _FORWARDED_EVENTS
        ]
        with bound_endpoint(endpoint_url):
            try:
                await channel.connect()
            except UACoreError:
                self._detach_channel()
                raise
        logger.info("client_connected", endpoint=endpoint_url, server=channel.server_name)

    async def create_session(self, name: str | None = None) -> Session:
        """Create a session on the connected channel.

        Raises:
            SessionCreateFailed: Not connected, or the server refused
        """
        if self._channel is None:
            raise ConnectionClosed("client is not connected")
        with bound_endpoint(self._channel.endpoint):
            session = await Session.create(self._channel, self._config, name)
        self._sessions = [s for s in self._sessions if not s.is_closed]
        self._sessions.append(session)
        return session

    async def disconnect(self) -> None:
        """Close every session, then the channel.

        Safe to call multiple times.
        """
        sessions = self._sessions
        self._sessions = []
        for session in sessions:
            try:
                await session.close()
            except UACoreError as e:
                logger.warning("client_session_close_error", error=str(e))

        channel = self._channel
        if channel is None:
            return
        await channel.disconnect()
        self._detach_channel()
        logger.info("client_disconnected", endpoint=channel.endpoint)

    async def __aenter__(self) -> UAClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

    # --- Internal methods ---

    def _forwarder(self, event: str):
        def forward(payload: object) -> None:
            self.emit(event, payload)

        return forward

    def _detach_channel(self) -> None:
        for handle in self._channel_handles:
            handle.remove()
        self._channel_handles = []
        self._channel = None
