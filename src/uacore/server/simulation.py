"""In-process OPC UA style server for tests, examples and local development.

SimulationServer answers every service the client core uses, over TCP or
over in-memory links. Sessions outlive the connection that created them, so
a client that reconnects can re-activate its session; forget_sessions()
simulates a server restart where that is no longer possible.

Monitored items are sampled by one task each. A sample is pushed to the
owning session's current connection when it passes the item's deadband
filter.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog
from pydantic import BaseModel, ValidationError

from uacore.server.address_space import AddressSpace, build_demo_address_space
from uacore.transport.link import Link, MemoryLink, TcpLink, memory_pipe, parse_endpoint
from uacore.ua.messages import (
    ActivateSessionResponse,
    BrowseResponse,
    CloseSessionResponse,
    CreateMonitoredItemRequest,
    CreateMonitoredItemResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    DeleteMonitoredItemsRequest,
    DeleteMonitoredItemsResponse,
    DeleteSubscriptionsRequest,
    DeleteSubscriptionsResponse,
    GetEndpointsResponse,
    NotificationMessage,
    PublishRequest,
    PublishResponse,
    ReadResponse,
    RequestMessage,
    ResponseMessage,
    SetPublishingModeRequest,
    SetPublishingModeResponse,
    WriteResponse,
    decode,
    encode,
)
from uacore.ua.types import (
    AttributeId,
    DataValue,
    StatusCode,
    StatusCodes,
    TimestampsToReturn,
    VariantType,
)

logger = structlog.get_logger(__name__)

MIN_SESSION_TIMEOUT = 1000.0
MAX_SESSION_TIMEOUT = 3_600_000.0
MIN_PUBLISHING_INTERVAL = 10.0
MIN_SAMPLING_INTERVAL = 10.0

_NUMERIC_TYPES = frozenset(
    {VariantType.Int32, VariantType.Int64, VariantType.Float, VariantType.Double}
)


class _Fault(Exception):
    """Raised inside a handler to answer with a bad service result."""

    def __init__(self, status: int):
        self.status = StatusCode(status)
        super().__init__(str(self.status))


@dataclass(eq=False)
class _Connection:
    link: Link
    peer: str
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task[None] | None = None


@dataclass(eq=False)
class _Item:
    monitored_item_id: int
    node_id: str
    attribute_id: AttributeId
    sampling_interval: float
    queue_size: int
    deadband: float | None
    timestamps_to_return: TimestampsToReturn
    last: DataValue | None = None
    task: asyncio.Task[None] | None = None


@dataclass(eq=False)
class _Subscription:
    subscription_id: int
    publishing_interval: float
    lifetime_count: int
    max_keep_alive_count: int
    publishing_enabled: bool
    priority: int
    items: dict[int, _Item] = field(default_factory=dict)


@dataclass(eq=False)
class _Session:
    session_id: int
    authentication_token: str
    name: str
    timeout: float
    connection: _Connection | None = None
    subscriptions: dict[int, _Subscription] = field(default_factory=dict)


def passes_deadband(previous: DataValue | None, current: DataValue, deadband: float | None) -> bool:
    """Decide whether `current` is reported after `previous`.

    Args:
        previous: Last reported sample, None before the first report
        current: New sample
        deadband: None reports every sample, 0.0 reports any change, a
            positive value reports numeric changes larger than it
    """
    if previous is None or deadband is None:
        return True
    if current.status != previous.status:
        return True
    old, new = previous.value, current.value
    if old.variant_type != new.variant_type:
        return True
    if deadband > 0 and new.variant_type in _NUMERIC_TYPES:
        return abs(new.value - old.value) > deadband
    return new.value != old.value


class SimulationServer:
    """A small server speaking the uacore wire protocol.

    Example:
        >>> server = SimulationServer("opc.tcp://127.0.0.1:0", build_demo_address_space())
        >>> await server.start()
        >>> client = UAClient.create(max_retry=1)
        >>> await client.connect(server.endpoint_url)
        ...
        >>> await server.stop()

        In-memory, without sockets:

        >>> await client.connect(server.endpoint_url, connector=server.connect)
    """

    def __init__(
        self,
        endpoint_url: str = "opc.tcp://127.0.0.1:4840",
        address_space: AddressSpace | None = None,
        *,
        server_name: str = "uacore simulation server",
        extra_endpoints: list[str] | None = None,
    ):
        self._endpoint_url = endpoint_url
        self.address_space = address_space or build_demo_address_space()
        self.server_name = server_name
        self.extra_endpoints = list(extra_endpoints or [])
        self.accepting = True
        self.request_count = 0

        self._tcp_server: asyncio.Server | None = None
        self._connections: set[_Connection] = set()
        self._sessions: dict[str, _Session] = {}
        self._session_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._item_ids = itertools.count(1)
        self._handlers: dict[str, Callable[[_Connection, _Session | None, Any], BaseModel]] = {
            "GetEndpoints": self._get_endpoints,
            "CreateSession": self._create_session,
            "ActivateSession": self._activate_session,
            "CloseSession": self._close_session,
            "Browse": self._browse,
            "Read": self._read,
            "Write": self._write,
            "CreateSubscription": self._create_subscription,
            "SetPublishingMode": self._set_publishing_mode,
            "DeleteSubscriptions": self._delete_subscriptions,
            "CreateMonitoredItem": self._create_monitored_item,
            "DeleteMonitoredItems": self._delete_monitored_items,
            "Publish": self._publish,
        }

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    @property
    def endpoints(self) -> list[str]:
        return [self._endpoint_url, *self.extra_endpoints]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def subscription_ids(self) -> list[int]:
        return [sid for s in self._sessions.values() for sid in s.subscriptions]

    def monitored_item_count(self) -> int:
        return sum(
            len(sub.items) for s in self._sessions.values() for sub in s.subscriptions.values()
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Listen for TCP connections; port 0 picks a free port."""
        if self._tcp_server is not None:
            return
        host, port = parse_endpoint(self._endpoint_url)
        self._tcp_server = await asyncio.start_server(self._on_tcp_client, host, port)
        self.accepting = True
        if port == 0:
            bound_port = self._tcp_server.sockets[0].getsockname()[1]
            parts = urlsplit(self._endpoint_url)
            self._endpoint_url = urlunsplit(
                parts._replace(netloc=f"{parts.hostname}:{bound_port}")
            )
        logger.info("simulation_server_started", endpoint=self._endpoint_url)

    async def stop(self) -> None:
        """Stop listening, drop every connection and sampling task."""
        self.accepting = False
        tcp_server = self._tcp_server
        self._tcp_server = None
        if tcp_server is not None:
            tcp_server.close()
        await self.drop_connections()
        if tcp_server is not None:
            await tcp_server.wait_closed()
        self.forget_sessions()
        logger.info("simulation_server_stopped", endpoint=self._endpoint_url)

    async def __aenter__(self) -> SimulationServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def connect(self, url: str) -> MemoryLink:
        """Connector for in-memory clients: returns the client end of a new pipe.

        Raises:
            ConnectionRefusedError: The server is not accepting connections
        """
        if not self.accepting:
            raise ConnectionRefusedError(f"{self._endpoint_url} refused the connection")
        client_end, server_end = memory_pipe(url)
        self._serve(server_end, peer=server_end.name)
        return client_end

    # --- Test hooks ---

    async def drop_connections(self) -> None:
        """Close every live connection; sessions survive."""
        connections = list(self._connections)
        for connection in connections:
            await connection.link.close()
        for connection in connections:
            if connection.task is not None and connection.task is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await connection.task
        if connections:
            logger.info("simulation_connections_dropped", count=len(connections))

    def set_value(self, node_id: str, value: Any, status: StatusCode | None = None) -> None:
        """Change a variable from the server side; monitored items pick it up."""
        self.address_space.set_value(node_id, value, status)

    def forget_sessions(self) -> None:
        """Discard every session, subscription and monitored item."""
        for session in self._sessions.values():
            self._drop_subscriptions(session, list(session.subscriptions))
        self._sessions.clear()

    # --- Connections ---

    async def _on_tcp_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        link = TcpLink(reader, writer)
        if not self.accepting:
            await link.close()
            return
        connection = self._serve(link, peer=link.peer)
        if connection.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await connection.task

    def _serve(self, link: Link, peer: str) -> _Connection:
        connection = _Connection(link=link, peer=peer)
        self._connections.add(connection)
        connection.task = asyncio.create_task(self._connection_loop(connection))
        logger.debug("simulation_connection_opened", peer=peer)
        return connection

    async def _connection_loop(self, connection: _Connection) -> None:
        try:
            while True:
                frame = await connection.link.receive()
                try:
                    message = decode(frame)
                except ValidationError as e:
                    logger.warning("simulation_bad_frame", peer=connection.peer, error=str(e))
                    continue
                if not isinstance(message, RequestMessage):
                    logger.warning("simulation_unexpected_message", kind=message.kind)
                    continue
                response = self._handle(connection, message)
                await self._send(connection, response)
        except (ConnectionError, OSError) as e:
            logger.debug("simulation_connection_lost", peer=connection.peer, error=str(e))
        finally:
            self._connections.discard(connection)
            for session in self._sessions.values():
                if session.connection is connection:
                    session.connection = None
            await connection.link.close()
            logger.debug("simulation_connection_closed", peer=connection.peer)

    async def _send(self, connection: _Connection, message: BaseModel) -> None:
        async with connection.send_lock:
            await connection.link.send(encode(message))

    # --- Request handling ---

    def _handle(self, connection: _Connection, request: RequestMessage) -> ResponseMessage:
        self.request_count += 1
        service = request.body.service
        handler = self._handlers.get(service)
        try:
            if handler is None:
                raise _Fault(StatusCodes.BadServiceUnsupported)
            session = self._session_for(connection, request)
            body = handler(connection, session, request.body)
        except _Fault as e:
            logger.debug(
                "simulation_service_fault",
                service=service,
                request_id=request.request_id,
                status=str(e.status),
            )
            return ResponseMessage(request_id=request.request_id, service_result=e.status)
        return ResponseMessage(request_id=request.request_id, body=body)

    def _session_for(self, connection: _Connection, request: RequestMessage) -> _Session | None:
        service = request.body.service
        if service in ("GetEndpoints", "CreateSession"):
            return None
        token = request.authentication_token
        session = self._sessions.get(token) if token else None
        if session is None:
            raise _Fault(StatusCodes.BadSessionIdInvalid)
        if service != "ActivateSession" and session.connection is not connection:
            raise _Fault(StatusCodes.BadSessionNotActivated)
        return session

    def _subscription(self, session: _Session, subscription_id: int) -> _Subscription:
        subscription = session.subscriptions.get(subscription_id)
        if subscription is None:
            raise _Fault(StatusCodes.BadSubscriptionIdInvalid)
        return subscription

    def _get_endpoints(self, connection, session, body) -> GetEndpointsResponse:
        return GetEndpointsResponse(endpoints=self.endpoints, server_name=self.server_name)

    def _create_session(
        self, connection: _Connection, session: None, body: CreateSessionRequest
    ) -> CreateSessionResponse:
        timeout = min(max(body.requested_session_timeout, MIN_SESSION_TIMEOUT), MAX_SESSION_TIMEOUT)
        created = _Session(
            session_id=next(self._session_ids),
            authentication_token=secrets.token_hex(16),
            name=body.session_name,
            timeout=timeout,
            connection=connection,
        )
        self._sessions[created.authentication_token] = created
        logger.info(
            "simulation_session_created",
            session_id=created.session_id,
            name=created.name,
            peer=connection.peer,
        )
        return CreateSessionResponse(
            session_id=created.session_id,
            authentication_token=created.authentication_token,
            revised_session_timeout=timeout,
        )

    def _activate_session(self, connection, session: _Session, body) -> ActivateSessionResponse:
        session.connection = connection
        logger.info("simulation_session_activated", session_id=session.session_id)
        return ActivateSessionResponse()

    def _close_session(self, connection, session: _Session, body) -> CloseSessionResponse:
        self._drop_subscriptions(session, list(session.subscriptions))
        self._sessions.pop(session.authentication_token, None)
        logger.info("simulation_session_closed", session_id=session.session_id)
        return CloseSessionResponse()

    def _browse(self, connection, session, body) -> BrowseResponse:
        status, references = self.address_space.browse(body.node_id)
        return BrowseResponse(status=status, references=references)

    def _read(self, connection, session, body) -> ReadResponse:
        value = self.address_space.read(body.node_id, body.attribute_id)
        return ReadResponse(value=value.with_timestamps(body.timestamps_to_return))

    def _write(self, connection, session, body) -> WriteResponse:
        return WriteResponse(
            status=self.address_space.write(body.node_id, body.value, body.attribute_id)
        )

    def _create_subscription(
        self, connection, session: _Session, body: CreateSubscriptionRequest
    ) -> CreateSubscriptionResponse:
        keep_alive = max(1, body.requested_max_keep_alive_count)
        subscription = _Subscription(
            subscription_id=next(self._subscription_ids),
            publishing_interval=max(body.requested_publishing_interval, MIN_PUBLISHING_INTERVAL),
            lifetime_count=max(body.requested_lifetime_count, 3 * keep_alive),
            max_keep_alive_count=keep_alive,
            publishing_enabled=body.publishing_enabled,
            priority=body.priority,
        )
        session.subscriptions[subscription.subscription_id] = subscription
        logger.info(
            "simulation_subscription_created",
            session_id=session.session_id,
            subscription_id=subscription.subscription_id,
        )
        return CreateSubscriptionResponse(
            subscription_id=subscription.subscription_id,
            revised_publishing_interval=subscription.publishing_interval,
            revised_lifetime_count=subscription.lifetime_count,
            revised_max_keep_alive_count=subscription.max_keep_alive_count,
        )

    def _set_publishing_mode(
        self, connection, session: _Session, body: SetPublishingModeRequest
    ) -> SetPublishingModeResponse:
        results = []
        for subscription_id in body.subscription_ids:
            subscription = session.subscriptions.get(subscription_id)
            if subscription is None:
                results.append(StatusCode(StatusCodes.BadSubscriptionIdInvalid))
                continue
            subscription.publishing_enabled = body.publishing_enabled
            results.append(StatusCode())
        return SetPublishingModeResponse(results=results)

    def _delete_subscriptions(
        self, connection, session: _Session, body: DeleteSubscriptionsRequest
    ) -> DeleteSubscriptionsResponse:
        results = []
        for subscription_id in body.subscription_ids:
            if subscription_id in session.subscriptions:
                self._drop_subscriptions(session, [subscription_id])
                results.append(StatusCode())
            else:
                results.append(StatusCode(StatusCodes.BadSubscriptionIdInvalid))
        return DeleteSubscriptionsResponse(results=results)

    def _create_monitored_item(
        self, connection, session: _Session, body: CreateMonitoredItemRequest
    ) -> CreateMonitoredItemResponse:
        subscription = self._subscription(session, body.subscription_id)
        probe = self.address_space.read(body.node_id, body.attribute_id)
        if probe.status.value in (StatusCodes.BadNodeIdUnknown, StatusCodes.BadAttributeIdInvalid):
            return CreateMonitoredItemResponse(status=probe.status)

        item = _Item(
            monitored_item_id=next(self._item_ids),
            node_id=body.node_id,
            attribute_id=body.attribute_id,
            sampling_interval=max(body.sampling_interval, MIN_SAMPLING_INTERVAL),
            queue_size=body.queue_size,
            deadband=body.deadband,
            timestamps_to_return=body.timestamps_to_return,
        )
        subscription.items[item.monitored_item_id] = item
        item.task = asyncio.create_task(self._sample_loop(session, subscription, item))
        return CreateMonitoredItemResponse(
            status=StatusCode(),
            monitored_item_id=item.monitored_item_id,
            revised_sampling_interval=item.sampling_interval,
            revised_queue_size=item.queue_size,
        )

    def _delete_monitored_items(
        self, connection, session: _Session, body: DeleteMonitoredItemsRequest
    ) -> DeleteMonitoredItemsResponse:
        subscription = self._subscription(session, body.subscription_id)
        results = []
        for monitored_item_id in body.monitored_item_ids:
            item = subscription.items.pop(monitored_item_id, None)
            if item is None:
                results.append(StatusCode(StatusCodes.BadMonitoredItemIdInvalid))
                continue
            self._cancel_item(item)
            results.append(StatusCode())
        return DeleteMonitoredItemsResponse(results=results)

    def _publish(self, connection, session: _Session, body: PublishRequest) -> PublishResponse:
        subscription = self._subscription(session, body.subscription_id)
        return PublishResponse(subscription_id=subscription.subscription_id)

    # --- Sampling ---

    async def _sample_loop(
        self, session: _Session, subscription: _Subscription, item: _Item
    ) -> None:
        while True:
            if item.attribute_id == AttributeId.Value:
                value = self.address_space.sample(item.node_id)
            else:
                value = self.address_space.read(item.node_id, item.attribute_id)

            if subscription.publishing_enabled and passes_deadband(
                item.last, value, item.deadband
            ):
                item.last = value
                await self._notify(session, subscription, item, value)
            await asyncio.sleep(item.sampling_interval / 1000)

    async def _notify(
        self, session: _Session, subscription: _Subscription, item: _Item, value: DataValue
    ) -> None:
        connection = session.connection
        if connection is None:
            return
        message = NotificationMessage(
            session_id=session.session_id,
            subscription_id=subscription.subscription_id,
            monitored_item_id=item.monitored_item_id,
            value=value.with_timestamps(item.timestamps_to_return),
        )
        try:
            await self._send(connection, message)
        except (ConnectionError, OSError) as e:
            logger.debug(
                "simulation_notify_failed",
                session_id=session.session_id,
                monitored_item_id=item.monitored_item_id,
                error=str(e),
            )

    def _drop_subscriptions(self, session: _Session, subscription_ids: list[int]) -> None:
        for subscription_id in subscription_ids:
            subscription = session.subscriptions.pop(subscription_id, None)
            if subscription is None:
                continue
            for item in subscription.items.values():
                self._cancel_item(item)
            subscription.items.clear()

    @staticmethod
    def _cancel_item(item: _Item) -> None:
        if item.task is not None and not item.task.done():
            item.task.cancel()
        item.task = None
