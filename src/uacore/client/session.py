"""Session: the server side context for browse, read, write and subscriptions.

A session lives on exactly one channel. It issues its requests over that
channel with its authentication token, routes pushed notifications to the
owning subscription, and follows the channel through reconnects:

- after "reconnected" it re-activates itself; if the server no longer knows
  it, a new session is created and every subscription and monitored item is
  recreated (highest priority first)
- after "closed" it tears itself down locally, terminating subscriptions
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel

from uacore.client.subscription import Subscription
from uacore.core.config import ClientConfig
from uacore.core.errors import (
    ServiceFault,
    SessionClosed,
    SessionCreateFailed,
    TransportError,
    UACoreError,
)
from uacore.core.events import ChannelClosedEvent, ListenerHandle, ReconnectedEvent
from uacore.transport.channel import Channel
from uacore.ua.messages import (
    ActivateSessionRequest,
    BrowseRequest,
    CloseSessionRequest,
    CreateSessionRequest,
    CreateSessionResponse,
    NotificationMessage,
    ReadRequest,
    WriteRequest,
    service_name,
)
from uacore.ua.types import (
    GOOD,
    AttributeId,
    DataValue,
    ReferenceDescription,
    StatusCode,
    StatusCodes,
    SubscriptionParameters,
    TimestampsToReturn,
    Variant,
    resolve_node_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

_SESSION_GONE = frozenset({StatusCodes.BadSessionIdInvalid, StatusCodes.BadSessionClosed})


@dataclass(frozen=True)
class BrowseResult:
    """References returned by Session.browse(), in server order.

    Iterating a BrowseResult yields its references; an empty result means
    the node has no children.
    """

    status: StatusCode = GOOD
    references: list[ReferenceDescription] = field(default_factory=list)

    def __iter__(self) -> Iterator[ReferenceDescription]:
        return iter(self.references)

    def __len__(self) -> int:
        return len(self.references)

    def __getitem__(self, index: int) -> ReferenceDescription:
        return self.references[index]


class Session:
    """A client session created on a connected channel.

    Example:
        >>> session = await Session.create(channel, config)
        >>> for reference in await session.browse("ObjectsFolder"):
        ...     print(reference.browse_name)
        >>> value = await session.read("ns=1;s=Temperature")
        >>> status = await session.write("ns=1;i=1001", "Change of the Data!")
        >>> await session.close()
    """

    def __init__(
        self,
        channel: Channel,
        config: ClientConfig,
        name: str,
        session_id: int,
        authentication_token: str,
        revised_timeout: float,
    ):
        self._channel = channel
        self._config = config
        self.name = name
        self.session_id = session_id
        self._authentication_token = authentication_token
        self.revised_timeout = revised_timeout
        self._subscriptions: dict[int, Subscription] = {}
        self._closed = False
        self._restore_tasks: set[asyncio.Task[None]] = set()
        self._restore_lock = asyncio.Lock()
        self._channel_handles: list[ListenerHandle] = []

    @classmethod
    async def create(
        cls,
        channel: Channel,
        config: ClientConfig | None = None,
        name: str | None = None,
    ) -> Session:
        """Create a session on `channel`.

        Raises:
            SessionCreateFailed: The channel is not connected, or the create
                exchange failed
        """
        config = config or channel.config
        name = name or config.session_name
        if not channel.is_connected:
            raise SessionCreateFailed(
                f"channel to {channel.endpoint} is {channel.state.value}, not connected"
            )
        try:
            body = await cls._create_on_server(channel, config, name)
        except UACoreError as e:
            raise SessionCreateFailed(f"CreateSession failed: {e}") from e

        session = cls(
            channel=channel,
            config=config,
            name=name,
            session_id=body.session_id,
            authentication_token=body.authentication_token,
            revised_timeout=body.revised_session_timeout,
        )
        session._attach()
        logger.info(
            "session_created",
            endpoint=channel.endpoint,
            session_id=session.session_id,
            name=name,
        )
        return session

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def get_subscription(self, subscription_id: int) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    # --- Services ---

    async def browse(self, node_id: str = "ObjectsFolder") -> BrowseResult:
        """Browse the references of a node.

        Args:
            node_id: Node id or well-known alias such as "ObjectsFolder"

        Returns:
            BrowseResult; empty (never None) when the node has no children.
            A bad status (e.g. unknown node) comes back with no references.
        """
        body = await self._request(BrowseRequest(node_id=resolve_node_id(node_id)))
        if body.status.is_bad():
            logger.debug("session_browse_bad_status", node_id=node_id, status=str(body.status))
        return BrowseResult(status=body.status, references=list(body.references))

    async def read(
        self,
        node_id: str,
        attribute_id: AttributeId = AttributeId.Value,
        timestamps_to_return: TimestampsToReturn = TimestampsToReturn.Both,
    ) -> DataValue:
        """Read one attribute.

        A non-Good status is returned inside the DataValue, never raised.
        """
        body = await self._request(
            ReadRequest(
                node_id=resolve_node_id(node_id),
                attribute_id=attribute_id,
                timestamps_to_return=timestamps_to_return,
            )
        )
        return body.value

    async def write(
        self,
        node_id: str,
        value: DataValue | Variant | Any,
        attribute_id: AttributeId = AttributeId.Value,
    ) -> StatusCode:
        """Write one attribute.

        Args:
            node_id: Target node id
            value: A DataValue, a Variant, or a plain Python scalar
            attribute_id: Attribute to write (Value by default)

        Returns:
            The server's status code for the write; transport failures raise
            TransportError instead
        """
        if isinstance(value, DataValue):
            data_value = value
        else:
            data_value = DataValue(value=Variant.of(value), source_timestamp=utcnow())
        body = await self._request(
            WriteRequest(
                node_id=resolve_node_id(node_id),
                attribute_id=attribute_id,
                value=data_value,
            )
        )
        return body.status

    async def create_subscription(
        self, parameters: SubscriptionParameters | None = None
    ) -> Subscription:
        """Create a subscription owned by this session.

        Raises:
            InvalidParameter: publishing interval <= 0,
                max_notifications_per_publish < 0, or another out of range
                value
        """
        parameters = parameters or SubscriptionParameters()
        parameters.validate()
        self._require_open()

        subscription = Subscription(self, parameters, self._config)
        await subscription._create()
        if self._closed:
            subscription._teardown("session_closed")
            raise SessionClosed(f"session {self.session_id} closed during create")
        self._register_subscription(subscription)
        return subscription

    async def close(self, delete_subscriptions: bool = True) -> None:
        """Terminate every subscription, then release the session on the server.

        Cleanup is best-effort: failed requests are logged and local
        resources are released regardless. Safe to call multiple times.
        """
        if self._closed:
            return
        logger.info("session_closing", session_id=self.session_id)

        for subscription in self._by_priority():
            await subscription.terminate()

        try:
            await self._request(CloseSessionRequest(delete_subscriptions=delete_subscriptions))
        except UACoreError as e:
            logger.warning("session_close_failed", session_id=self.session_id, error=str(e))

        self._release()
        logger.info("session_closed", session_id=self.session_id)

    # --- Internal: requests ---

    async def _request(self, body: BaseModel, timeout: float | None = None) -> Any:
        """Send a request with this session's token and return the response body.

        Raises:
            SessionClosed: The session is closed
            ServiceFault: The server rejected the request as a whole
            TransportError: The exchange failed on the channel
        """
        self._require_open()
        response = await self._channel.send(
            body,
            authentication_token=self._authentication_token,
            timeout=timeout,
        )
        if response.service_result.is_bad() or response.body is None:
            raise ServiceFault(response.service_result, service_name(body))
        return response.body

    @staticmethod
    async def _create_on_server(
        channel: Channel, config: ClientConfig, name: str
    ) -> CreateSessionResponse:
        request = CreateSessionRequest(
            session_name=name,
            endpoint_url=channel.endpoint,
            requested_session_timeout=config.session_timeout,
        )
        response = await channel.send(request)
        if response.service_result.is_bad() or response.body is None:
            raise ServiceFault(response.service_result, "CreateSession")
        return response.body

    # --- Internal: channel events ---

    def _attach(self) -> None:
        self._channel_handles = [
            self._channel.on("notification", self._on_notification),
            self._channel.on("reconnected", self._on_reconnected),
            self._channel.on("closed", self._on_channel_closed),
        ]

    def _on_notification(self, message: NotificationMessage) -> None:
        if message.session_id != self.session_id:
            return
        subscription = self._subscriptions.get(message.subscription_id)
        if subscription is not None:
            subscription._on_notification(message)

    def _on_reconnected(self, event: ReconnectedEvent) -> None:
        if self._closed:
            return
        task = asyncio.ensure_future(self._restore())
        self._restore_tasks.add(task)
        task.add_done_callback(self._restore_tasks.discard)

    def _on_channel_closed(self, event: ChannelClosedEvent) -> None:
        if self._closed:
            return
        logger.warning(
            "session_channel_closed",
            session_id=self.session_id,
            reason=event.reason,
        )
        for subscription in self._by_priority():
            subscription._teardown("channel_closed")
        self._release()

    async def _restore(self) -> None:
        """Run one restore at a time; a later reconnect waits for the earlier restore."""
        async with self._restore_lock:
            if self._closed:
                return
            await self._restore_session()

    async def _restore_session(self) -> None:
        """Re-activate the session after a reconnect, recreating it if needed."""
        try:
            await self._request(ActivateSessionRequest())
            logger.info("session_reactivated", session_id=self.session_id)
            return
        except ServiceFault as e:
            if e.status.value not in _SESSION_GONE:
                logger.error("session_activate_failed", session_id=self.session_id, error=str(e))
                return
        except TransportError as e:
            logger.warning("session_activate_failed", session_id=self.session_id, error=str(e))
            return

        logger.warning("session_unknown_to_server", session_id=self.session_id)
        for subscription in self._subscriptions.values():
            subscription._suspend()
        try:
            body = await self._create_on_server(self._channel, self._config, self.name)
        except UACoreError as e:
            logger.error("session_recreate_failed", session_id=self.session_id, error=str(e))
            for subscription in self._by_priority():
                subscription._teardown("session_lost")
            self._release()
            return

        previous_id = self.session_id
        self.session_id = body.session_id
        self._authentication_token = body.authentication_token
        self.revised_timeout = body.revised_session_timeout

        subscriptions = self._by_priority()
        self._subscriptions.clear()
        for subscription in subscriptions:
            try:
                await subscription._recreate()
            except UACoreError as e:
                logger.error(
                    "subscription_restore_failed",
                    subscription_id=subscription.subscription_id,
                    error=str(e),
                )
                subscription._teardown("restore_failed")

        logger.info(
            "session_recreated",
            previous_id=previous_id,
            session_id=self.session_id,
            subscriptions=len(self._subscriptions),
        )

    # --- Internal: bookkeeping ---

    def _register_subscription(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription

    def _forget_subscription(self, subscription: Subscription) -> None:
        if self._subscriptions.get(subscription.subscription_id) is subscription:
            del self._subscriptions[subscription.subscription_id]

    def _by_priority(self) -> list[Subscription]:
        """Subscriptions ordered by descending priority, then creation order."""
        return sorted(self._subscriptions.values(), key=lambda s: -s.priority)

    def _release(self) -> None:
        self._closed = True
        for handle in self._channel_handles:
            handle.remove()
        self._channel_handles = []
        self._subscriptions.clear()
        for task in list(self._restore_tasks):
            if not task.done() and task is not asyncio.current_task():
                task.cancel()

    def _require_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"session {self.session_id} is closed")

    def __repr__(self) -> str:
        return (
            f"Session(id={self.session_id}, name={self.name!r}, "
            f"subscriptions={len(self._subscriptions)}, closed={self._closed})"
        )
