"""Subscription: a publishing contract owned by a session.

State machine (Terminated is absorbing):

    CREATING -> NORMAL <-> KEEPALIVE -> TERMINATED

On every publishing interval the subscription runs one publish cycle:
- pending values in its monitored items are drained round-robin, up to
  max_notifications_per_publish, and handed to the dispatcher (NORMAL)
- after max_keep_alive_count idle cycles a Publish exchange confirms the
  subscription is still alive on the server and "keepalive" is emitted
  (KEEPALIVE); the next data cycle returns it to NORMAL
- after lifetime_count cycles without data or a confirmed keepalive the
  subscription is presumed lost and terminates itself

Publish cycles of one subscription never overlap; different subscriptions
run their cycles independently.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from uacore.client.dispatcher import Delivery, Dispatcher
from uacore.client.monitored_item import MonitoredItem
from uacore.core.config import ClientConfig
from uacore.core.errors import ServiceFault, SessionClosed, UACoreError
from uacore.core.events import EventEmitter, KeepAliveEvent, SubscriptionStarted, SubscriptionTerminated
from uacore.ua.messages import (
    CreateMonitoredItemRequest,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    DeleteSubscriptionsRequest,
    NotificationMessage,
    PublishRequest,
    SetPublishingModeRequest,
)
from uacore.ua.types import (
    AttributeId,
    DataValue,
    MonitoringParameters,
    StatusCodes,
    SubscriptionParameters,
    TimestampsToReturn,
    resolve_node_id,
)

if TYPE_CHECKING:
    from uacore.client.session import Session

logger = structlog.get_logger(__name__)


class SubscriptionState(str, Enum):
    """Lifecycle state of a Subscription."""

    CREATING = "creating"
    NORMAL = "normal"
    KEEPALIVE = "keepalive_pending"
    TERMINATED = "terminated"


class Subscription(EventEmitter):
    """Client side of an OPC UA subscription.

    Created through Session.create_subscription(). Attribute values reflect
    the parameters as revised by the server.

    Events:
        started: SubscriptionStarted once the server acknowledged creation
        keepalive: KeepAliveEvent after each confirmed keepalive cycle
        terminated: SubscriptionTerminated, exactly once

    Example:
        >>> subscription = await session.create_subscription(
        ...     SubscriptionParameters(requested_publishing_interval=1000)
        ... )
        >>> subscription.on("keepalive", lambda event: print("keepalive"))
        >>> item = await subscription.monitor("ns=1;s=Temperature")
        >>> await subscription.terminate()
    """

    events = frozenset({"started", "keepalive", "terminated"})

    def __init__(
        self,
        session: Session,
        parameters: SubscriptionParameters,
        config: ClientConfig,
    ):
        super().__init__()
        self._session = session
        self.parameters = parameters
        self._config = config

        self.subscription_id = 0
        self.publishing_interval = parameters.requested_publishing_interval
        self.lifetime_count = parameters.requested_lifetime_count
        self.max_keep_alive_count = parameters.requested_max_keep_alive_count
        self.max_notifications_per_publish = parameters.max_notifications_per_publish
        self.priority = parameters.priority
        self.publishing_enabled = parameters.publishing_enabled

        self._state = SubscriptionState.CREATING
        self._items: dict[int, MonitoredItem] = {}
        self._early: dict[int, list[DataValue]] = {}
        self._items_in_creation = 0
        self._timer_task: asyncio.Task[None] | None = None
        self._cycle_lock = asyncio.Lock()
        self._dispatcher = Dispatcher(0, config.dispatch_queue_size)
        self._keep_alive_counter = 0
        self._lifetime_counter = 0
        self._idle_intervals = 0
        self._rr_offset = 0
        self._suspended = False
        self.sequence_number = 0

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_terminated(self) -> bool:
        return self._state == SubscriptionState.TERMINATED

    @property
    def monitored_items(self) -> list[MonitoredItem]:
        """Live monitored items in registration order."""
        return list(self._items.values())

    # --- Public operations ---

    async def monitor(
        self,
        node_id: str,
        parameters: MonitoringParameters | None = None,
        timestamps_to_return: TimestampsToReturn = TimestampsToReturn.Both,
        *,
        attribute_id: AttributeId = AttributeId.Value,
    ) -> MonitoredItem:
        """Register a monitored item for one node attribute.

        Args:
            node_id: Node id (or well-known alias) of the target
            parameters: Sampling and queueing policy
            timestamps_to_return: Which timestamps notifications carry
            attribute_id: Attribute to monitor (Value by default)

        Returns:
            The registered MonitoredItem

        Raises:
            InvalidParameter: queue_size < 1 or another policy value is out
                of range
            SessionClosed: The subscription is terminated
            ServiceFault: The server refused the item (e.g. unknown node)
        """
        parameters = parameters or MonitoringParameters()
        parameters.validate()
        self._require_active()
        node_id = resolve_node_id(node_id)

        self._items_in_creation += 1
        try:
            body = await self._session._request(
                self._monitored_item_request(node_id, attribute_id, parameters, timestamps_to_return)
            )
        finally:
            self._items_in_creation -= 1

        if body.status.is_bad():
            raise ServiceFault(body.status, "CreateMonitoredItem")
        self._require_active()

        item = MonitoredItem(
            subscription=self,
            monitored_item_id=body.monitored_item_id,
            node_id=node_id,
            attribute_id=attribute_id,
            parameters=MonitoringParameters(
                sampling_interval=body.revised_sampling_interval,
                queue_size=body.revised_queue_size or parameters.queue_size,
                discard_oldest=parameters.discard_oldest,
                deadband=parameters.deadband,
            ),
            timestamps_to_return=timestamps_to_return,
        )
        self._register_item(item)
        logger.info(
            "monitored_item_created",
            subscription_id=self.subscription_id,
            monitored_item_id=item.monitored_item_id,
            node_id=node_id,
            sampling_interval=item.sampling_interval,
            queue_size=item.queue_size,
        )
        return item

    async def set_publishing_mode(self, enabled: bool) -> None:
        """Enable or disable data publishing; keepalives continue either way."""
        self._require_active()
        body = await self._session._request(
            SetPublishingModeRequest(
                subscription_ids=[self.subscription_id], publishing_enabled=enabled
            )
        )
        if body.results and body.results[0].is_bad():
            raise ServiceFault(body.results[0], "SetPublishingMode")
        self.publishing_enabled = enabled
        logger.info(
            "subscription_publishing_mode",
            subscription_id=self.subscription_id,
            enabled=enabled,
        )

    async def terminate(self) -> None:
        """Terminate the subscription and all of its monitored items.

        Local resources are released first and "terminated" is emitted; the
        server side delete is best-effort. A no-op once terminated.
        """
        if self.is_terminated:
            return
        was_created = self._state != SubscriptionState.CREATING
        subscription_id = self.subscription_id
        self._teardown("client")

        if not was_created or self._session.is_closed:
            return
        try:
            await self._session._request(
                DeleteSubscriptionsRequest(subscription_ids=[subscription_id])
            )
        except UACoreError as e:
            logger.warning(
                "subscription_delete_failed",
                subscription_id=subscription_id,
                error=str(e),
            )

    async def wait_delivered(self) -> None:
        """Wait until every published notification reached its listeners."""
        await self._dispatcher.join()

    # --- Lifecycle driven by the session ---

    async def _create(self) -> None:
        body = await self._session._request(self._create_request())
        self._apply_revised(body)
        self._state = SubscriptionState.NORMAL
        self._dispatcher.start()
        self._timer_task = asyncio.create_task(self._publishing_loop())
        logger.info(
            "subscription_started",
            subscription_id=self.subscription_id,
            publishing_interval=self.publishing_interval,
            lifetime_count=self.lifetime_count,
            max_keep_alive_count=self.max_keep_alive_count,
        )
        self.emit(
            "started",
            SubscriptionStarted(
                subscription_id=self.subscription_id,
                publishing_interval=self.publishing_interval,
                lifetime_count=self.lifetime_count,
                max_keep_alive_count=self.max_keep_alive_count,
            ),
        )

    def _suspend(self) -> None:
        """Pause publish cycles while the owning session is being recreated."""
        self._suspended = True

    async def _recreate(self) -> None:
        """Create the subscription and its items again on a fresh server session."""
        previous_id = self.subscription_id
        async with self._cycle_lock:
            body = await self._session._request(self._create_request())
            self._apply_revised(body)
            self._session._register_subscription(self)

            items = list(self._items.values())
            self._items.clear()
            for item in items:
                self._items_in_creation += 1
                try:
                    response = await self._session._request(
                        self._monitored_item_request(
                            item.node_id,
                            item.attribute_id,
                            item.parameters,
                            item.timestamps_to_return,
                        )
                    )
                finally:
                    self._items_in_creation -= 1
                if response.status.is_bad():
                    logger.error(
                        "monitored_item_restore_failed",
                        subscription_id=self.subscription_id,
                        node_id=item.node_id,
                        status=str(response.status),
                    )
                    item._stop()
                    continue
                item.monitored_item_id = response.monitored_item_id
                self._register_item(item)

            self._keep_alive_counter = 0
            self._lifetime_counter = 0
            self._suspended = False

        logger.info(
            "subscription_restored",
            previous_id=previous_id,
            subscription_id=self.subscription_id,
            monitored_items=len(self._items),
        )

    def _on_notification(self, message: NotificationMessage) -> None:
        """Queue a sample pushed by the server into its monitored item."""
        if self.is_terminated:
            return
        item = self._items.get(message.monitored_item_id)
        if item is not None:
            item.enqueue(message.value)
        elif self._items_in_creation:
            # The first sample can overtake the CreateMonitoredItem response.
            self._early.setdefault(message.monitored_item_id, []).append(message.value)
        else:
            logger.debug(
                "subscription_unknown_monitored_item",
                subscription_id=self.subscription_id,
                monitored_item_id=message.monitored_item_id,
            )

    def _teardown(self, reason: str) -> None:
        """Release everything locally and emit "terminated" (synchronous)."""
        if self.is_terminated:
            return
        self._state = SubscriptionState.TERMINATED

        timer = self._timer_task
        self._timer_task = None
        if timer and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

        for item in list(self._items.values()):
            item._stop()
        self._items.clear()
        self._early.clear()
        self._dispatcher.close()
        self._session._forget_subscription(self)

        logger.info(
            "subscription_terminated",
            subscription_id=self.subscription_id,
            reason=reason,
        )
        self.emit(
            "terminated",
            SubscriptionTerminated(subscription_id=self.subscription_id, reason=reason),
        )

    def _forget_item(self, item: MonitoredItem) -> None:
        self._items.pop(item.monitored_item_id, None)

    # --- Publishing ---

    async def _publishing_loop(self) -> None:
        while not self.is_terminated:
            await asyncio.sleep(self.publishing_interval / 1000)
            try:
                await self._publish_cycle()
            except Exception as e:
                logger.error(
                    "subscription_publish_cycle_failed",
                    subscription_id=self.subscription_id,
                    error=str(e),
                    exc_info=True,
                )

    async def _publish_cycle(self) -> None:
        """Run one publishing interval's worth of work."""
        async with self._cycle_lock:
            if self._suspended or self._state in (
                SubscriptionState.CREATING,
                SubscriptionState.TERMINATED,
            ):
                return

            deliveries = self._collect() if self.publishing_enabled else []
            if deliveries:
                self._keep_alive_counter = 0
                self._lifetime_counter = 0
                self._idle_intervals = 0
                self.sequence_number += 1
                if self._state == SubscriptionState.KEEPALIVE:
                    self._state = SubscriptionState.NORMAL
                logger.debug(
                    "subscription_publish",
                    subscription_id=self.subscription_id,
                    sequence_number=self.sequence_number,
                    notifications=len(deliveries),
                )
                await self._dispatcher.put(deliveries)
                return

            self._keep_alive_counter += 1
            self._lifetime_counter += 1
            self._idle_intervals += 1
            if self._keep_alive_counter >= self.max_keep_alive_count:
                self._keep_alive_counter = 0
                confirmed = await self._confirm_keepalive()
                if self.is_terminated:
                    return
                if confirmed:
                    self._lifetime_counter = 0
                    self._state = SubscriptionState.KEEPALIVE
                    logger.debug(
                        "subscription_keepalive",
                        subscription_id=self.subscription_id,
                        idle_intervals=self._idle_intervals,
                    )
                    self.emit(
                        "keepalive",
                        KeepAliveEvent(
                            subscription_id=self.subscription_id,
                            idle_intervals=self._idle_intervals,
                        ),
                    )
                    return

            if self._lifetime_counter >= self.lifetime_count:
                logger.warning(
                    "subscription_lifetime_expired",
                    subscription_id=self.subscription_id,
                    lifetime_count=self.lifetime_count,
                )
                self._teardown("lifetime_expired")

    def _collect(self) -> list[Delivery]:
        """Drain pending values round-robin across items in registration order."""
        items = list(self._items.values())
        if not items:
            return []
        limit = self.max_notifications_per_publish
        start = self._rr_offset % len(items)
        order = items[start:] + items[:start]

        deliveries: list[Delivery] = []
        progressed = True
        while progressed and not (limit and len(deliveries) >= limit):
            progressed = False
            for item in order:
                if limit and len(deliveries) >= limit:
                    break
                value = item._pop()
                if value is not None:
                    deliveries.append((item, value))
                    progressed = True

        if limit and any(item.pending for item in items):
            # Truncated cycle: the next one starts with the following item.
            self._rr_offset = (start + 1) % len(items)
        return deliveries

    async def _confirm_keepalive(self) -> bool:
        try:
            await self._session._request(PublishRequest(subscription_id=self.subscription_id))
            return True
        except ServiceFault as e:
            if e.status.value == StatusCodes.BadSubscriptionIdInvalid:
                logger.warning(
                    "subscription_unknown_to_server",
                    subscription_id=self.subscription_id,
                )
                self._teardown("server_rejected")
            else:
                logger.warning(
                    "subscription_keepalive_failed",
                    subscription_id=self.subscription_id,
                    error=str(e),
                )
            return False
        except UACoreError as e:
            logger.warning(
                "subscription_keepalive_failed",
                subscription_id=self.subscription_id,
                error=str(e),
            )
            return False

    # --- Internal helpers ---

    def _create_request(self) -> CreateSubscriptionRequest:
        return CreateSubscriptionRequest(
            requested_publishing_interval=self.parameters.requested_publishing_interval,
            requested_lifetime_count=self.parameters.requested_lifetime_count,
            requested_max_keep_alive_count=self.parameters.requested_max_keep_alive_count,
            max_notifications_per_publish=self.parameters.max_notifications_per_publish,
            publishing_enabled=self.publishing_enabled,
            priority=self.parameters.priority,
        )

    def _monitored_item_request(
        self,
        node_id: str,
        attribute_id: AttributeId,
        parameters: MonitoringParameters,
        timestamps_to_return: TimestampsToReturn,
    ) -> CreateMonitoredItemRequest:
        return CreateMonitoredItemRequest(
            subscription_id=self.subscription_id,
            node_id=node_id,
            attribute_id=attribute_id,
            sampling_interval=parameters.sampling_interval,
            queue_size=parameters.queue_size,
            discard_oldest=parameters.discard_oldest,
            deadband=parameters.deadband,
            timestamps_to_return=timestamps_to_return,
        )

    def _apply_revised(self, body: CreateSubscriptionResponse) -> None:
        self.subscription_id = body.subscription_id
        self.publishing_interval = body.revised_publishing_interval
        self.lifetime_count = body.revised_lifetime_count
        self.max_keep_alive_count = body.revised_max_keep_alive_count
        self._dispatcher.subscription_id = body.subscription_id

    def _register_item(self, item: MonitoredItem) -> None:
        self._items[item.monitored_item_id] = item
        for value in self._early.pop(item.monitored_item_id, []):
            item.enqueue(value)

    def _require_active(self) -> None:
        if self.is_terminated:
            raise SessionClosed(f"subscription {self.subscription_id} is terminated")

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.subscription_id}, state={self._state.value}, "
            f"items={len(self._items)})"
        )
