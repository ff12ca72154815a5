"""Monitored item: one node attribute registered under a subscription.

Samples pushed by the server land in a bounded FIFO owned by the item. The
subscription drains the FIFO on its publishing cycle and hands the values to
the item's "changed" listeners through its dispatcher.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import structlog

from uacore.core.errors import UACoreError
from uacore.core.events import EventEmitter, MonitoredItemTerminated
from uacore.ua.messages import DeleteMonitoredItemsRequest
from uacore.ua.types import AttributeId, DataValue, MonitoringParameters, TimestampsToReturn

if TYPE_CHECKING:
    from uacore.client.subscription import Subscription

logger = structlog.get_logger(__name__)


class MonitoredItem(EventEmitter):
    """A registration for change notifications on one node attribute.

    Queue overflow policy (capacity = queue_size):
    - discard_oldest=True: the oldest pending value is dropped for the new one
    - discard_oldest=False: the new value is dropped

    Events:
        changed: DataValue, once per delivered notification, in delivery order
        terminated: MonitoredItemTerminated, once

    Example:
        >>> item = await subscription.monitor("ns=1;s=Temperature")
        >>> item.on("changed", lambda dv: print(dv.value.value))
    """

    events = frozenset({"changed", "terminated"})

    def __init__(
        self,
        subscription: Subscription,
        monitored_item_id: int,
        node_id: str,
        attribute_id: AttributeId,
        parameters: MonitoringParameters,
        timestamps_to_return: TimestampsToReturn,
    ):
        super().__init__()
        self._subscription = subscription
        self.monitored_item_id = monitored_item_id
        self.node_id = node_id
        self.attribute_id = attribute_id
        self.parameters = parameters
        self.timestamps_to_return = timestamps_to_return
        self._queue: deque[DataValue] = deque()
        self._terminated = False
        self.overflow_count = 0
        self.delivered_count = 0

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    @property
    def queue_size(self) -> int:
        return self.parameters.queue_size

    @property
    def discard_oldest(self) -> bool:
        return self.parameters.discard_oldest

    @property
    def sampling_interval(self) -> float:
        return self.parameters.sampling_interval

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def pending(self) -> int:
        """Number of values waiting for the next publish cycle."""
        return len(self._queue)

    @property
    def queued(self) -> list[DataValue]:
        """Snapshot of the pending values, oldest first."""
        return list(self._queue)

    def enqueue(self, value: DataValue) -> bool:
        """Add a sample, applying the overflow policy.

        Returns:
            True if `value` is now queued, False if it was dropped
        """
        if self._terminated:
            return False
        if len(self._queue) >= self.parameters.queue_size:
            self.overflow_count += 1
            if not self.parameters.discard_oldest:
                logger.debug(
                    "monitored_item_overflow_dropped_new",
                    monitored_item_id=self.monitored_item_id,
                    node_id=self.node_id,
                )
                return False
            self._queue.popleft()
        self._queue.append(value)
        return True

    async def terminate(self) -> None:
        """Stop monitoring and remove the item from its subscription.

        The server side delete is best-effort; failures are logged. Calling
        terminate() on a terminated item is a no-op.
        """
        if self._terminated:
            return
        subscription = self._subscription
        subscription._forget_item(self)
        self._stop()

        if subscription.is_terminated:
            return
        try:
            await subscription.session._request(
                DeleteMonitoredItemsRequest(
                    subscription_id=subscription.subscription_id,
                    monitored_item_ids=[self.monitored_item_id],
                )
            )
        except UACoreError as e:
            logger.warning(
                "monitored_item_delete_failed",
                subscription_id=subscription.subscription_id,
                monitored_item_id=self.monitored_item_id,
                error=str(e),
            )

    # --- Internal methods ---

    def _pop(self) -> DataValue | None:
        return self._queue.popleft() if self._queue else None

    async def _deliver(self, value: DataValue) -> None:
        """Run the "changed" listeners for one notification (dispatcher worker)."""
        if self._terminated:
            return
        self.delivered_count += 1
        await self.emit_async("changed", value)

    def _stop(self) -> None:
        """Local teardown: drop pending values and emit "terminated" once."""
        if self._terminated:
            return
        self._terminated = True
        self._queue.clear()
        logger.debug(
            "monitored_item_terminated",
            subscription_id=self._subscription.subscription_id,
            monitored_item_id=self.monitored_item_id,
        )
        self.emit(
            "terminated",
            MonitoredItemTerminated(
                subscription_id=self._subscription.subscription_id,
                monitored_item_id=self.monitored_item_id,
                node_id=self.node_id,
            ),
        )

    def __repr__(self) -> str:
        return (
            f"MonitoredItem(id={self.monitored_item_id}, node_id={self.node_id!r}, "
            f"pending={self.pending}, terminated={self._terminated})"
        )
