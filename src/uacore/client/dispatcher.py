"""Listener hand-off for a subscription's data change notifications.

Publish cycles never call listeners inline. They put the notifications of a
cycle into a bounded queue; a worker task owned by the subscription awaits
the listeners one notification at a time, in delivery order. A slow listener
therefore only delays its own subscription, and a full queue applies
backpressure to that subscription's publish cycle alone.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from uacore.client.monitored_item import MonitoredItem
    from uacore.ua.types import DataValue

logger = structlog.get_logger(__name__)

Delivery = tuple["MonitoredItem", "DataValue"]


class Dispatcher:
    """Bounded delivery queue with a single worker task."""

    def __init__(self, subscription_id: int, maxsize: int):
        self._subscription_id = subscription_id
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def subscription_id(self) -> int:
        return self._subscription_id

    @subscription_id.setter
    def subscription_id(self, value: int) -> None:
        self._subscription_id = value

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is None and not self._closed:
            self._worker = asyncio.create_task(self._run())

    async def put(self, deliveries: list[Delivery]) -> None:
        """Queue one publish cycle's notifications, waiting if the queue is full."""
        for delivery in deliveries:
            if self._closed:
                return
            await self._queue.put(delivery)

    async def join(self) -> None:
        """Wait until every queued notification has been delivered."""
        if self._closed:
            return
        await self._queue.join()

    def close(self) -> None:
        """Stop the worker and drop undelivered notifications."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker
        self._worker = None
        # A listener may close its own subscription from inside the worker.
        if worker and not worker.done() and worker is not asyncio.current_task():
            worker.cancel()
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.debug(
                "dispatcher_dropped_notifications",
                subscription_id=self._subscription_id,
                dropped=dropped,
            )

    async def _run(self) -> None:
        while not self._closed:
            item, value = await self._queue.get()
            try:
                await item._deliver(value)
            except Exception as e:
                logger.error(
                    "dispatcher_delivery_failed",
                    subscription_id=self._subscription_id,
                    monitored_item_id=item.monitored_item_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
