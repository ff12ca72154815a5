"""Fixtures for subscription and monitored item unit tests."""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from uacore.client.subscription import Subscription
from uacore.core.config import ClientConfig
from uacore.core.errors import ServiceFault
from uacore.ua.messages import (
    CreateMonitoredItemRequest,
    CreateMonitoredItemResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    DeleteMonitoredItemsRequest,
    DeleteMonitoredItemsResponse,
    DeleteSubscriptionsRequest,
    DeleteSubscriptionsResponse,
    PublishRequest,
    PublishResponse,
    SetPublishingModeRequest,
    SetPublishingModeResponse,
)
from uacore.ua.types import GOOD, StatusCode, SubscriptionParameters

# Long enough that the publishing timer never fires during a unit test;
# tests drive publish cycles by hand.
MANUAL_INTERVAL = 60_000.0


class FakeSession:
    """Stands in for Session: answers subscription requests locally.

    Attributes:
        publish_fault: Status code to fail keepalive Publish requests with
        forgotten: Subscriptions that unregistered themselves
    """

    def __init__(self) -> None:
        self.is_closed = False
        self.publish_fault: int | None = None
        self.forgotten: list[Subscription] = []
        self._subscription_ids = itertools.count(7)
        self._item_ids = itertools.count(101)
        self._request = AsyncMock(side_effect=self._respond)

    def _forget_subscription(self, subscription: Subscription) -> None:
        self.forgotten.append(subscription)

    def sent(self, request_type: type) -> list[Any]:
        bodies = [call.args[0] for call in self._request.await_args_list]
        return [body for body in bodies if isinstance(body, request_type)]

    async def _respond(self, body: Any, timeout: float | None = None) -> Any:
        if isinstance(body, CreateSubscriptionRequest):
            return CreateSubscriptionResponse(
                subscription_id=next(self._subscription_ids),
                revised_publishing_interval=body.requested_publishing_interval,
                revised_lifetime_count=body.requested_lifetime_count,
                revised_max_keep_alive_count=body.requested_max_keep_alive_count,
            )
        if isinstance(body, CreateMonitoredItemRequest):
            return CreateMonitoredItemResponse(
                status=GOOD,
                monitored_item_id=next(self._item_ids),
                revised_sampling_interval=body.sampling_interval,
                revised_queue_size=body.queue_size,
            )
        if isinstance(body, PublishRequest):
            if self.publish_fault is not None:
                raise ServiceFault(StatusCode(self.publish_fault), "Publish")
            return PublishResponse(subscription_id=body.subscription_id)
        if isinstance(body, SetPublishingModeRequest):
            return SetPublishingModeResponse(results=[GOOD])
        if isinstance(body, DeleteSubscriptionsRequest):
            return DeleteSubscriptionsResponse(results=[GOOD] * len(body.subscription_ids))
        if isinstance(body, DeleteMonitoredItemsRequest):
            return DeleteMonitoredItemsResponse(results=[GOOD] * len(body.monitored_item_ids))
        raise AssertionError(f"unexpected request {body!r}")


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest_asyncio.fixture
async def make_subscription(fake_session: FakeSession) -> AsyncGenerator[Any, None]:
    """Factory creating started subscriptions on the fake session."""
    created: list[Subscription] = []

    async def make(**overrides: Any) -> Subscription:
        params = {"requested_publishing_interval": MANUAL_INTERVAL, **overrides}
        subscription = Subscription(
            fake_session, SubscriptionParameters(**params), ClientConfig()
        )
        await subscription._create()
        created.append(subscription)
        return subscription

    yield make
    for subscription in created:
        await subscription.terminate()


@pytest_asyncio.fixture
async def subscription(make_subscription) -> Subscription:
    return await make_subscription(requested_max_keep_alive_count=3)
