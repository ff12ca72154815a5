"""Unit tests for the subscription publish/keepalive/lifetime state machine.

Publish cycles are driven by calling _publish_cycle() directly; the
publishing timer is configured far in the future so it never interferes.
"""

import asyncio

import pytest

from uacore.client.subscription import Subscription, SubscriptionState
from uacore.core.config import ClientConfig
from uacore.core.errors import SessionClosed
from uacore.core.events import KeepAliveEvent, SubscriptionTerminated
from uacore.ua.messages import (
    DeleteSubscriptionsRequest,
    NotificationMessage,
    PublishRequest,
    SetPublishingModeRequest,
)
from uacore.ua.types import DataValue, MonitoringParameters, StatusCodes, SubscriptionParameters


def sample(value: object) -> DataValue:
    return DataValue.of(value)


class TestSubscriptionStart:
    """Tests for creation."""

    @pytest.mark.asyncio
    async def test_started_with_revised_parameters(self, subscription: Subscription) -> None:
        assert subscription.state == SubscriptionState.NORMAL
        assert subscription.subscription_id == 7
        assert subscription.max_keep_alive_count == 3

    @pytest.mark.asyncio
    async def test_started_event(self, fake_session) -> None:
        subscription = Subscription(
            fake_session,
            SubscriptionParameters(requested_publishing_interval=60_000, priority=5),
            ClientConfig(),
        )
        started = []
        subscription.on("started", started.append)

        await subscription._create()

        assert len(started) == 1
        assert started[0].subscription_id == subscription.subscription_id
        assert subscription.priority == 5
        await subscription.terminate()


class TestKeepalive:
    """max_keep_alive_count=3 with no data changes."""

    @pytest.mark.asyncio
    async def test_exactly_one_keepalive_after_three_idle_intervals(
        self, subscription: Subscription, fake_session
    ) -> None:
        keepalives: list[KeepAliveEvent] = []
        subscription.on("keepalive", keepalives.append)

        await subscription._publish_cycle()
        await subscription._publish_cycle()
        assert keepalives == []
        assert subscription.state == SubscriptionState.NORMAL

        await subscription._publish_cycle()
        assert len(keepalives) == 1
        assert keepalives[0].idle_intervals == 3
        assert subscription.state == SubscriptionState.KEEPALIVE
        assert len(fake_session.sent(PublishRequest)) == 1

    @pytest.mark.asyncio
    async def test_data_change_resumes_normal_without_extra_keepalive(
        self, subscription: Subscription
    ) -> None:
        item = await subscription.monitor("ns=1;s=Temperature")
        keepalives: list[KeepAliveEvent] = []
        changes: list[DataValue] = []
        subscription.on("keepalive", keepalives.append)
        item.on("changed", changes.append)

        for _ in range(3):
            await subscription._publish_cycle()
        assert subscription.state == SubscriptionState.KEEPALIVE

        item.enqueue(sample(21.5))
        await subscription._publish_cycle()
        await subscription.wait_delivered()

        assert subscription.state == SubscriptionState.NORMAL
        assert len(keepalives) == 1
        assert [c.value.value for c in changes] == [21.5]

    @pytest.mark.asyncio
    async def test_keepalive_repeats_every_max_keep_alive_intervals(
        self, subscription: Subscription
    ) -> None:
        keepalives: list[KeepAliveEvent] = []
        subscription.on("keepalive", keepalives.append)

        for _ in range(7):
            await subscription._publish_cycle()

        assert len(keepalives) == 2

    @pytest.mark.asyncio
    async def test_disabled_publishing_still_sends_keepalives(
        self, subscription: Subscription, fake_session
    ) -> None:
        item = await subscription.monitor("ns=1;s=Temperature")
        await subscription.set_publishing_mode(False)
        keepalives: list[KeepAliveEvent] = []
        subscription.on("keepalive", keepalives.append)
        item.enqueue(sample(1.0))

        for _ in range(3):
            await subscription._publish_cycle()

        assert len(keepalives) == 1
        assert item.pending == 1
        assert fake_session.sent(SetPublishingModeRequest)[0].publishing_enabled is False


class TestLifetime:
    """Tests for lifetime expiry and server-side loss."""

    @pytest.mark.asyncio
    async def test_lifetime_expires_without_confirmed_keepalive(
        self, make_subscription, fake_session
    ) -> None:
        subscription = await make_subscription(
            requested_max_keep_alive_count=2, requested_lifetime_count=4
        )
        terminated: list[SubscriptionTerminated] = []
        subscription.on("terminated", terminated.append)
        fake_session.publish_fault = StatusCodes.BadTimeout

        for _ in range(3):
            await subscription._publish_cycle()
        assert terminated == []

        await subscription._publish_cycle()

        assert subscription.state == SubscriptionState.TERMINATED
        assert [event.reason for event in terminated] == ["lifetime_expired"]
        assert fake_session.forgotten == [subscription]

    @pytest.mark.asyncio
    async def test_confirmed_keepalive_resets_lifetime(self, make_subscription) -> None:
        subscription = await make_subscription(
            requested_max_keep_alive_count=2, requested_lifetime_count=4
        )

        for _ in range(10):
            await subscription._publish_cycle()

        assert subscription.state == SubscriptionState.KEEPALIVE

    @pytest.mark.asyncio
    async def test_unknown_subscription_terminates_immediately(
        self, subscription: Subscription, fake_session
    ) -> None:
        terminated: list[SubscriptionTerminated] = []
        subscription.on("terminated", terminated.append)
        fake_session.publish_fault = StatusCodes.BadSubscriptionIdInvalid

        for _ in range(3):
            await subscription._publish_cycle()

        assert subscription.is_terminated
        assert [event.reason for event in terminated] == ["server_rejected"]


class TestRoundRobin:
    """Notifications are drained round-robin across items."""

    @pytest.mark.asyncio
    async def test_limit_per_publish_rotates_start(self, make_subscription) -> None:
        subscription = await make_subscription(max_notifications_per_publish=3)
        queue5 = MonitoringParameters(queue_size=5)
        a = await subscription.monitor("ns=1;s=A", queue5)
        b = await subscription.monitor("ns=1;s=B", queue5)
        c = await subscription.monitor("ns=1;s=C", queue5)
        for value in ("a1", "a2", "a3"):
            a.enqueue(sample(value))
        for value in ("b1", "b2"):
            b.enqueue(sample(value))
        c.enqueue(sample("c1"))

        first = [value.value.value for _, value in subscription._collect()]
        second = [value.value.value for _, value in subscription._collect()]

        assert first == ["a1", "b1", "c1"]
        assert second == ["b2", "a2", "a3"]

    @pytest.mark.asyncio
    async def test_unlimited_drains_everything(self, subscription: Subscription) -> None:
        queue5 = MonitoringParameters(queue_size=5)
        a = await subscription.monitor("ns=1;s=A", queue5)
        b = await subscription.monitor("ns=1;s=B", queue5)
        for value in ("a1", "a2"):
            a.enqueue(sample(value))
        b.enqueue(sample("b1"))

        drained = [value.value.value for _, value in subscription._collect()]

        assert drained == ["a1", "b1", "a2"]
        assert a.pending == b.pending == 0


class TestTerminate:
    """Explicit termination."""

    @pytest.mark.asyncio
    async def test_terminate_with_two_items_stops_delivery(
        self, subscription: Subscription, fake_session
    ) -> None:
        first = await subscription.monitor("ns=1;s=A")
        second = await subscription.monitor("ns=1;s=B")
        changes: list[DataValue] = []
        item_terminations: list[int] = []
        terminated: list[SubscriptionTerminated] = []
        for item in (first, second):
            item.on("changed", changes.append)
            item.on("terminated", lambda event: item_terminations.append(event.monitored_item_id))
        subscription.on("terminated", terminated.append)
        first.enqueue(sample("pending"))

        await subscription.terminate()

        subscription._on_notification(
            NotificationMessage(
                session_id=1,
                subscription_id=subscription.subscription_id,
                monitored_item_id=second.monitored_item_id,
                value=sample("late"),
            )
        )
        await subscription._publish_cycle()
        await asyncio.sleep(0.01)

        assert changes == []
        expected = sorted([first.monitored_item_id, second.monitored_item_id])
        assert sorted(item_terminations) == expected
        assert len(terminated) == 1
        assert terminated[0].reason == "client"
        assert first.is_terminated and second.is_terminated
        assert len(fake_session.sent(DeleteSubscriptionsRequest)) == 1

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, subscription: Subscription, fake_session) -> None:
        terminated: list[SubscriptionTerminated] = []
        subscription.on("terminated", terminated.append)

        await subscription.terminate()
        await subscription.terminate()

        assert len(terminated) == 1
        assert len(fake_session.sent(DeleteSubscriptionsRequest)) == 1

    @pytest.mark.asyncio
    async def test_monitor_after_terminate_raises(self, subscription: Subscription) -> None:
        await subscription.terminate()

        with pytest.raises(SessionClosed):
            await subscription.monitor("ns=1;s=A")

    @pytest.mark.asyncio
    async def test_listener_may_terminate_its_own_subscription(
        self, subscription: Subscription
    ) -> None:
        item = await subscription.monitor("ns=1;s=A", MonitoringParameters(queue_size=3))
        seen: list[object] = []

        async def stop_after_first(value: DataValue) -> None:
            seen.append(value.value.value)
            await subscription.terminate()

        item.on("changed", stop_after_first)
        for value in (1, 2, 3):
            item.enqueue(sample(value))

        await subscription._publish_cycle()
        await asyncio.sleep(0.05)

        assert seen == [1]
        assert subscription.is_terminated


class TestDeliveryIsolation:
    """A slow listener only delays its own subscription."""

    @pytest.mark.asyncio
    async def test_slow_listener_does_not_block_other_subscription(self, make_subscription) -> None:
        slow_sub = await make_subscription()
        fast_sub = await make_subscription()
        slow_item = await slow_sub.monitor("ns=1;s=Slow")
        fast_item = await fast_sub.monitor("ns=1;s=Fast")
        release = asyncio.Event()
        fast_seen = asyncio.Event()

        async def slow_listener(value: DataValue) -> None:
            await release.wait()

        slow_item.on("changed", slow_listener)
        fast_item.on("changed", lambda value: fast_seen.set())
        slow_item.enqueue(sample(1))
        fast_item.enqueue(sample(2))

        await slow_sub._publish_cycle()
        await fast_sub._publish_cycle()
        await asyncio.wait_for(fast_seen.wait(), 1)

        assert slow_sub._dispatcher.backlog == 0
        release.set()
        await slow_sub.wait_delivered()
