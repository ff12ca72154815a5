"""Unit tests for MonitoredItem queueing and delivery."""

import pytest

from uacore.client.subscription import Subscription
from uacore.core.errors import InvalidParameter
from uacore.core.events import MonitoredItemTerminated
from uacore.ua.messages import CreateMonitoredItemRequest, DeleteMonitoredItemsRequest
from uacore.ua.types import DataValue, MonitoringParameters, TimestampsToReturn


def sample(text: str) -> DataValue:
    return DataValue.of(text)


class TestMonitoredItemOverflow:
    """Queue overflow policy with queue_size=2."""

    @pytest.mark.asyncio
    async def test_discard_oldest_keeps_newest(self, subscription: Subscription) -> None:
        item = await subscription.monitor(
            "ns=1;s=Temperature", MonitoringParameters(queue_size=2, discard_oldest=True)
        )
        a, b, c = sample("A"), sample("B"), sample("C")

        assert item.enqueue(a) is True
        assert item.enqueue(b) is True
        assert item.enqueue(c) is True

        assert item.queued == [b, c]
        assert item.overflow_count == 1

    @pytest.mark.asyncio
    async def test_discard_oldest_delivers_in_order(self, subscription: Subscription) -> None:
        item = await subscription.monitor(
            "ns=1;s=Temperature", MonitoringParameters(queue_size=2, discard_oldest=True)
        )
        delivered: list[str] = []
        item.on("changed", lambda value: delivered.append(value.value.value))
        for text in ("A", "B", "C"):
            item.enqueue(sample(text))

        await subscription._publish_cycle()
        await subscription.wait_delivered()

        assert delivered == ["B", "C"]
        assert item.pending == 0

    @pytest.mark.asyncio
    async def test_discard_newest_drops_incoming(self, subscription: Subscription) -> None:
        item = await subscription.monitor(
            "ns=1;s=Temperature", MonitoringParameters(queue_size=2, discard_oldest=False)
        )
        a, b, c = sample("A"), sample("B"), sample("C")

        item.enqueue(a)
        item.enqueue(b)
        accepted = item.enqueue(c)

        assert accepted is False
        assert item.queued == [a, b]
        assert item.overflow_count == 1


class TestMonitoredItemListeners:
    """Tests for "changed" listeners."""

    @pytest.mark.asyncio
    async def test_listeners_run_in_registration_order(self, subscription: Subscription) -> None:
        item = await subscription.monitor("ns=1;s=Temperature")
        calls: list[tuple[str, str]] = []

        async def first(value: DataValue) -> None:
            calls.append(("first", value.value.value))

        def second(value: DataValue) -> None:
            calls.append(("second", value.value.value))

        item.on("changed", first)
        item.on("changed", second)
        item.enqueue(sample("X"))

        await subscription._publish_cycle()
        await subscription.wait_delivered()

        assert calls == [("first", "X"), ("second", "X")]
        assert item.delivered_count == 1

    @pytest.mark.asyncio
    async def test_removed_listener_not_invoked(self, subscription: Subscription) -> None:
        item = await subscription.monitor("ns=1;s=Temperature")
        calls: list[DataValue] = []
        handle = item.on("changed", calls.append)
        handle.remove()
        item.enqueue(sample("X"))

        await subscription._publish_cycle()
        await subscription.wait_delivered()

        assert calls == []


class TestMonitoredItemLifecycle:
    """Tests for monitor() validation and item termination."""

    @pytest.mark.asyncio
    async def test_queue_size_zero_rejected(self, subscription: Subscription, fake_session) -> None:
        with pytest.raises(InvalidParameter):
            await subscription.monitor("ns=1;s=Temperature", MonitoringParameters(queue_size=0))

        assert fake_session.sent(CreateMonitoredItemRequest) == []

    @pytest.mark.asyncio
    async def test_monitor_sends_policy(self, subscription: Subscription, fake_session) -> None:
        await subscription.monitor(
            "ObjectsFolder",
            MonitoringParameters(sampling_interval=100, queue_size=4, deadband=None),
            TimestampsToReturn.Neither,
        )

        (request,) = fake_session.sent(CreateMonitoredItemRequest)
        assert request.node_id == "i=85"
        assert request.queue_size == 4
        assert request.deadband is None
        assert request.timestamps_to_return == TimestampsToReturn.Neither
        assert request.subscription_id == subscription.subscription_id

    @pytest.mark.asyncio
    async def test_terminate_item(self, subscription: Subscription, fake_session) -> None:
        item = await subscription.monitor("ns=1;s=Temperature")
        terminated: list[MonitoredItemTerminated] = []
        item.on("terminated", terminated.append)
        item.enqueue(sample("pending"))

        await item.terminate()
        await item.terminate()

        assert item.is_terminated
        assert item.pending == 0
        assert item.enqueue(sample("late")) is False
        assert subscription.monitored_items == []
        assert len(terminated) == 1
        assert terminated[0].monitored_item_id == item.monitored_item_id
        assert len(fake_session.sent(DeleteMonitoredItemsRequest)) == 1
