"""Unit tests for the transport channel.

A scripted peer answers over memory links so every test controls exactly
when (and whether) responses arrive.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from uacore.core.config import ClientConfig, ConnectionStrategy
from uacore.core.errors import (
    ConnectionClosed,
    ConnectionLost,
    EndpointNotFound,
    RequestTimeout,
    Unreachable,
)
from uacore.core.events import BackoffEvent, ChannelClosedEvent
from uacore.transport.channel import Channel, ChannelState
from uacore.transport.link import MemoryLink, memory_pipe
from uacore.ua.messages import (
    GetEndpointsResponse,
    ReadRequest,
    ReadResponse,
    RequestMessage,
    ResponseMessage,
    decode,
    encode,
)
from uacore.ua.types import DataValue

ENDPOINT = "opc.tcp://plc.local:4840"


class ScriptedPeer:
    """Memory-link peer that answers GetEndpoints and scripts Read replies.

    Attributes:
        hold_reads: Never answer Read requests
        hold_handshake: Never answer GetEndpoints
        reverse_batch: Collect this many Reads, then answer them in reverse
        refuse: Number of upcoming connects to refuse
    """

    def __init__(self, endpoints: list[str] | None = None):
        self.endpoints = endpoints if endpoints is not None else [ENDPOINT]
        self.hold_reads = False
        self.hold_handshake = False
        self.reverse_batch = 0
        self.refuse = 0
        self.connect_calls = 0
        self.links: list[MemoryLink] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._held: list[RequestMessage] = []

    async def connect(self, url: str) -> MemoryLink:
        self.connect_calls += 1
        if self.refuse:
            self.refuse -= 1
            raise ConnectionRefusedError("refused")
        client_end, server_end = memory_pipe(url)
        self.links.append(server_end)
        self._tasks.append(asyncio.create_task(self._serve(server_end)))
        return client_end

    async def drop(self) -> None:
        await self.links[-1].close()

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _serve(self, link: MemoryLink) -> None:
        with contextlib.suppress(ConnectionError):
            while True:
                request = decode(await link.receive())
                body = request.body
                if body.service == "GetEndpoints":
                    if self.hold_handshake:
                        continue
                    reply = GetEndpointsResponse(endpoints=self.endpoints, server_name="peer")
                    await link.send(encode(ResponseMessage(request_id=request.request_id, body=reply)))
                elif self.hold_reads:
                    continue
                elif self.reverse_batch:
                    self._held.append(request)
                    if len(self._held) == self.reverse_batch:
                        for held in reversed(self._held):
                            await link.send(encode(self._read_reply(held)))
                        self._held.clear()
                else:
                    await link.send(encode(self._read_reply(request)))

    @staticmethod
    def _read_reply(request: RequestMessage) -> ResponseMessage:
        return ResponseMessage(
            request_id=request.request_id,
            body=ReadResponse(value=DataValue.of(request.body.node_id)),
        )


def make_config(max_retry: int = 3, initial_delay: float = 10, max_delay: float = 15) -> ClientConfig:
    return ClientConfig(
        connection_strategy=ConnectionStrategy(
            max_retry=max_retry, initial_delay=initial_delay, max_delay=max_delay
        ),
        connect_timeout=500,
        request_timeout=1000,
    )


@pytest_asyncio.fixture
async def peer() -> AsyncGenerator[ScriptedPeer, None]:
    scripted = ScriptedPeer()
    yield scripted
    await scripted.close()


class TestChannelConnect:
    """Tests for connection establishment and backoff."""

    @pytest.mark.asyncio
    async def test_unreachable_after_exactly_max_retry_attempts(self) -> None:
        attempts = 0

        async def refuse(url: str) -> MemoryLink:
            nonlocal attempts
            attempts += 1
            raise ConnectionRefusedError("nobody listening")

        channel = Channel(ENDPOINT, make_config(max_retry=3), connector=refuse)
        backoffs: list[BackoffEvent] = []
        channel.on("backoff", backoffs.append)

        with pytest.raises(Unreachable) as exc_info:
            await channel.connect()

        assert attempts == 3
        assert exc_info.value.attempts == 3
        assert [event.attempt for event in backoffs] == [1, 2]
        assert [event.delay for event in backoffs] == [10, 15]
        assert channel.state == ChannelState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_single_attempt_emits_no_backoff(self) -> None:
        async def refuse(url: str) -> MemoryLink:
            raise ConnectionRefusedError("nobody listening")

        channel = Channel(ENDPOINT, make_config(max_retry=1), connector=refuse)
        backoffs: list[BackoffEvent] = []
        channel.on("backoff", backoffs.append)

        with pytest.raises(Unreachable):
            await channel.connect()

        assert backoffs == []

    @pytest.mark.asyncio
    async def test_connects_after_transient_failures(self, peer: ScriptedPeer) -> None:
        peer.refuse = 2
        channel = Channel(ENDPOINT, make_config(max_retry=3), connector=peer.connect)

        await channel.connect()

        assert channel.is_connected
        assert channel.server_name == "peer"
        assert peer.connect_calls == 3
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_endpoint_not_found_is_not_retried(self) -> None:
        peer = ScriptedPeer(endpoints=["opc.tcp://other.local:4840"])
        channel = Channel(ENDPOINT, make_config(max_retry=5), connector=peer.connect)

        with pytest.raises(EndpointNotFound) as exc_info:
            await channel.connect()

        assert peer.connect_calls == 1
        assert exc_info.value.advertised == ["opc.tcp://other.local:4840"]
        assert channel.state == ChannelState.DISCONNECTED
        await peer.close()

    @pytest.mark.asyncio
    async def test_endpoint_check_can_be_disabled(self) -> None:
        peer = ScriptedPeer(endpoints=[])
        config = make_config()
        config.endpoint_must_exist = False
        channel = Channel(ENDPOINT, config, connector=peer.connect)

        await channel.connect()

        assert channel.is_connected
        await channel.disconnect()
        await peer.close()

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_link(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)

        await asyncio.gather(channel.connect(), channel.connect())

        assert channel.is_connected
        assert peer.connect_calls == 1
        assert len(peer.links) == 1
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_stops_connect_during_backoff(self, peer: ScriptedPeer) -> None:
        peer.refuse = 2
        config = make_config(max_retry=0, initial_delay=50, max_delay=50)
        channel = Channel(ENDPOINT, config, connector=peer.connect)
        backoffs: list[BackoffEvent] = []
        closed: list[ChannelClosedEvent] = []
        channel.on("backoff", backoffs.append)
        channel.on("closed", closed.append)

        connecting = asyncio.create_task(channel.connect())
        await asyncio.sleep(0.02)
        await channel.disconnect()

        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(connecting, 1)
        await asyncio.sleep(0.15)
        assert channel.state == ChannelState.DISCONNECTED
        assert len(backoffs) == 1
        assert len(closed) == 1
        assert peer.connect_calls == 1

        await channel.connect()
        assert channel.is_connected
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_is_not_retried(self, peer: ScriptedPeer) -> None:
        peer.hold_handshake = True
        channel = Channel(ENDPOINT, make_config(max_retry=0), connector=peer.connect)

        connecting = asyncio.create_task(channel.connect())
        await asyncio.sleep(0.02)
        await channel.disconnect()

        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(connecting, 1)
        await asyncio.sleep(0.05)
        assert channel.state == ChannelState.DISCONNECTED
        assert channel.pending_requests == 0
        assert peer.connect_calls == 1


class TestChannelRequests:
    """Tests for request/response correlation."""

    @pytest.mark.asyncio
    async def test_out_of_order_responses_reach_their_requests(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)
        await channel.connect()
        peer.reverse_batch = 3

        responses = await asyncio.gather(
            channel.send(ReadRequest(node_id="ns=1;s=A")),
            channel.send(ReadRequest(node_id="ns=1;s=B")),
            channel.send(ReadRequest(node_id="ns=1;s=C")),
        )

        assert [r.body.value.value.value for r in responses] == ["ns=1;s=A", "ns=1;s=B", "ns=1;s=C"]
        assert channel.pending_requests == 0
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_timeout_releases_correlation_slot(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)
        await channel.connect()
        peer.hold_reads = True

        with pytest.raises(RequestTimeout) as exc_info:
            await channel.send(ReadRequest(node_id="ns=1;s=A"), timeout=50)

        assert exc_info.value.service == "Read"
        assert channel.pending_requests == 0
        assert channel.is_connected
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self) -> None:
        channel = Channel(ENDPOINT, make_config())

        with pytest.raises(ConnectionClosed):
            await channel.send(ReadRequest(node_id="ns=1;s=A"))


class TestChannelShutdown:
    """Tests for disconnect and unexpected loss."""

    @pytest.mark.asyncio
    async def test_disconnect_fails_in_flight_with_connection_closed(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)
        await channel.connect()
        peer.hold_reads = True

        pending = asyncio.create_task(channel.send(ReadRequest(node_id="ns=1;s=A")))
        await asyncio.sleep(0.01)
        await channel.disconnect()

        with pytest.raises(ConnectionClosed):
            await pending
        assert channel.state == ChannelState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_twice_emits_closed_once(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)
        closed: list[ChannelClosedEvent] = []
        channel.on("closed", closed.append)
        await channel.connect()

        await channel.disconnect()
        await channel.disconnect()

        assert len(closed) == 1
        assert closed[0].reason == "disconnect"

    @pytest.mark.asyncio
    async def test_link_loss_fails_in_flight_and_reconnects(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(), connector=peer.connect)
        lost = asyncio.Event()
        reconnected = asyncio.Event()
        channel.on("connection_lost", lambda event: lost.set())
        channel.on("reconnected", lambda event: reconnected.set())
        await channel.connect()
        peer.hold_reads = True

        pending = asyncio.create_task(channel.send(ReadRequest(node_id="ns=1;s=A")))
        await asyncio.sleep(0.01)
        await peer.drop()

        with pytest.raises(ConnectionLost):
            await pending
        await asyncio.wait_for(lost.wait(), 1)
        await asyncio.wait_for(reconnected.wait(), 1)

        assert channel.is_connected
        assert peer.connect_calls == 2
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_send_while_reconnecting_raises_connection_lost(self, peer: ScriptedPeer) -> None:
        config = make_config(max_retry=3, initial_delay=200, max_delay=200)
        channel = Channel(ENDPOINT, config, connector=peer.connect)
        await channel.connect()
        peer.refuse = 1

        await peer.drop()
        await asyncio.sleep(0.02)

        assert channel.state == ChannelState.FAULTED
        with pytest.raises(ConnectionLost):
            await channel.send(ReadRequest(node_id="ns=1;s=A"))
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_closes_channel(self, peer: ScriptedPeer) -> None:
        channel = Channel(ENDPOINT, make_config(max_retry=2), connector=peer.connect)
        closed = asyncio.Event()
        reasons: list[str] = []

        def on_closed(event: ChannelClosedEvent) -> None:
            reasons.append(event.reason)
            closed.set()

        channel.on("closed", on_closed)
        await channel.connect()
        peer.refuse = 10

        await peer.drop()
        await asyncio.wait_for(closed.wait(), 1)

        assert reasons == ["reconnect_exhausted"]
        assert channel.state == ChannelState.DISCONNECTED
