"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from uacore.client import Session, UAClient
from uacore.core.config import ClientConfig, ConnectionStrategy
from uacore.server import SimulationServer, build_demo_address_space

SIM_ENDPOINT = "opc.tcp://sim.local:4840"

Eventually = Callable[..., Awaitable[None]]


@pytest.fixture
def fast_config() -> ClientConfig:
    """Client config with millisecond-scale backoff for tests."""
    return ClientConfig(
        connection_strategy=ConnectionStrategy(max_retry=3, initial_delay=10, max_delay=40),
        connect_timeout=1000,
        request_timeout=2000,
    )


@pytest.fixture
def eventually() -> Eventually:
    """Poll a predicate until it holds, failing the test after `timeout` seconds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail(f"condition not met within {timeout}s")
            await asyncio.sleep(0.01)

    return wait


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[SimulationServer, None]:
    """Simulation server reachable through its in-memory connector."""
    sim = SimulationServer(SIM_ENDPOINT, build_demo_address_space())
    yield sim
    await sim.stop()


@pytest_asyncio.fixture
async def client(
    server: SimulationServer, fast_config: ClientConfig
) -> AsyncGenerator[UAClient, None]:
    """Client connected to the simulation server over memory links."""
    ua_client = UAClient(fast_config)
    await ua_client.connect(server.endpoint_url, connector=server.connect)
    yield ua_client
    await ua_client.disconnect()


@pytest_asyncio.fixture
async def session(client: UAClient) -> Session:
    """Session created on the connected client."""
    return await client.create_session("test-session")
