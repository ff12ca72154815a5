"""Example usage of the uacore client against the simulation server.

This example demonstrates:
1. Starting a local simulation server on a free TCP port
2. Connecting with a backoff strategy and watching connection events
3. Browsing the Objects folder and reading values
4. Subscribing to data changes and keepalives
5. Writing a value and reading it back
6. Clean shutdown of subscriptions, session and channel
"""

import asyncio

from uacore import (
    MonitoringParameters,
    SubscriptionParameters,
    UAClient,
    configure_logging,
    get_settings,
)
from uacore.core.events import BackoffEvent, KeepAliveEvent, SubscriptionTerminated
from uacore.server import SimulationServer, build_demo_address_space
from uacore.ua import DataValue


# Example 1: Connection event handlers
def on_backoff(event: BackoffEvent) -> None:
    print(f"Attempt {event.attempt} failed ({event.error}), retrying in {event.delay:.0f} ms")


# Example 2: Subscription handlers
def on_temperature(value: DataValue) -> None:
    print(f"  Temperature = {value.value.value:.3f}  [{value.status}]")


def on_keepalive(event: KeepAliveEvent) -> None:
    print(f"  Keepalive after {event.idle_intervals} idle intervals")


def on_terminated(event: SubscriptionTerminated) -> None:
    print(f"Subscription {event.subscription_id} terminated ({event.reason})")


async def run_demo(endpoint_url: str) -> None:
    async with UAClient.create(max_retry=3, initial_delay=100, max_delay=1000) as client:
        client.on("backoff", on_backoff)
        await client.connect(endpoint_url)
        session = await client.create_session("demo")
        print(f"Connected, session id {session.session_id}")
        print()

        # Example 3: Browse and read
        print("Objects folder:")
        for reference in await session.browse("ObjectsFolder"):
            print(f"  {reference.browse_name:<12} {reference.node_id}")
        print("Simulation folder:")
        for reference in await session.browse("ns=1;s=Simulation"):
            value = await session.read(reference.node_id)
            print(f"  {reference.browse_name:<12} {value.value}")
        print()

        # Example 4: Subscribe
        subscription = await session.create_subscription(
            SubscriptionParameters(
                requested_publishing_interval=500,
                requested_max_keep_alive_count=4,
            )
        )
        subscription.on("keepalive", on_keepalive)
        subscription.on("terminated", on_terminated)
        temperature = await subscription.monitor(
            "ns=1;s=Temperature",
            MonitoringParameters(sampling_interval=250, queue_size=4),
        )
        temperature.on("changed", on_temperature)
        # Nothing changes Message until Example 5, so this one only keepalives
        idle = await session.create_subscription(
            SubscriptionParameters(
                requested_publishing_interval=250,
                requested_max_keep_alive_count=4,
            )
        )
        idle.on("keepalive", on_keepalive)
        await idle.monitor("ns=1;i=1001")

        print("Monitoring for 3 seconds...")
        await asyncio.sleep(3)
        await subscription.terminate()
        print()

        # Example 5: Write and read back
        status = await session.write("ns=1;i=1001", "Change of the Data!")
        value = await session.read("ns=1;i=1001")
        print(f"Write status {status}, read back {value.value.value!r}")
        print()

        await session.close()
        print("Session closed")


async def main() -> None:
    configure_logging(log_level="WARNING")
    settings = get_settings()

    # UACORE_ENDPOINT_URL points the demo at a running server with the demo nodes
    if "endpoint_url" in settings.model_fields_set:
        await run_demo(settings.endpoint_url)
        return

    async with SimulationServer("opc.tcp://127.0.0.1:0", build_demo_address_space()) as server:
        print(f"Simulation server listening on {server.endpoint_url}")
        print()
        await run_demo(server.endpoint_url)
    print("Server stopped")


if __name__ == "__main__":
    asyncio.run(main())
