"""Simulation server and address space for tests and local development."""

from uacore.server.address_space import (
    AddressSpace,
    SignalSource,
    UANode,
    build_demo_address_space,
)
from uacore.server.simulation import SimulationServer, passes_deadband

__all__ = [
    "AddressSpace",
    "SignalSource",
    "SimulationServer",
    "UANode",
    "build_demo_address_space",
    "passes_deadband",
]
