"""In-memory address space served by the simulation server.

The space is a tree of nodes rooted at the standard RootFolder (i=84), with
the Objects, Types and Views folders and the Server object pre-created.
Variables hold a DataValue and may be backed by a signal source, a callable
evaluated on every sample with the seconds elapsed since the space was built.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from uacore.core.errors import InvalidParameter
from uacore.ua.types import (
    AttributeId,
    DataValue,
    NodeClass,
    ReferenceDescription,
    StatusCode,
    StatusCodes,
    Variant,
    VariantType,
    resolve_node_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

SignalSource = Callable[[float], Any]

# AccessLevel bits
ACCESS_READ = 0x01
ACCESS_WRITE = 0x02


@dataclass
class UANode:
    """A node of the simulated address space.

    Attributes:
        node_id: NodeId string (e.g. "ns=1;s=Temperature")
        browse_name: Name used in browse results
        display_name: Human-readable name
        node_class: Object or Variable
        data_type: Variant type of the value (Variables only)
        value: Current value (Variables only)
        writable: Whether clients may write the Value attribute
        source: Optional signal source driving the value
        children: Child node ids in insertion order
    """

    node_id: str
    browse_name: str
    display_name: str
    node_class: NodeClass
    data_type: VariantType = VariantType.Null
    value: DataValue = field(default_factory=DataValue)
    writable: bool = False
    source: SignalSource | None = None
    children: list[str] = field(default_factory=list)

    @property
    def is_variable(self) -> bool:
        return self.node_class == NodeClass.Variable

    @property
    def access_level(self) -> int:
        return ACCESS_READ | (ACCESS_WRITE if self.writable else 0)

    def reference(self) -> ReferenceDescription:
        return ReferenceDescription(
            node_id=self.node_id,
            browse_name=self.browse_name,
            display_name=self.display_name,
            node_class=self.node_class,
        )


class AddressSpace:
    """Node registry with browse, read, write and sampling.

    Example:
        >>> space = AddressSpace()
        >>> folder = space.add_folder("ObjectsFolder", "ns=1;s=Plant", "Plant")
        >>> space.add_variable(folder.node_id, "ns=1;s=Speed", "Speed", 12.5, writable=True)
        >>> space.read("ns=1;s=Speed").value.value
        12.5
    """

    def __init__(self) -> None:
        self._nodes: dict[str, UANode] = {}
        self._started = time.monotonic()

        self._add(None, UANode("i=84", "Root", "Root", NodeClass.Object))
        self._add("i=84", UANode("i=85", "Objects", "Objects", NodeClass.Object))
        self._add("i=84", UANode("i=86", "Types", "Types", NodeClass.Object))
        self._add("i=84", UANode("i=87", "Views", "Views", NodeClass.Object))
        self._add("i=85", UANode("i=2253", "Server", "Server", NodeClass.Object))
        self.add_variable(
            "i=2253",
            "i=2258",
            "CurrentTime",
            utcnow(),
            source=lambda _elapsed: utcnow(),
        )

    def __contains__(self, node_id: str) -> bool:
        return resolve_node_id(node_id) in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> UANode | None:
        return self._nodes.get(resolve_node_id(node_id))

    # --- Building ---

    def add_folder(self, parent_id: str, node_id: str, name: str) -> UANode:
        """Add an Object node used as a folder.

        Raises:
            InvalidParameter: The parent is unknown or the node id is taken
        """
        return self._add(parent_id, UANode(node_id, name, name, NodeClass.Object))

    def add_variable(
        self,
        parent_id: str,
        node_id: str,
        name: str,
        value: Any,
        *,
        variant_type: VariantType | None = None,
        writable: bool = False,
        source: SignalSource | None = None,
    ) -> UANode:
        """Add a Variable node.

        Args:
            parent_id: Node id (or alias) of the parent
            node_id: Id of the new variable
            name: Browse and display name
            value: Initial value
            variant_type: Data type; inferred from `value` when omitted
            writable: Allow clients to write the Value attribute
            source: Signal source evaluated on every sample

        Raises:
            InvalidParameter: The parent is unknown, the node id is taken, or
                the value does not fit the data type
        """
        variant = Variant.of(value, variant_type)
        now = utcnow()
        node = UANode(
            node_id=node_id,
            browse_name=name,
            display_name=name,
            node_class=NodeClass.Variable,
            data_type=variant.variant_type,
            value=DataValue(value=variant, source_timestamp=now, server_timestamp=now),
            writable=writable,
            source=source,
        )
        return self._add(parent_id, node)

    def _add(self, parent_id: str | None, node: UANode) -> UANode:
        if node.node_id in self._nodes:
            raise InvalidParameter(f"node {node.node_id!r} already exists")
        if parent_id is not None:
            parent = self.get(parent_id)
            if parent is None:
                raise InvalidParameter(f"parent node {parent_id!r} does not exist")
            parent.children.append(node.node_id)
        self._nodes[node.node_id] = node
        return node

    # --- Services ---

    def browse(self, node_id: str) -> tuple[StatusCode, list[ReferenceDescription]]:
        node = self.get(node_id)
        if node is None:
            return StatusCode(StatusCodes.BadNodeIdUnknown), []
        return StatusCode(), [self._nodes[child].reference() for child in node.children]

    def read(self, node_id: str, attribute_id: AttributeId = AttributeId.Value) -> DataValue:
        """Read one attribute; failures come back as a DataValue with a bad status."""
        now = utcnow()
        node = self.get(node_id)
        if node is None:
            return DataValue.bad(StatusCode(StatusCodes.BadNodeIdUnknown), server_timestamp=now)

        if attribute_id == AttributeId.Value:
            if not node.is_variable:
                return DataValue.bad(
                    StatusCode(StatusCodes.BadAttributeIdInvalid), server_timestamp=now
                )
            return node.value.model_copy(update={"server_timestamp": now})

        if attribute_id == AttributeId.NodeId:
            variant = Variant.of(node.node_id)
        elif attribute_id == AttributeId.NodeClass:
            variant = Variant.of(int(node.node_class), VariantType.Int32)
        elif attribute_id == AttributeId.BrowseName:
            variant = Variant.of(node.browse_name)
        elif attribute_id == AttributeId.DisplayName:
            variant = Variant.of(node.display_name)
        elif attribute_id == AttributeId.DataType and node.is_variable:
            variant = Variant.of(node.data_type.name)
        elif attribute_id == AttributeId.AccessLevel and node.is_variable:
            variant = Variant.of(node.access_level, VariantType.Int32)
        else:
            return DataValue.bad(StatusCode(StatusCodes.BadAttributeIdInvalid), server_timestamp=now)
        return DataValue(value=variant, server_timestamp=now)

    def write(
        self, node_id: str, value: DataValue, attribute_id: AttributeId = AttributeId.Value
    ) -> StatusCode:
        node = self.get(node_id)
        if node is None:
            return StatusCode(StatusCodes.BadNodeIdUnknown)
        if not node.is_variable:
            return StatusCode(StatusCodes.BadAttributeIdInvalid)
        if attribute_id != AttributeId.Value or not node.writable:
            return StatusCode(StatusCodes.BadNotWritable)

        variant = value.value
        if variant.variant_type != node.data_type:
            try:
                variant = Variant.of(variant.value, node.data_type)
            except InvalidParameter:
                return StatusCode(StatusCodes.BadTypeMismatch)

        now = utcnow()
        node.value = DataValue(
            value=variant,
            status=value.status,
            source_timestamp=value.source_timestamp or now,
            server_timestamp=now,
        )
        logger.debug("address_space_write", node_id=node.node_id, value=str(variant))
        return StatusCode()

    def set_value(self, node_id: str, value: Any, status: StatusCode | None = None) -> None:
        """Set a variable from the server side, bypassing the writable flag.

        Raises:
            InvalidParameter: Unknown node, not a variable, or wrong type
        """
        node = self.get(node_id)
        if node is None or not node.is_variable:
            raise InvalidParameter(f"{node_id!r} is not a variable")
        now = utcnow()
        node.value = DataValue(
            value=Variant.of(value, node.data_type),
            status=status or StatusCode(),
            source_timestamp=now,
            server_timestamp=now,
        )

    def sample(self, node_id: str) -> DataValue:
        """Current value of a variable, advancing its signal source if it has one."""
        node = self.get(node_id)
        if node is None or not node.is_variable:
            return self.read(node_id)
        if node.source is not None:
            elapsed = time.monotonic() - self._started
            self.set_value(node.node_id, node.source(elapsed))
        return self.read(node.node_id)


def build_demo_address_space() -> AddressSpace:
    """Address space used by the examples and the integration tests.

    Objects/
        Simulation/
            Temperature  ns=1;s=Temperature  Double, sine around 20 degC
            Counter      ns=1;s=Counter      Int64, whole seconds since start
            Message      ns=1;i=1001         String, writable
            Setpoint     ns=1;s=Setpoint     Double, writable
            Running      ns=1;s=Running      Boolean, writable
    """
    space = AddressSpace()
    folder = space.add_folder("ObjectsFolder", "ns=1;s=Simulation", "Simulation")
    space.add_variable(
        folder.node_id,
        "ns=1;s=Temperature",
        "Temperature",
        20.0,
        source=lambda t: round(20.0 + 5.0 * math.sin(t / 10.0), 3),
    )
    space.add_variable(folder.node_id, "ns=1;s=Counter", "Counter", 0, source=int)
    space.add_variable(folder.node_id, "ns=1;i=1001", "Message", "Hello", writable=True)
    space.add_variable(folder.node_id, "ns=1;s=Setpoint", "Setpoint", 50.0, writable=True)
    space.add_variable(folder.node_id, "ns=1;s=Running", "Running", True, writable=True)
    return space
