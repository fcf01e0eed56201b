"""
Address Allocator

Assigns every tensor a contiguous block of memory cells inside one of the
disjoint namespaces of the VM address space. Each namespace is a bump
allocator: offsets only grow and cells are never reused, so allocation
order alone (the shared traversal order) fixes every address.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import MemoryExhausted
from .graph import OpGraph, TensorInfo, Visibility

logger = logging.getLogger(__name__)


class Namespace(Enum):
    """Address namespaces, in address-space order."""
    CONTROL = "control"
    INPUT = "input"
    FIXED = "fixed"
    INTERMEDIATE = "intermediate"
    OUTPUT = "output"


NAMESPACE_ORDER = (
    Namespace.CONTROL,
    Namespace.INPUT,
    Namespace.FIXED,
    Namespace.INTERMEDIATE,
    Namespace.OUTPUT,
)

DEFAULT_NAMESPACE_SIZES = {
    Namespace.CONTROL: 16,
    Namespace.INPUT: 1 << 16,
    Namespace.FIXED: 1 << 18,
    Namespace.INTERMEDIATE: (10 << 16) - 16,
    Namespace.OUTPUT: 1 << 16,
}
DEFAULT_CAPACITY = 1 << 20


@dataclass(frozen=True)
class MemoryLayout:
    """Sizes of the namespaces and the total capacity they must fit in."""
    sizes: dict[Namespace, int] = field(default_factory=lambda: dict(DEFAULT_NAMESPACE_SIZES), hash=False)
    capacity: int = DEFAULT_CAPACITY

    def __post_init__(self):
        missing = [ns.value for ns in NAMESPACE_ORDER if ns not in self.sizes]
        if missing:
            raise ValueError(f"memory layout has no size for namespaces {missing}")
        if any(self.sizes[ns] < 0 for ns in NAMESPACE_ORDER):
            raise ValueError("namespace sizes must be non-negative")
        total = sum(self.sizes[ns] for ns in NAMESPACE_ORDER)
        if total > self.capacity:
            raise ValueError(
                f"namespaces need {total} cells but memory capacity is {self.capacity}")

    @classmethod
    def from_config(cls, data: Optional[dict[str, Any]]) -> "MemoryLayout":
        """Build a layout from the 'memory' section of the compile config."""
        if not data:
            return cls()
        sizes = dict(DEFAULT_NAMESPACE_SIZES)
        for name, size in data.get("namespaces", {}).items():
            try:
                sizes[Namespace(name)] = int(size)
            except ValueError:
                raise ValueError(f"unknown namespace '{name}' in memory config") from None
        return cls(sizes=sizes, capacity=int(data.get("capacity", DEFAULT_CAPACITY)))

    def base(self, ns: Namespace) -> int:
        """Global address of a namespace's first cell."""
        addr = 0
        for other in NAMESPACE_ORDER:
            if other is ns:
                return addr
            addr += self.sizes[other]
        raise KeyError(ns)

    def size(self, ns: Namespace) -> int:
        return self.sizes[ns]


@dataclass(frozen=True)
class Address:
    """A namespace-relative offset together with its global address."""
    namespace: Namespace
    offset: int
    absolute: int

    def __add__(self, delta: int) -> int:
        """Global address `delta` cells into the block."""
        return self.absolute + delta

    def __repr__(self):
        return f"{self.namespace.value}+{self.offset}@{self.absolute}"


@dataclass
class Allocation:
    """A contiguous block of cells and what owns it.

    kind: "tensor" (witness values), "table" (folded lookup rows),
          "scratch" (compiler-derived values), "control" (zero-filled)
    """
    name: str
    kind: str
    address: Address
    size: int

    def cells(self) -> range:
        return range(self.address.absolute, self.address.absolute + self.size)


class AddressAllocator:
    """Per-namespace bump allocator over a MemoryLayout."""

    def __init__(self, graph: OpGraph, layout: Optional[MemoryLayout] = None):
        self.layout = layout or MemoryLayout()
        self._inputs = set(graph.inputs)
        self._outputs = set(graph.outputs)
        self._next: dict[Namespace, int] = {ns: 0 for ns in NAMESPACE_ORDER}
        self._tensors: dict[str, Allocation] = {}
        self._control: dict[str, Allocation] = {}
        self._scratch_counter = 0
        self.allocations: list[Allocation] = []

    def namespace_for(self, tensor: TensorInfo) -> Namespace:
        """Namespace a tensor lives in, from its visibility and producer kind."""
        if tensor.visibility is Visibility.FIXED:
            return Namespace.FIXED
        if tensor.id in self._inputs:
            return Namespace.INPUT
        if tensor.id in self._outputs:
            return Namespace.OUTPUT
        return Namespace.INTERMEDIATE

    def allocate(self, tensor: TensorInfo) -> Address:
        """Address of a tensor's first element; repeated calls return the same address."""
        existing = self._tensors.get(tensor.id)
        if existing is not None:
            return existing.address
        alloc = self._bump(self.namespace_for(tensor), tensor.size, tensor.id, "tensor")
        self._tensors[tensor.id] = alloc
        return alloc.address

    def lookup(self, tensor_id: str) -> Address:
        """Address of an already allocated tensor."""
        return self._tensors[tensor_id].address

    def allocate_scratch(self, name: str, size: int,
                         namespace: Namespace = Namespace.INTERMEDIATE,
                         kind: str = "scratch") -> Address:
        """Allocate a compiler-owned block (partial sums, temporaries, tables)."""
        self._scratch_counter += 1
        return self._bump(namespace, size, f"{name}#{self._scratch_counter}", kind).address

    def reserve_control(self, name: str) -> int:
        """Global address of a named control cell, reserving it on first use."""
        existing = self._control.get(name)
        if existing is None:
            existing = self._bump(Namespace.CONTROL, 1, name, "control")
            self._control[name] = existing
        return existing.address.absolute

    def used(self, ns: Namespace) -> int:
        """Number of cells allocated so far in a namespace."""
        return self._next[ns]

    def total_used(self) -> int:
        return sum(self._next.values())

    def cell_owners(self) -> dict[int, tuple[Allocation, int]]:
        """Address table: global address -> (owning allocation, index within it)."""
        owners: dict[int, tuple[Allocation, int]] = {}
        for alloc in self.allocations:
            for i, addr in enumerate(alloc.cells()):
                owners[addr] = (alloc, i)
        return owners

    def sorted_allocations(self) -> list[Allocation]:
        """All allocations in ascending global address order."""
        return sorted(self.allocations, key=lambda a: (a.address.absolute, a.size))

    def _bump(self, ns: Namespace, size: int, owner: str, kind: str) -> Allocation:
        offset = self._next[ns]
        if offset + size > self.layout.size(ns):
            raise MemoryExhausted(ns.value, owner, size, offset, self.layout.size(ns))
        self._next[ns] = offset + size
        addr = Address(ns, offset, self.layout.base(ns) + offset)
        alloc = Allocation(name=owner, kind=kind, address=addr, size=size)
        self.allocations.append(alloc)
        logger.debug("allocated %s %s: %d cells at %r", kind, owner, size, addr)
        return alloc
