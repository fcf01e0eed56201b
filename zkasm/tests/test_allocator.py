"""Tests for the namespace bump allocator and the memory layout config."""

import unittest

from zkasm.allocator import (
    DEFAULT_CAPACITY,
    AddressAllocator,
    MemoryLayout,
    Namespace,
)
from zkasm.compile import load_config
from zkasm.errors import MemoryExhausted
from zkasm.graph import OpGraph, TensorInfo, Visibility
from zkasm.tests.conftest import small_layout


def _graph():
    graph = OpGraph()
    for name, shape, vis in [
        ("x", (3,), Visibility.PUBLIC),
        ("w", (3, 2), Visibility.FIXED),
        ("h", (2,), Visibility.PRIVATE),
        ("y", (2,), Visibility.PUBLIC),
        ("k", (4,), Visibility.FIXED),
    ]:
        graph.tensors[name] = TensorInfo(name, shape, 0, vis)
    graph.inputs = ["x"]
    graph.outputs = ["y", "k"]
    return graph


class TestMemoryLayout(unittest.TestCase):

    def test_default_layout(self):
        layout = MemoryLayout()
        self.assertEqual(layout.capacity, DEFAULT_CAPACITY)
        self.assertEqual(layout.base(Namespace.CONTROL), 0)
        self.assertEqual(layout.base(Namespace.INPUT), 16)
        self.assertEqual(layout.base(Namespace.FIXED), 16 + (1 << 16))
        self.assertEqual(
            layout.base(Namespace.OUTPUT) + layout.size(Namespace.OUTPUT), DEFAULT_CAPACITY)

    def test_shipped_config_matches_defaults(self):
        shipped = MemoryLayout.from_config(load_config()["memory"])
        self.assertEqual(shipped.sizes, MemoryLayout().sizes)
        self.assertEqual(sum(shipped.sizes.values()), shipped.capacity)

    def test_from_config(self):
        layout = MemoryLayout.from_config({
            "capacity": 1000,
            "namespaces": {"control": 4, "input": 100, "fixed": 100, "intermediate": 500, "output": 100},
        })
        self.assertEqual(layout.base(Namespace.INTERMEDIATE), 204)
        self.assertEqual(layout.size(Namespace.OUTPUT), 100)

    def test_from_empty_config(self):
        self.assertEqual(MemoryLayout.from_config(None).capacity, DEFAULT_CAPACITY)

    def test_unknown_namespace(self):
        with self.assertRaises(ValueError):
            MemoryLayout.from_config({"namespaces": {"stack": 10}})

    def test_over_capacity(self):
        with self.assertRaises(ValueError):
            MemoryLayout.from_config({"capacity": 10, "namespaces": {"input": 100}})


class TestAddressAllocator(unittest.TestCase):

    def setUp(self):
        self.graph = _graph()
        self.alloc = AddressAllocator(self.graph, small_layout())

    def test_namespace_selection(self):
        t = self.graph.tensors
        self.assertIs(self.alloc.namespace_for(t["x"]), Namespace.INPUT)
        self.assertIs(self.alloc.namespace_for(t["w"]), Namespace.FIXED)
        self.assertIs(self.alloc.namespace_for(t["h"]), Namespace.INTERMEDIATE)
        self.assertIs(self.alloc.namespace_for(t["y"]), Namespace.OUTPUT)
        # Fixed visibility wins over being a declared output.
        self.assertIs(self.alloc.namespace_for(t["k"]), Namespace.FIXED)

    def test_allocate_is_idempotent(self):
        first = self.alloc.allocate(self.graph.tensors["x"])
        second = self.alloc.allocate(self.graph.tensors["x"])
        self.assertEqual(first, second)
        self.assertEqual(self.alloc.used(Namespace.INPUT), 3)

    def test_bump_offsets(self):
        w = self.alloc.allocate(self.graph.tensors["w"])
        k = self.alloc.allocate(self.graph.tensors["k"])
        self.assertEqual(w.offset, 0)
        self.assertEqual(k.offset, 6)
        self.assertEqual(k.absolute, self.alloc.layout.base(Namespace.FIXED) + 6)
        self.assertEqual(k + 2, k.absolute + 2)

    def test_scratch_and_control(self):
        zero = self.alloc.reserve_control("zero")
        self.assertEqual(zero, 0)
        self.assertEqual(self.alloc.reserve_control("zero"), 0)
        h = self.alloc.allocate(self.graph.tensors["h"])
        tmp = self.alloc.allocate_scratch("n0.acc", 5)
        self.assertEqual(tmp.offset, h.offset + 2)
        self.assertEqual(self.alloc.total_used(), 1 + 2 + 5)

    def test_sorted_allocations(self):
        self.alloc.allocate(self.graph.tensors["y"])
        self.alloc.allocate(self.graph.tensors["x"])
        self.alloc.reserve_control("zero")
        addrs = [a.address.absolute for a in self.alloc.sorted_allocations()]
        self.assertEqual(addrs, sorted(addrs))
        self.assertEqual(len(addrs), 3)

    def test_cell_owners(self):
        zero = self.alloc.reserve_control("zero")
        h = self.alloc.allocate(self.graph.tensors["h"])
        owners = self.alloc.cell_owners()
        self.assertEqual(owners[zero][0].kind, "control")
        alloc, index = owners[h.absolute + 1]
        self.assertEqual((alloc.name, index), ("h", 1))
        self.assertNotIn(h.absolute + 2, owners)

    def test_exhaustion_names_namespace_and_owner(self):
        alloc = AddressAllocator(self.graph, small_layout(input=2))
        with self.assertRaises(MemoryExhausted) as ctx:
            alloc.allocate(self.graph.tensors["x"])
        err = ctx.exception
        self.assertEqual(err.namespace, "input")
        self.assertEqual(err.owner, "x")
        self.assertEqual(err.requested, 3)
        self.assertEqual(err.size, 2)
        self.assertEqual(err.exit_code, 6)


if __name__ == "__main__":
    unittest.main()
