"""Shared fixtures and graph-building helpers for compiler tests."""

import os
import sys

# Add the repo root to the path for imports
_this_dir = os.path.dirname(os.path.abspath(__file__))
_repo_root = os.path.dirname(os.path.dirname(_this_dir))
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from zkasm.allocator import AddressAllocator, MemoryLayout, Namespace
from zkasm.emitter import emit_program
from zkasm.field import from_field
from zkasm.graph import LoadedCircuit
from zkasm.loader import parse_circuit, parse_witness
from zkasm.memory import write_memory
from zkasm.pass_manager import PassConfig
from zkasm.vm import Machine


def _cfg(name, **opts):
    """Helper to create PassConfig."""
    return PassConfig(name=name, enabled=True, options=opts)


def tensor(tensor_id, shape=(), scale=0, visibility="private"):
    return {"id": tensor_id, "shape": list(shape), "scale": scale, "visibility": visibility}


def node(node_id, kind, inputs, output, scale=None, **params):
    entry = {"id": node_id, "kind": kind, "inputs": list(inputs), "output": output}
    if scale is not None:
        entry["scale"] = scale
    if params:
        entry["params"] = params
    return entry


def circuit(tensors, operations, inputs, outputs):
    return {"tensors": tensors, "operations": operations, "inputs": inputs, "outputs": outputs}


def build(circuit_data, values, name="test") -> LoadedCircuit:
    """Parse a circuit dict and its witness values."""
    graph = parse_circuit(circuit_data)
    witness = parse_witness({"values": values}, graph)
    return LoadedCircuit(graph=graph, witness=witness, name=name)


def small_layout(**sizes):
    """A compact layout; unspecified namespaces get 64 cells."""
    all_sizes = {ns: sizes.get(ns.value, 64) for ns in Namespace}
    return MemoryLayout(sizes=all_sizes, capacity=sum(all_sizes.values()))


def lower(loaded: LoadedCircuit, layout=None, lookup_bits=8):
    """Lower a loaded circuit and fill in its memory table."""
    allocator = AddressAllocator(loaded.graph, layout)
    program = emit_program(loaded.graph, loaded.witness, allocator,
                           lookup_bits=lookup_bits, name=loaded.name)
    program.memory = write_memory(program)
    return program


def replay(program, strict=True):
    """Replay a lowered program against its own memory table."""
    memory = {cell.address: cell.value for cell in program.memory}
    machine = Machine(memory, program.instructions, modulus=program.modulus, strict=strict)
    machine.run()
    return machine


def replay_from_inputs(program):
    """Replay with only control, input and fixed cells initialized.

    Every intermediate and output cell must then be written before it is read.
    """
    allocator = program.allocator
    kept = set()
    for ns in (Namespace.CONTROL, Namespace.INPUT, Namespace.FIXED):
        base = allocator.layout.base(ns)
        kept.update(range(base, base + allocator.used(ns)))
    memory = {cell.address: cell.value for cell in program.memory if cell.address in kept}
    machine = Machine(memory, program.instructions, modulus=program.modulus)
    machine.run()
    return machine


def output_values(program, machine, tensor_id):
    """Signed values of a tensor's cells after replay."""
    addr = program.allocator.lookup(tensor_id).absolute
    size = program.graph.tensors[tensor_id].size
    return [from_field(machine.mem[addr + i], program.modulus) for i in range(size)]


def cell_value(program, address):
    """Signed value the memory table holds at a global address."""
    for cell in program.memory:
        if cell.address == address:
            return from_field(cell.value, program.modulus)
    raise KeyError(address)
