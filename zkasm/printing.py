"""
IR Printing Utilities

Pretty-printing functions for the op graph, lowered programs, memory
tables and final artifacts.
"""

from typing import Any

from .allocator import NAMESPACE_ORDER
from .emitter import Program
from .graph import LoadedCircuit
from .ordering import topological_order


def print_graph(circuit: LoadedCircuit):
    """Pretty-print the op graph in traversal order."""
    graph = circuit.graph
    print(f"=== Graph: {circuit.name} ({len(graph.tensors)} tensors, "
          f"{len(graph.operations)} ops) ===")
    print(f"inputs:  {', '.join(graph.inputs) or '-'}")
    print(f"outputs: {', '.join(graph.outputs) or '-'}")
    for tensor_id in sorted(graph.tensors):
        if graph.is_source(tensor_id):
            print(f"  {graph.tensors[tensor_id]}")
    for op in topological_order(graph):
        print(f"  {op}")
    print()


def print_program(program: Program):
    """Pretty-print the lowered program block by block."""
    allocator = program.allocator
    print(f"=== Program: {program.name} ({program.num_instructions} instructions, "
          f"{allocator.total_used()} cells) ===")
    for ns in NAMESPACE_ORDER:
        print(f"  {ns.value:<12} base={allocator.layout.base(ns):<8} used={allocator.used(ns)}")
    for table in program.tables:
        print(f"  table {table.spec.describe()} @ {table.address!r}")
    for block in program.blocks:
        print(f"\n{block.op}")
        for inst in block.instructions:
            print(f"  {inst}")
    if program.memory:
        print()
        print_memory(program.memory)
    print()


def print_memory(cells: list, limit: int = 32):
    """Print the first `limit` cells of a memory table."""
    print(f"=== Memory ({len(cells)} cells) ===")
    for cell in cells[:limit]:
        print(f"  [{cell.address:8d}] {cell.value}")
    if len(cells) > limit:
        print(f"  ... {len(cells) - limit} more")


def print_artifact(artifact):
    print(f"=== Artifact: {artifact.name} ({artifact.num_instructions} instructions, "
          f"{artifact.num_cells} cells) ===")
    print(artifact.program_text, end="")


def print_ir(ir_type: str, ir: Any):
    """Dispatch on the pipeline's IR type."""
    if ir_type == "graph":
        print_graph(ir)
    elif ir_type == "program":
        print_program(ir)
    elif ir_type == "artifact":
        print_artifact(ir)
    else:
        print(ir)
