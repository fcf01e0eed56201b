"""
Graph to Program Lowering Pass

Wraps the allocator and the instruction emitter as a pass for the
CompilerPipeline.
"""

from typing import Optional

from ..allocator import AddressAllocator, MemoryLayout
from ..emitter import Program, emit_program
from ..field import DEFAULT_MODULUS
from ..graph import LoadedCircuit
from ..pass_manager import LoweringPass, PassConfig
from ..tables import DEFAULT_LOOKUP_BITS, MAX_LOOKUP_BITS


class GraphToProgramPass(LoweringPass):
    """
    Pass that lowers the op graph to a program.

    Allocation is fresh on every run: a new AddressAllocator is created
    over the configured memory layout, so addresses depend only on the
    graph and the layout.

    Options:
        lookup_bits: table width for nonlinearities without a `bits` param
    """

    def __init__(self, layout: Optional[MemoryLayout] = None, modulus: int = DEFAULT_MODULUS):
        super().__init__()
        self.layout = layout or MemoryLayout()
        self.modulus = modulus

    @property
    def name(self) -> str:
        return "lowering"

    def run(self, circuit: LoadedCircuit, config: PassConfig) -> Program:
        """Lower the graph to a program."""
        self._init_metrics()
        lookup_bits = config.options.get("lookup_bits", DEFAULT_LOOKUP_BITS)
        if (not isinstance(lookup_bits, int) or isinstance(lookup_bits, bool)
                or not 1 <= lookup_bits <= MAX_LOOKUP_BITS):
            raise ValueError(
                f"lookup_bits must be an integer in [1, {MAX_LOOKUP_BITS}], got {lookup_bits!r}")

        allocator = AddressAllocator(circuit.graph, self.layout)
        program = emit_program(circuit.graph, circuit.witness, allocator,
                               lookup_bits=lookup_bits, name=circuit.name,
                               modulus=self.modulus)

        if self._metrics:
            self._metrics.custom = {
                "blocks": len(program.blocks),
                "tables": len(program.tables),
                "cells": allocator.total_used(),
                "derived": len(program.derived),
            }

        return program
