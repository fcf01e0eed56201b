"""
Memory Layout Pass

Materializes the memory-initialization table of a lowered program.
"""

from ..emitter import Program
from ..memory import write_memory
from ..pass_manager import PassConfig, ProgramPass


class MemoryLayoutPass(ProgramPass):
    """Fills `program.memory` with one cell per allocated address."""

    @property
    def name(self) -> str:
        return "memory-layout"

    def run(self, program: Program, config: PassConfig) -> Program:
        self._init_metrics()

        program.memory = write_memory(program)

        if self._metrics:
            self._metrics.custom = {
                "cells": len(program.memory),
                "nonzero": sum(1 for cell in program.memory if cell.value),
            }

        return program
