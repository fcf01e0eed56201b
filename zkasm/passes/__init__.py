"""
Compiler Passes

This module contains passes for the compilation pipeline:
- Lowering pass (graph -> program)
- Program passes (memory layout, replay check)
- Assembly pass (program -> artifact)
"""

from .lowering import GraphToProgramPass
from .memory_layout import MemoryLayoutPass
from .replay_check import ReplayCheckPass
from .assemble import AssemblePass

__all__ = [
    'GraphToProgramPass',
    'MemoryLayoutPass',
    'ReplayCheckPass',
    'AssemblePass',
]
