"""
zkasm: ML Inference Graph to zkVM Assembly Compiler

Lowers an arithmetized inference graph and its witness into:
- a linear program in the zkasm assembly dialect
- a memory-initialization table consistent with that program

Compilation pipeline: graph -> program -> (memory layout, replay check) -> artifact
"""

# Graph types
from .graph import (
    Visibility,
    OpCategory,
    OpKind,
    TensorInfo,
    Operation,
    OpGraph,
    LoadedCircuit,
)

# Errors
from .errors import (
    CompileError,
    GraphMalformed,
    UnsupportedOperation,
    ShapeMismatch,
    MemoryExhausted,
    WitnessIncomplete,
    TemplateMalformed,
    WitnessInconsistent,
)

# Field arithmetic
from .field import DEFAULT_MODULUS, to_field, from_field

# Instruction set
from .isa import Opcode, Instruction

# Compilation stages
from .loader import load_graph, parse_circuit, parse_witness
from .ordering import topological_order
from .allocator import Namespace, MemoryLayout, Address, AddressAllocator
from .tables import LookupSpec, fold_table
from .emitter import Program, emit_program
from .memory import MemoryCell, write_memory, render_memory_csv, parse_memory_csv
from .template import Slot, Skeleton, parse_skeleton, load_skeleton, assemble

# Pass infrastructure
from .pass_manager import (
    PassConfig,
    PassMetrics,
    CompiledArtifact,
    CompilerPass,
    LoweringPass,
    ProgramPass,
    AssemblyPass,
    CompilerPipeline,
)

# Main entry points
from .compile import compile_circuit, compile_files, load_config

# Replay
from .vm import Machine, parse_program

# Printing utilities
from .printing import print_graph, print_program, print_memory


# Public API
def compile(circuit, **kwargs):
    """Compile a loaded circuit to program text and memory table."""
    return compile_circuit(circuit, **kwargs)


def execute(program_text: str, memory_csv: str, modulus: int = DEFAULT_MODULUS) -> Machine:
    """Replay program text against a memory table."""
    parsed = parse_program(program_text)
    machine = Machine(parse_memory_csv(memory_csv), parsed.instructions, modulus=modulus)
    machine.run()
    return machine


__all__ = [
    # Graph
    'Visibility', 'OpCategory', 'OpKind', 'TensorInfo', 'Operation', 'OpGraph', 'LoadedCircuit',
    # Errors
    'CompileError', 'GraphMalformed', 'UnsupportedOperation', 'ShapeMismatch',
    'MemoryExhausted', 'WitnessIncomplete', 'TemplateMalformed', 'WitnessInconsistent',
    # Field
    'DEFAULT_MODULUS', 'to_field', 'from_field',
    # ISA
    'Opcode', 'Instruction',
    # Stages
    'load_graph', 'parse_circuit', 'parse_witness', 'topological_order',
    'Namespace', 'MemoryLayout', 'Address', 'AddressAllocator',
    'LookupSpec', 'fold_table', 'Program', 'emit_program',
    'MemoryCell', 'write_memory', 'render_memory_csv', 'parse_memory_csv',
    'Slot', 'Skeleton', 'parse_skeleton', 'load_skeleton', 'assemble',
    # Pass infrastructure
    'PassConfig', 'PassMetrics', 'CompiledArtifact', 'CompilerPass',
    'LoweringPass', 'ProgramPass', 'AssemblyPass', 'CompilerPipeline',
    # Compilation
    'compile_circuit', 'compile_files', 'load_config',
    # Replay
    'Machine', 'parse_program',
    # Printing
    'print_graph', 'print_program', 'print_memory',
    # Public API
    'compile', 'execute',
]
