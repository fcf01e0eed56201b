"""
Main Compilation Entry Point

Provides compile_circuit, which runs the full pipeline from a loaded
op graph to the rendered program and memory table, and compile_files,
which also loads the inputs and publishes the outputs.
"""

import json
import logging
import os
from typing import Any, Optional

from .allocator import MemoryLayout
from .field import DEFAULT_MODULUS
from .graph import LoadedCircuit
from .loader import load_graph
from .output import publish
from .pass_manager import CompiledArtifact, CompilerPipeline
from .passes import AssemblePass, GraphToProgramPass, MemoryLayoutPass, ReplayCheckPass

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "compile_config.json")


def load_config(path: Optional[str] = None) -> dict[str, Any]:
    """Read a compile config (the packaged one by default)."""
    with open(path or DEFAULT_CONFIG_PATH) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("compile config must be a JSON object")
    return data


def field_modulus(config: dict[str, Any]) -> int:
    """The field modulus from the config's 'field' section."""
    raw = (config.get("field") or {}).get("modulus", DEFAULT_MODULUS)
    modulus = int(raw, 0) if isinstance(raw, str) else int(raw)
    if modulus < 3:
        raise ValueError(f"field modulus must be an odd prime, got {modulus}")
    return modulus


def build_pipeline(
    config: dict[str, Any],
    print_after_all: bool = False,
    print_metrics: bool = False,
) -> CompilerPipeline:
    """Create the pipeline with every pass registered in order."""
    layout = MemoryLayout.from_config(config.get("memory"))
    modulus = field_modulus(config)

    pipeline = CompilerPipeline(
        print_after_all=print_after_all,
        print_metrics=print_metrics,
    )
    pipeline.set_config(config)

    pipeline.add_pass(GraphToProgramPass(layout, modulus))  # graph -> program
    pipeline.add_pass(MemoryLayoutPass())                   # program -> program
    pipeline.add_pass(ReplayCheckPass())                    # program -> program (SAFE only)
    pipeline.add_pass(AssemblePass())                       # program -> artifact
    return pipeline


def compile_circuit(
    circuit: LoadedCircuit,
    config: Optional[dict[str, Any]] = None,
    options: Optional[dict[str, dict[str, Any]]] = None,
    print_after_all: bool = False,
    print_metrics: bool = False,
) -> CompiledArtifact:
    """
    Full compilation from a loaded circuit to program text and memory table.

    Args:
        circuit: The op graph together with its witness
        config: Decoded compile config (the packaged one if None)
        options: Per-pass option overrides, e.g. {"replay-check": {"tolerance": 1.0}}
        print_after_all: If True, print IR after each compilation phase
        print_metrics: If True, print pass metrics and diagnostics

    Returns:
        The rendered artifact; nothing is written to disk
    """
    config = load_config() if config is None else config
    pipeline = build_pipeline(config, print_after_all, print_metrics)
    for pass_name, overrides in (options or {}).items():
        for key, value in overrides.items():
            pipeline.override_option(pass_name, key, value)
    return pipeline.run(circuit)


def default_output_paths(circuit_path: str) -> tuple[str, str]:
    """`<stem>.zasm` and `<stem>.memory.csv` next to the circuit file."""
    stem, _ = os.path.splitext(circuit_path)
    return f"{stem}.zasm", f"{stem}.memory.csv"


def compile_files(
    circuit_path: str,
    witness_path: str,
    program_path: Optional[str] = None,
    memory_path: Optional[str] = None,
    config: Optional[dict[str, Any]] = None,
    options: Optional[dict[str, dict[str, Any]]] = None,
    print_after_all: bool = False,
    print_metrics: bool = False,
) -> CompiledArtifact:
    """Load both inputs, compile, and publish both outputs atomically."""
    config = load_config() if config is None else config
    circuit = load_graph(circuit_path, witness_path, field_modulus(config))
    artifact = compile_circuit(circuit, config, options, print_after_all, print_metrics)

    default_program, default_memory = default_output_paths(circuit_path)
    program_path = program_path or default_program
    memory_path = memory_path or default_memory
    publish({program_path: artifact.program_text, memory_path: artifact.memory_csv})
    logger.info("wrote %s (%d instructions) and %s (%d cells)",
                program_path, artifact.num_instructions, memory_path, artifact.num_cells)
    return artifact
