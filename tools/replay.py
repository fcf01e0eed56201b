#!/usr/bin/env python3
"""Replay an emitted program against its memory table and print the outputs."""

import argparse
import os
import sys
from pathlib import Path

# Ensure project root is on the path
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from zkasm.errors import WitnessInconsistent
from zkasm.field import DEFAULT_MODULUS
from zkasm.memory import parse_memory_csv
from zkasm.vm import Machine, parse_program


def replay_files(program_path: str, memory_path: str, strict: bool = False,
                 tolerance: float = 0.0, modulus: int = DEFAULT_MODULUS) -> dict[str, list[int]]:
    """Replay and return the signed values of every `.output` tensor."""
    parsed = parse_program(Path(program_path).read_text())
    memory = parse_memory_csv(Path(memory_path).read_text())
    tolerant = {o.base + i for o in parsed.outputs for i in range(o.length)}
    machine = Machine(memory, parsed.instructions, modulus=modulus, strict=strict,
                      tolerance=tolerance, tolerant_cells=tolerant)
    machine.run()
    return {o.name: machine.read_signed(o.base, o.length) for o in parsed.outputs}


def main():
    parser = argparse.ArgumentParser(description='Replay a zkasm program against its memory table')
    parser.add_argument('program', help='Program text (.zasm)')
    parser.add_argument('memory', help='Memory table (.csv)')
    parser.add_argument('--strict', action='store_true',
                        help='Fail when a replayed value differs from the memory table')
    parser.add_argument('--tolerance', type=float, default=0.0,
                        help='Percentage slack for output cells in strict mode')
    args = parser.parse_args()

    try:
        outputs = replay_files(args.program, args.memory, args.strict, args.tolerance)
    except WitnessInconsistent as e:
        print(f"error[{e.kind}]: {e.message}", file=sys.stderr)
        sys.exit(e.exit_code)

    scales = {o.name: o.scale for o in parse_program(Path(args.program).read_text()).outputs}
    for name, values in outputs.items():
        real = [v / 2 ** scales[name] for v in values]
        print(f"{name} (s{scales[name]}): {values}")
        print(f"  = {real}")


if __name__ == '__main__':
    main()
