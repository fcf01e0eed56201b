"""
Reference Replay Machine

Executes programs in the zkasm dialect against a memory table. This is not
the zkVM's proving engine; it replays the emitted program so the compiler
can check its own output and tests can run compiled circuits.

Arithmetic is modulo the field; RESCALE and CLAMP act on the centred
(signed) interpretation of a cell.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .errors import WitnessInconsistent
from .field import DEFAULT_MODULUS, from_field, rescale_int, to_field
from .isa import OPERAND_COUNTS, Instruction, Opcode

logger = logging.getLogger(__name__)

_ADDRESS = re.compile(r"^\[(\d+)\]$")
_IMMEDIATE = re.compile(r"^#(-?\d+)$")


@dataclass
class OutputRange:
    """An `.output` directive: where a graph output lives."""
    name: str
    base: int
    length: int
    scale: int = 0


@dataclass
class ParsedProgram:
    instructions: list[Instruction] = field(default_factory=list)
    outputs: list[OutputRange] = field(default_factory=list)
    namespaces: dict[str, tuple[int, int, int]] = field(default_factory=dict)  # name -> (base, size, used)
    zero_cell: Optional[int] = None


def parse_program(text: str) -> ParsedProgram:
    """Read program text back into instructions and output directives."""
    parsed = ParsedProgram()
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.split(";", 1)[0].strip()
        if not line or line.endswith(":"):
            continue
        if line.startswith("."):
            _parse_directive(line, parsed)
            continue
        mnemonic, _, rest = line.partition(" ")
        try:
            opcode = Opcode(mnemonic)
        except ValueError:
            raise ValueError(f"line {lineno}: unknown mnemonic '{mnemonic}'") from None
        addrs, imms = [], []
        for token in (t.strip() for t in rest.split(",") if t.strip()):
            if m := _ADDRESS.match(token):
                addrs.append(int(m.group(1)))
            elif m := _IMMEDIATE.match(token):
                imms.append(int(m.group(1)))
            else:
                raise ValueError(f"line {lineno}: bad operand '{token}'")
        n_addr, n_imm = OPERAND_COUNTS[opcode]
        has_dest = opcode is not Opcode.HALT
        if len(addrs) != n_addr + has_dest or len(imms) != n_imm:
            raise ValueError(f"line {lineno}: wrong operand count for '{mnemonic}'")
        dest = addrs[0] if has_dest else None
        parsed.instructions.append(Instruction(opcode, dest, addrs[1:] if has_dest else [], imms))
    return parsed


def _parse_directive(line: str, parsed: ParsedProgram):
    parts = line.split()
    if parts[0] == ".output":
        scale = int(parts[4][1:]) if len(parts) > 4 and parts[4].startswith("s") else 0
        parsed.outputs.append(OutputRange(parts[3], int(parts[1]), int(parts[2]), scale))
    elif parts[0] == ".namespace":
        parsed.namespaces[parts[1]] = (int(parts[2]), int(parts[3]), int(parts[4]))
    elif parts[0] == ".zero":
        parsed.zero_cell = int(parts[1])


class Machine:
    """Replays instructions over a memory table (address -> field value).

    strict:    raise WitnessInconsistent when a computed value differs from
               the value already in the destination cell
    tolerance: percentage slack allowed on `tolerant_cells` in strict mode
    """

    def __init__(self, memory: dict[int, int], instructions: list[Instruction],
                 modulus: int = DEFAULT_MODULUS, strict: bool = False,
                 tolerance: float = 0.0, tolerant_cells: Optional[set[int]] = None):
        self.mem = dict(memory)
        self.instructions = instructions
        self.modulus = modulus
        self.strict = strict
        self.tolerance = tolerance
        self.tolerant_cells = tolerant_cells or set()
        self.pc = 0
        self.steps = 0
        self.halted = False
        self._tables: dict[tuple[int, int], dict[int, int]] = {}

    def run(self):
        while self.pc < len(self.instructions) and not self.halted:
            self.step(self.instructions[self.pc])
            self.pc += 1
        logger.debug("replayed %d instructions", self.steps)

    def step(self, inst: Instruction):
        if inst.opcode is Opcode.HALT:
            self.halted = True
            return
        value = self._execute(inst)
        if self.strict and inst.dest in self.mem and self.mem[inst.dest] != value:
            if not self._within_tolerance(inst.dest, value):
                raise WitnessInconsistent.mismatch(inst.dest, self.mem[inst.dest], value, self.pc)
        self.mem[inst.dest] = value
        self.steps += 1

    def read(self, addr: int) -> int:
        if addr not in self.mem:
            raise WitnessInconsistent(
                f"instruction {self.pc} reads cell [{addr}] outside the memory table", addr, self.pc)
        return self.mem[addr]

    def read_signed(self, base: int, length: int) -> list[int]:
        return [from_field(self.read(base + i), self.modulus) for i in range(length)]

    def _execute(self, inst: Instruction) -> int:
        p = self.modulus
        ops = inst.operands
        match inst.opcode:
            case Opcode.ADD:
                return (self.read(ops[0]) + self.read(ops[1])) % p
            case Opcode.SUB:
                return (self.read(ops[0]) - self.read(ops[1])) % p
            case Opcode.MUL:
                return (self.read(ops[0]) * self.read(ops[1])) % p
            case Opcode.MAC:
                return (self.read(ops[0]) + self.read(ops[1]) * self.read(ops[2])) % p
            case Opcode.RESCALE:
                value = from_field(self.read(ops[0]), p)
                return to_field(rescale_int(value, inst.immediates[0]), p)
            case Opcode.CLAMP:
                lo, hi = inst.immediates
                value = from_field(self.read(ops[0]), p)
                return to_field(min(max(value, lo), hi), p)
            case Opcode.LOOKUP:
                table = self._table(ops[1], inst.immediates[0])
                key = self.read(ops[0])
                if key not in table:
                    raise WitnessInconsistent(
                        f"instruction {self.pc}: value {from_field(key, p)} at [{ops[0]}] "
                        f"is outside the table at [{ops[1]}]",
                        ops[0], self.pc)
                return table[key]
            case _:
                raise NotImplementedError(f"Replay for {inst.opcode}")

    def _table(self, base: int, rows: int) -> dict[int, int]:
        key = (base, rows)
        if key not in self._tables:
            self._tables[key] = {
                self.read(base + 2 * i): self.read(base + 2 * i + 1) for i in range(rows)
            }
        return self._tables[key]

    def _within_tolerance(self, addr: int, value: int) -> bool:
        if addr not in self.tolerant_cells or self.tolerance <= 0:
            return False
        expected = from_field(self.mem[addr], self.modulus)
        actual = from_field(value, self.modulus)
        return abs(actual - expected) <= abs(expected) * self.tolerance / 100.0
