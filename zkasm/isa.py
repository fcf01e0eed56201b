"""
Target Instruction Set

The zkVM assembly dialect emitted by the compiler. Every instruction
writes exactly one destination cell from cells allocated before it:

    add      [d], [a], [b]            d = a + b
    sub      [d], [a], [b]            d = a - b
    mul      [d], [a], [b]            d = a * b
    mac      [d], [acc], [a], [b]     d = acc + a * b
    rescale  [d], [a], #shift         d = round(a / 2^shift)  (shift < 0 scales up)
    clamp    [d], [a], #lo, #hi       d = min(max(a, lo), hi)
    lookup   [d], [a], [t], #rows     d = y where (x, y) row of table t has x == a
    halt
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Opcode(Enum):
    """Instruction mnemonics."""
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    MAC = "mac"
    RESCALE = "rescale"
    CLAMP = "clamp"
    LOOKUP = "lookup"
    HALT = "halt"


# (address operands, immediates) per opcode, destination excluded.
OPERAND_COUNTS = {
    Opcode.ADD: (2, 0),
    Opcode.SUB: (2, 0),
    Opcode.MUL: (2, 0),
    Opcode.MAC: (3, 0),
    Opcode.RESCALE: (1, 1),
    Opcode.CLAMP: (1, 2),
    Opcode.LOOKUP: (2, 1),
    Opcode.HALT: (0, 0),
}

_MNEMONIC_WIDTH = 8


@dataclass
class Instruction:
    """A single VM instruction.

    dest:       global address written (None only for HALT)
    operands:   global addresses read
    immediates: integer immediates
    comment:    provenance (node id and element), not part of the semantics
    """
    opcode: Opcode
    dest: Optional[int]
    operands: list[int] = field(default_factory=list)
    immediates: list[int] = field(default_factory=list)
    comment: str = ""

    def render(self) -> str:
        """Assembly text for this instruction (without indentation)."""
        parts = []
        if self.dest is not None:
            parts.append(f"[{self.dest}]")
        parts.extend(f"[{a}]" for a in self.operands)
        parts.extend(f"#{v}" for v in self.immediates)
        text = self.opcode.value
        if parts:
            text = f"{self.opcode.value:<{_MNEMONIC_WIDTH}} " + ", ".join(parts)
        if self.comment:
            text = f"{text:<44} ; {self.comment}"
        return text

    def __repr__(self):
        return self.render()
