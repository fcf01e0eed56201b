"""
Memory Writer

Materializes the memory-initialization table: one cell per address from
each namespace's base up to its highest allocated offset, in ascending
global address order. Tensor cells take their witness value, compiler
cells their folded or derived value, control cells and gaps are zero.
"""

import logging
from dataclasses import dataclass

from .allocator import NAMESPACE_ORDER, Allocation
from .emitter import Program
from .errors import WitnessIncomplete
from .field import to_field

logger = logging.getLogger(__name__)

CSV_HEADER = "address,value"


@dataclass(frozen=True)
class MemoryCell:
    """A global address and its canonical field value."""
    address: int
    value: int


def write_memory(program: Program) -> list[MemoryCell]:
    """Build the full memory table for a lowered program."""
    allocator = program.allocator
    layout = allocator.layout
    owners = allocator.cell_owners()
    table_rows = {t.address.absolute: t for t in program.tables}

    cells: list[MemoryCell] = []
    for ns in NAMESPACE_ORDER:
        base = layout.base(ns)
        used = allocator.used(ns)
        for addr in range(base, base + used):
            owner = owners.get(addr)
            if owner is None:
                value = 0
            else:
                value = _resolve(program, owner[0], owner[1], addr, table_rows)
            cells.append(MemoryCell(addr, to_field(value, program.modulus)))
        logger.debug("namespace %s: %d cells from %d", ns.value, used, base)
    return cells


def _resolve(program: Program, alloc: Allocation, index: int, addr: int, tables: dict) -> int:
    if alloc.kind == "control":
        return 0
    if alloc.kind == "table":
        rows = tables[alloc.address.absolute].rows
        x, y = rows[index // 2]
        return x if index % 2 == 0 else y
    if alloc.kind == "scratch":
        if addr not in program.derived:
            # Unwritten scratch never happens with the current templates.
            raise WitnessIncomplete(f"no value derived for compiler cell [{addr}] ({alloc.name})",
                                    entity=f"address {addr}")
        return program.derived[addr]

    values = program.witness.get(alloc.name)
    if values is None or index >= values.size:
        raise WitnessIncomplete(
            f"witness has no value for tensor '{alloc.name}' element {index} (address {addr})",
            entity=alloc.name,
        )
    return values.flat[index]


def render_memory_csv(cells: list[MemoryCell]) -> str:
    """Two-column `address,value` table, one row per cell."""
    lines = [CSV_HEADER]
    lines.extend(f"{cell.address},{cell.value}" for cell in cells)
    return "\n".join(lines) + "\n"


def parse_memory_csv(text: str) -> dict[int, int]:
    """Read a memory table back into address -> field value."""
    rows = text.strip().splitlines()
    if not rows or rows[0].strip() != CSV_HEADER:
        raise ValueError(f"memory table must start with '{CSV_HEADER}'")
    memory: dict[int, int] = {}
    for line in rows[1:]:
        addr, value = line.split(",")
        memory[int(addr)] = int(value)
    return memory
