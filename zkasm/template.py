"""
Template Assembler

The model-agnostic program skeleton is parsed into text segments and typed
insertion slots. Slot contents are rendered from the structured program and
spliced in only at the very end, so a malformed skeleton is rejected before
any program text exists.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .allocator import NAMESPACE_ORDER
from .emitter import Program
from .errors import TemplateMalformed
from .graph import Visibility

SKELETON_PATH = os.path.join(os.path.dirname(__file__), "skeleton.zasm")

_MARKER = re.compile(r"^\s*;@(\S*)\s*(.*?)\s*$")
_INDENT = "    "


class Slot(Enum):
    """Named insertion points of the skeleton."""
    LAYOUT = "LAYOUT"
    PUBLIC = "PUBLIC"
    TABLES = "TABLES"
    OUTPUTS = "OUTPUTS"
    BODY = "BODY"


Segment = Union[str, Slot]


@dataclass
class Skeleton:
    """A parsed skeleton: literal lines interleaved with slots."""
    segments: list[Segment]

    @property
    def slots(self) -> list[Slot]:
        return [s for s in self.segments if isinstance(s, Slot)]


def parse_skeleton(text: str, expected: Optional[set[Slot]] = None) -> Skeleton:
    """Split skeleton text into segments, validating the slot markers.

    Every expected slot must appear exactly once; unknown slot names and
    malformed marker lines are rejected.
    """
    expected = set(Slot) if expected is None else expected
    segments: list[Segment] = []
    seen: dict[Slot, int] = {}

    for lineno, line in enumerate(text.splitlines(), 1):
        match = _MARKER.match(line)
        if match is None:
            segments.append(line)
            continue
        directive, name = match.groups()
        if directive != "slot" or not name:
            raise TemplateMalformed(f"line {lineno}: malformed marker {line.strip()!r}",
                                    entity=f"line {lineno}")
        try:
            slot = Slot(name)
        except ValueError:
            raise TemplateMalformed(f"line {lineno}: unknown slot '{name}'",
                                    entity=f"line {lineno}") from None
        if slot in seen:
            raise TemplateMalformed(
                f"slot '{name}' appears twice (lines {seen[slot]} and {lineno})",
                entity=name,
            )
        if slot not in expected:
            raise TemplateMalformed(f"line {lineno}: unexpected slot '{name}'",
                                    entity=f"line {lineno}")
        seen[slot] = lineno
        segments.append(slot)

    missing = sorted(s.value for s in expected if s not in seen)
    if missing:
        raise TemplateMalformed(f"skeleton is missing slots {missing}", entity=missing[0])
    return Skeleton(segments)


def load_skeleton(path: Optional[str] = None) -> Skeleton:
    with open(path or SKELETON_PATH) as f:
        return parse_skeleton(f.read())


def assemble(program: Program, skeleton: Optional[Skeleton] = None) -> str:
    """Render the final program text."""
    skeleton = skeleton or load_skeleton()
    renderers = {
        Slot.LAYOUT: _render_layout,
        Slot.PUBLIC: _render_public,
        Slot.TABLES: _render_tables,
        Slot.OUTPUTS: _render_outputs,
        Slot.BODY: _render_body,
    }
    lines: list[str] = []
    for segment in skeleton.segments:
        if isinstance(segment, Slot):
            lines.extend(renderers[segment](program))
        else:
            lines.append(segment)
    return "\n".join(lines) + "\n"


def _render_layout(program: Program) -> list[str]:
    allocator = program.allocator
    layout = allocator.layout
    lines = [f".program {program.name}", f".capacity {layout.capacity}"]
    for ns in NAMESPACE_ORDER:
        lines.append(f".namespace {ns.value:<12} {layout.base(ns):>8} "
                     f"{layout.size(ns):>8} {allocator.used(ns):>8}")
    lines.append(f".zero {program.zero_cell}")
    return lines


def _render_public(program: Program) -> list[str]:
    lines = []
    for alloc in program.allocator.sorted_allocations():
        if alloc.kind != "tensor":
            continue
        if program.graph.tensors[alloc.name].visibility is Visibility.PUBLIC:
            lines.append(f".public {alloc.address.absolute} {alloc.size} {alloc.name}")
    return lines


def _render_tables(program: Program) -> list[str]:
    return [f".table {t.address.absolute} {t.spec.rows} {t.spec.describe()}" for t in program.tables]


def _render_outputs(program: Program) -> list[str]:
    allocator = program.allocator
    lines = []
    for tensor_id in program.graph.outputs:
        info = program.graph.tensors[tensor_id]
        addr = allocator.lookup(tensor_id)
        lines.append(f".output {addr.absolute} {info.size} {tensor_id} s{info.scale}")
    return lines


def _render_body(program: Program) -> list[str]:
    lines = []
    for block in program.blocks:
        op = block.op
        lines.append(f"{_INDENT}; node {op.id}: {op.output} = {op.kind}({', '.join(op.inputs)})")
        lines.extend(f"{_INDENT}{inst.render()}" for inst in block.instructions)
    return lines
