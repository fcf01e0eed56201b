"""
Graph -> Program Lowering (Instruction Emitter)

Walks the op graph in the shared deterministic order and emits a fixed
instruction template per operation, requesting addresses from the
allocator as tensors are encountered. Values of compiler-owned cells
(partial sums, rescale temporaries, lookup tables) are computed here from
the witness so the memory writer can materialize them.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .allocator import Address, AddressAllocator, Namespace
from .errors import GraphMalformed, ShapeMismatch, UnsupportedOperation, WitnessIncomplete
from .field import DEFAULT_MODULUS, fits_field, rescale_int
from .graph import OpCategory, OpGraph, Operation, OpKind, TensorInfo
from .isa import Instruction, Opcode
from .ordering import topological_order
from .tables import DEFAULT_LOOKUP_BITS, LookupSpec, fold_table, spec_for_operation

logger = logging.getLogger(__name__)

ZERO_CELL = "zero"


@dataclass
class FoldedTable:
    """A constant-folded lookup table placed in the fixed namespace."""
    spec: LookupSpec
    address: Address
    rows: list[tuple[int, int]]


@dataclass
class EmittedBlock:
    """Instructions emitted for one graph node."""
    op: Operation
    instructions: list[Instruction] = field(default_factory=list)


@dataclass
class Program:
    """The lowered program with everything needed to lay out memory."""
    name: str
    graph: OpGraph
    witness: dict[str, np.ndarray]
    allocator: AddressAllocator
    blocks: list[EmittedBlock] = field(default_factory=list)
    tables: list[FoldedTable] = field(default_factory=list)
    derived: dict[int, int] = field(default_factory=dict)   # global address -> signed value
    zero_cell: int = 0
    modulus: int = DEFAULT_MODULUS
    memory: list = field(default_factory=list)               # MemoryCell list, filled by memory-layout

    @property
    def instructions(self) -> list[Instruction]:
        return [inst for block in self.blocks for inst in block.instructions]

    @property
    def num_instructions(self) -> int:
        return sum(len(block.instructions) for block in self.blocks)


@dataclass
class _Operand:
    """A tensor (or a rescaled copy of it) as seen by an instruction template."""
    info: TensorInfo
    base: int
    values: np.ndarray
    scale: int

    def addr(self, flat: int) -> int:
        return self.base + flat

    def value(self, flat: int) -> int:
        return self.values.flat[flat]


class EmitterContext:
    """State for lowering one graph."""

    def __init__(self, graph: OpGraph, witness: dict[str, np.ndarray],
                 allocator: AddressAllocator, lookup_bits: int = DEFAULT_LOOKUP_BITS,
                 modulus: int = DEFAULT_MODULUS):
        self.graph = graph
        self.witness = witness
        self.allocator = allocator
        self.lookup_bits = lookup_bits
        self.modulus = modulus
        self.blocks: list[EmittedBlock] = []
        self.derived: dict[int, int] = {}
        self._tables: dict[LookupSpec, FoldedTable] = {}
        self._current: Optional[EmittedBlock] = None
        # Reserved first so it sits at the control namespace base.
        self.zero = allocator.reserve_control(ZERO_CELL)

    # === Addresses and values ===

    def operand(self, tensor_id: str) -> _Operand:
        """Operand view of a tensor, allocating it on first use."""
        info = self.graph.tensors[tensor_id]
        addr = self.allocator.allocate(info)
        return _Operand(info, addr.absolute, self.witness[tensor_id], info.scale)

    def output(self, op: Operation) -> Address:
        return self.allocator.allocate(self.graph.tensors[op.output])

    def temp(self, op: Operation, purpose: str, size: int) -> int:
        """Intermediate block for compiler-derived values."""
        return self.allocator.allocate_scratch(f"n{op.id}.{purpose}", size).absolute

    def table(self, spec: LookupSpec) -> FoldedTable:
        """Folded table for a spec, allocated in the fixed namespace on first use."""
        folded = self._tables.get(spec)
        if folded is None:
            rows = fold_table(spec)
            addr = self.allocator.allocate_scratch(
                f"table.{spec.function}", 2 * len(rows), Namespace.FIXED, kind="table")
            folded = FoldedTable(spec=spec, address=addr, rows=rows)
            self._tables[spec] = folded
            logger.debug("folded %s into %d rows at %r", spec.describe(), len(rows), addr)
        return folded

    @property
    def tables(self) -> list[FoldedTable]:
        return list(self._tables.values())

    def record(self, addr: int, value: int):
        """Remember the value of a compiler-owned cell; it must fit the field."""
        if not fits_field(value, self.modulus):
            node = f"node {self._current.op.id}" if self._current is not None else "compiler"
            raise WitnessIncomplete(
                f"{node} derives a value of {value.bit_length()} bits for cell [{addr}], "
                f"which does not fit the field",
                entity=node,
            )
        self.derived[addr] = value

    # === Emission ===

    def begin(self, op: Operation):
        self._current = EmittedBlock(op)
        self.blocks.append(self._current)

    def emit(self, opcode: Opcode, dest: int, operands: list[int],
             immediates: Optional[list[int]] = None, comment: str = ""):
        assert self._current is not None, "No current block"
        self._current.instructions.append(
            Instruction(opcode, dest, operands, immediates or [], comment))

    def rescaled(self, op: Operation, operand: _Operand, target: int, purpose: str) -> _Operand:
        """Operand brought to `target` scale through an explicit RESCALE, if needed."""
        if operand.scale == target:
            return operand
        shift = operand.scale - target
        size = operand.info.size
        base = self.temp(op, purpose, size)
        values = np.empty(size, dtype=object)
        for i in range(size):
            v = rescale_int(operand.value(i), shift)
            values[i] = v
            self.emit(Opcode.RESCALE, base + i, [operand.addr(i)], [shift],
                      f"n{op.id} requant {operand.info.id}[{i}] s{operand.scale}->s{target}")
            self.record(base + i, v)
        return _Operand(operand.info, base, values.reshape(operand.info.shape), target)


def emit_program(graph: OpGraph, witness: dict[str, np.ndarray], allocator: AddressAllocator,
                 lookup_bits: int = DEFAULT_LOOKUP_BITS, name: str = "circuit",
                 modulus: int = DEFAULT_MODULUS) -> Program:
    """Lower every operation of the graph in the shared traversal order."""
    ctx = EmitterContext(graph, witness, allocator, lookup_bits, modulus)

    for op in topological_order(graph):
        kind = op.op_kind
        lower = _LOWERINGS.get(kind) if kind is not None else None
        if lower is None:
            raise UnsupportedOperation(op.kind, op.id)
        ctx.begin(op)
        lower(op, ctx)
        logger.debug("lowered node %d (%s): %d instructions",
                     op.id, op.kind, len(ctx.blocks[-1].instructions))

    # Declared outputs that are graph inputs or constants still need cells.
    for tensor_id in graph.outputs:
        allocator.allocate(graph.tensors[tensor_id])

    program = Program(
        name=name,
        graph=graph,
        witness=witness,
        allocator=allocator,
        blocks=ctx.blocks,
        tables=ctx.tables,
        derived=ctx.derived,
        zero_cell=ctx.zero,
        modulus=modulus,
    )
    logger.info("emitted %d instructions for %d nodes (%d cells, %d tables)",
                program.num_instructions, len(ctx.blocks), allocator.total_used(), len(program.tables))
    return program


# === Shape helpers ===

def _arity(op: Operation, *allowed: int):
    if len(op.inputs) not in allowed:
        expected = " or ".join(str(n) for n in allowed)
        raise GraphMalformed(
            f"node {op.id} ({op.kind}) takes {expected} inputs, got {len(op.inputs)}",
            entity=f"node {op.id}",
        )


def _mismatch(op: Operation, shapes: list[tuple], out_shape: tuple, why: str = "") -> ShapeMismatch:
    detail = f": {why}" if why else ""
    return ShapeMismatch(
        f"node {op.id} ({op.kind}) operand shapes {[list(s) for s in shapes]} incompatible "
        f"with output shape {list(out_shape)}{detail}",
        entity=f"node {op.id}",
    )


def _check_output(op: Operation, ctx: EmitterContext, shapes: list[tuple], expected: tuple):
    declared = ctx.graph.tensors[op.output].shape
    if tuple(declared) != tuple(expected):
        raise _mismatch(op, shapes, declared, f"expected output shape {list(expected)}")


def _flat(idx: tuple, shape: tuple) -> int:
    """Row-major flat offset of a multi-index (0 for scalars)."""
    if not shape:
        return 0
    return int(np.ravel_multi_index(idx, shape))


def _broadcast_index(out_idx: tuple, shape: tuple) -> tuple:
    """Index into an operand broadcast against an output index."""
    if not shape:
        return ()
    tail = out_idx[len(out_idx) - len(shape):]
    return tuple(i if d != 1 else 0 for i, d in zip(tail, shape))


def _element_label(tensor_id: str, idx: tuple) -> str:
    return f"{tensor_id}[{','.join(str(i) for i in idx)}]"


# === Elementwise ===

_ELEMENTWISE_OPCODES = {
    OpKind.ADD: Opcode.ADD,
    OpKind.SUB: Opcode.SUB,
    OpKind.MUL: Opcode.MUL,
}


def _lower_binary(op: Operation, ctx: EmitterContext):
    """add/sub/mul: one instruction per output element, numpy broadcasting."""
    _arity(op, 2)
    a = ctx.operand(op.inputs[0])
    b = ctx.operand(op.inputs[1])
    shapes = [a.info.shape, b.info.shape]
    try:
        out_shape = np.broadcast_shapes(a.info.shape, b.info.shape)
    except ValueError:
        raise _mismatch(op, shapes, ctx.graph.tensors[op.output].shape, "not broadcastable") from None
    _check_output(op, ctx, shapes, out_shape)

    kind = op.op_kind
    opcode = _ELEMENTWISE_OPCODES[kind]
    if kind is OpKind.MUL:
        natural = a.scale + b.scale
    else:
        a = ctx.rescaled(op, a, op.scale, "lhs")
        b = ctx.rescaled(op, b, op.scale, "rhs")
        natural = op.scale

    out = ctx.output(op)
    size = ctx.graph.tensors[op.output].size
    # Products above the op scale land in a temporary and are rescaled.
    prod_base = out.absolute if natural == op.scale else ctx.temp(op, "product", size)

    for idx in np.ndindex(*out_shape):
        flat = _flat(idx, out_shape)
        fa = _flat(_broadcast_index(idx, a.info.shape), a.info.shape)
        fb = _flat(_broadcast_index(idx, b.info.shape), b.info.shape)
        label = f"n{op.id} {op.kind} {_element_label(op.output, idx)}"
        ctx.emit(opcode, prod_base + flat, [a.addr(fa), b.addr(fb)], comment=label)
        if natural != op.scale:
            value = a.value(fa) * b.value(fb)
            ctx.record(prod_base + flat, value)
            ctx.emit(Opcode.RESCALE, out + flat, [prod_base + flat], [natural - op.scale],
                     comment=f"{label} s{natural}->s{op.scale}")


def _lower_unary(op: Operation, ctx: EmitterContext):
    """neg: 0 - a, identity: a + 0."""
    _arity(op, 1)
    a = ctx.operand(op.inputs[0])
    _check_output(op, ctx, [a.info.shape], a.info.shape)
    a = ctx.rescaled(op, a, op.scale, "src")
    out = ctx.output(op)
    for i in range(a.info.size):
        label = f"n{op.id} {op.kind} {op.output}[{i}]"
        if op.op_kind is OpKind.NEG:
            ctx.emit(Opcode.SUB, out + i, [ctx.zero, a.addr(i)], comment=label)
        else:
            ctx.emit(Opcode.ADD, out + i, [a.addr(i), ctx.zero], comment=label)


# === Contractions ===

@dataclass
class _Term:
    """One reduction step: acc += a * b, or acc += a when b is None."""
    a_addr: int
    a_val: int
    b_addr: Optional[int] = None
    b_val: int = 1


def _emit_reduction(op: Operation, ctx: EmitterContext, out_shape: tuple,
                    terms: list[list[_Term]], natural: int):
    """Unroll one accumulate instruction per (output element, reduction step).

    The first step accumulates from the zero cell, intermediate partial sums
    get their own cells, the last step writes the output cell (or a
    temporary when a RESCALE to the op scale follows). An output with no
    elements lowers to no instructions.
    """
    if not terms:
        ctx.output(op)
        return
    steps = len(terms[0])
    if steps == 0:
        raise _mismatch(op, [ctx.graph.tensors[t].shape for t in op.inputs], out_shape,
                        "empty reduction")
    out = ctx.output(op)
    n_out = len(terms)
    rescale = natural != op.scale
    partial_base = ctx.temp(op, "partial", n_out * (steps - 1)) if steps > 1 else None
    final_base = ctx.temp(op, "acc", n_out) if rescale else out.absolute

    for flat, (idx, element_terms) in enumerate(zip(np.ndindex(*out_shape), terms)):
        label = f"n{op.id} {op.kind} {_element_label(op.output, idx)}"
        acc_addr = ctx.zero
        acc = 0
        for step, term in enumerate(element_terms):
            last = step == steps - 1
            dest = final_base + flat if last else partial_base + flat * (steps - 1) + step
            if term.b_addr is None:
                ctx.emit(Opcode.ADD, dest, [acc_addr, term.a_addr], comment=f"{label} k={step}")
                acc += term.a_val
            else:
                ctx.emit(Opcode.MAC, dest, [acc_addr, term.a_addr, term.b_addr],
                         comment=f"{label} k={step}")
                acc += term.a_val * term.b_val
            if not last or rescale:
                ctx.record(dest, acc)
            acc_addr = dest
        if rescale:
            ctx.emit(Opcode.RESCALE, out + flat, [acc_addr], [natural - op.scale],
                     comment=f"{label} s{natural}->s{op.scale}")


def _lower_matmul(op: Operation, ctx: EmitterContext):
    """[m, k] x [k, n] -> [m, n], or [k] x [k, n] -> [n]."""
    _arity(op, 2)
    a = ctx.operand(op.inputs[0])
    b = ctx.operand(op.inputs[1])
    sa, sb = a.info.shape, b.info.shape
    if len(sa) not in (1, 2) or len(sb) != 2 or sa[-1] != sb[0]:
        raise _mismatch(op, [sa, sb], ctx.graph.tensors[op.output].shape, "inner dimensions differ")
    k, n = sb
    out_shape = (n,) if len(sa) == 1 else (sa[0], n)
    _check_output(op, ctx, [sa, sb], out_shape)

    terms = []
    for idx in np.ndindex(*out_shape):
        row = idx[0] if len(sa) == 2 else None
        col = idx[-1]
        element = []
        for r in range(k):
            fa = _flat((row, r), sa) if row is not None else r
            fb = _flat((r, col), sb)
            element.append(_Term(a.addr(fa), a.value(fa), b.addr(fb), b.value(fb)))
        terms.append(element)
    _emit_reduction(op, ctx, out_shape, terms, a.scale + b.scale)


def _lower_dot(op: Operation, ctx: EmitterContext):
    """[k] . [k] -> scalar."""
    _arity(op, 2)
    a = ctx.operand(op.inputs[0])
    b = ctx.operand(op.inputs[1])
    if len(a.info.shape) != 1 or a.info.shape != b.info.shape:
        raise _mismatch(op, [a.info.shape, b.info.shape], ctx.graph.tensors[op.output].shape)
    out_shape = _scalar_shape(op, ctx, [a.info.shape, b.info.shape])
    terms = [[_Term(a.addr(r), a.value(r), b.addr(r), b.value(r)) for r in range(a.info.size)]]
    _emit_reduction(op, ctx, out_shape, terms, a.scale + b.scale)


def _lower_sum(op: Operation, ctx: EmitterContext):
    """Sum of all elements -> scalar."""
    _arity(op, 1)
    a = ctx.operand(op.inputs[0])
    out_shape = _scalar_shape(op, ctx, [a.info.shape])
    terms = [[_Term(a.addr(i), a.value(i)) for i in range(a.info.size)]]
    _emit_reduction(op, ctx, out_shape, terms, a.scale)


def _scalar_shape(op: Operation, ctx: EmitterContext, shapes: list[tuple]) -> tuple:
    declared = tuple(ctx.graph.tensors[op.output].shape)
    if declared not in ((), (1,)):
        raise _mismatch(op, shapes, declared, "reduction output must be a scalar")
    return declared


def _pair(value, name: str, op: Operation) -> tuple[int, int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value, value
    if isinstance(value, list) and len(value) == 2 and all(isinstance(v, int) for v in value):
        return value[0], value[1]
    raise GraphMalformed(f"node {op.id} conv {name} must be an int or [h, w]", entity=f"node {op.id}")


def _lower_conv(op: Operation, ctx: EmitterContext):
    """2-D convolution: input [C, H, W], kernel [O, C, KH, KW], optional bias [O]."""
    _arity(op, 2, 3)
    x = ctx.operand(op.inputs[0])
    w = ctx.operand(op.inputs[1])
    sx, sw = x.info.shape, w.info.shape
    shapes = [sx, sw]
    declared = ctx.graph.tensors[op.output].shape
    if len(sx) != 3 or len(sw) != 4 or sx[0] != sw[1]:
        raise _mismatch(op, shapes, declared, "channel dimensions differ")
    stride_h, stride_w = _pair(op.params.get("stride", 1), "stride", op)
    pad_h, pad_w = _pair(op.params.get("padding", 0), "padding", op)
    if stride_h < 1 or stride_w < 1 or pad_h < 0 or pad_w < 0:
        raise GraphMalformed(f"node {op.id} conv stride/padding out of range", entity=f"node {op.id}")

    channels, height, width = sx
    out_c, _, kh, kw = sw
    oh = (height + 2 * pad_h - kh) // stride_h + 1
    ow = (width + 2 * pad_w - kw) // stride_w + 1
    if oh < 1 or ow < 1:
        raise _mismatch(op, shapes, declared, "kernel larger than padded input")
    out_shape = (out_c, oh, ow)

    natural = x.scale + w.scale
    bias = None
    if len(op.inputs) == 3:
        bias = ctx.operand(op.inputs[2])
        shapes.append(bias.info.shape)
        if bias.info.shape != (out_c,):
            raise _mismatch(op, shapes, declared, "bias must have one value per output channel")
        bias = ctx.rescaled(op, bias, natural, "bias")
    _check_output(op, ctx, shapes, out_shape)

    terms = []
    for o, i, j in np.ndindex(*out_shape):
        element = []
        if bias is not None:
            element.append(_Term(bias.addr(o), bias.value(o)))
        for c, di, dj in np.ndindex(channels, kh, kw):
            y = i * stride_h + di - pad_h
            z = j * stride_w + dj - pad_w
            fw = _flat((o, c, di, dj), sw)
            if 0 <= y < height and 0 <= z < width:
                fx = _flat((c, y, z), sx)
                element.append(_Term(x.addr(fx), x.value(fx), w.addr(fw), w.value(fw)))
            else:
                # Padding tap reads the zero cell.
                element.append(_Term(ctx.zero, 0, w.addr(fw), w.value(fw)))
        terms.append(element)
    _emit_reduction(op, ctx, out_shape, terms, natural)


# === Nonlinearities ===

def _lower_lookup(op: Operation, ctx: EmitterContext):
    """One LOOKUP per element into a table folded before the first lookup."""
    _arity(op, 1)
    a = ctx.operand(op.inputs[0])
    _check_output(op, ctx, [a.info.shape], a.info.shape)
    spec = spec_for_operation(op, a.scale, ctx.lookup_bits)
    table = ctx.table(spec)
    out = ctx.output(op)
    for i in range(a.info.size):
        ctx.emit(Opcode.LOOKUP, out + i, [a.addr(i), table.address.absolute], [spec.rows],
                 comment=f"n{op.id} {op.kind} {op.output}[{i}]")


# === Requantization ===

def _lower_rescale(op: Operation, ctx: EmitterContext):
    """Shift to the op scale, then clamp when the node declares bounds."""
    _arity(op, 1)
    a = ctx.operand(op.inputs[0])
    _check_output(op, ctx, [a.info.shape], a.info.shape)
    clamp = op.params.get("clamp")
    if clamp is not None:
        if (not isinstance(clamp, list) or len(clamp) != 2
                or not all(isinstance(v, int) for v in clamp) or clamp[0] > clamp[1]):
            raise GraphMalformed(f"node {op.id} clamp must be [lo, hi]", entity=f"node {op.id}")

    shift = a.scale - op.scale
    out = ctx.output(op)
    if clamp is None:
        for i in range(a.info.size):
            ctx.emit(Opcode.RESCALE, out + i, [a.addr(i)], [shift],
                     comment=f"n{op.id} rescale {op.output}[{i}] s{a.scale}->s{op.scale}")
        return

    src = ctx.rescaled(op, a, op.scale, "shifted")
    for i in range(a.info.size):
        ctx.emit(Opcode.CLAMP, out + i, [src.addr(i)], list(clamp),
                 comment=f"n{op.id} clamp {op.output}[{i}]")


_LOWERINGS = {
    OpKind.ADD: _lower_binary,
    OpKind.SUB: _lower_binary,
    OpKind.MUL: _lower_binary,
    OpKind.NEG: _lower_unary,
    OpKind.IDENTITY: _lower_unary,
    OpKind.MATMUL: _lower_matmul,
    OpKind.DOT: _lower_dot,
    OpKind.CONV: _lower_conv,
    OpKind.SUM: _lower_sum,
    OpKind.RESCALE: _lower_rescale,
}
_LOWERINGS.update({
    kind: _lower_lookup for kind in OpKind if kind.category is OpCategory.NONLINEARITY
})
