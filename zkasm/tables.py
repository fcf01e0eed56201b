"""
Lookup Table Folding

Nonlinearities are lowered to lookups into precomputed tables. A table
covers every quantized input in [-2^(bits-1), 2^(bits-1)) and stores one
(x, y) row per input, with y the quantized function value. Tables are
keyed by LookupSpec so equal nonlinearities share one folded table.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable

from .errors import GraphMalformed
from .field import rescale_int
from .graph import Operation, OpKind

DEFAULT_LOOKUP_BITS = 8
MAX_LOOKUP_BITS = 24


@dataclass(frozen=True)
class LookupSpec:
    """Everything that determines the contents of a lookup table."""
    function: str
    in_scale: int
    out_scale: int
    bits: int
    params: tuple = ()

    @property
    def rows(self) -> int:
        return 1 << self.bits

    @property
    def domain(self) -> tuple[int, int]:
        """Inclusive range of quantized inputs covered by the table."""
        half = 1 << (self.bits - 1)
        return -half, half - 1

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)

    def describe(self) -> str:
        extra = "".join(f" {k}={v}" for k, v in self.params)
        return f"{self.function} s{self.in_scale}->s{self.out_scale} bits={self.bits}{extra}"


def spec_for_operation(op: Operation, in_scale: int, default_bits: int = DEFAULT_LOOKUP_BITS) -> LookupSpec:
    """Build the table key for a nonlinearity node."""
    bits = op.params.get("bits", default_bits)
    if not isinstance(bits, int) or isinstance(bits, bool) or not 1 <= bits <= MAX_LOOKUP_BITS:
        raise GraphMalformed(
            f"node {op.id} lookup bits must be an integer in [1, {MAX_LOOKUP_BITS}], got {bits!r}",
            entity=f"node {op.id}",
        )

    params: tuple = ()
    kind = op.op_kind
    if kind is OpKind.LEAKY_RELU:
        params = (("alpha", float(op.params.get("alpha", 0.01))),)
    elif kind is OpKind.PIECEWISE_LINEAR:
        points = op.params.get("breakpoints")
        if not isinstance(points, list) or len(points) < 2:
            raise GraphMalformed(
                f"node {op.id} piecewise_linear needs at least two breakpoints",
                entity=f"node {op.id}",
            )
        try:
            pairs = tuple(sorted((float(x), float(y)) for x, y in points))
        except (TypeError, ValueError):
            raise GraphMalformed(
                f"node {op.id} breakpoints must be [x, y] number pairs",
                entity=f"node {op.id}",
            ) from None
        params = (("breakpoints", pairs),)

    return LookupSpec(function=op.kind, in_scale=in_scale, out_scale=op.scale,
                      bits=bits, params=params)


def fold_table(spec: LookupSpec) -> list[tuple[int, int]]:
    """Compute every (x, y) row of a table ahead of emission."""
    lo, hi = spec.domain
    if spec.function == OpKind.RELU.value:
        # Exact integer rule: no float round trip.
        shift = spec.in_scale - spec.out_scale
        return [(x, rescale_int(max(x, 0), shift)) for x in range(lo, hi + 1)]

    fn = _real_function(spec)
    in_div = 2.0 ** spec.in_scale
    out_mul = 2.0 ** spec.out_scale
    return [(x, _quantize(fn(x / in_div) * out_mul)) for x in range(lo, hi + 1)]


def _real_function(spec: LookupSpec) -> Callable[[float], float]:
    if spec.function == OpKind.LEAKY_RELU.value:
        alpha = spec.param("alpha")
        return lambda v: v if v >= 0 else alpha * v
    if spec.function == OpKind.SIGMOID.value:
        return _sigmoid
    if spec.function == OpKind.TANH.value:
        return math.tanh
    if spec.function == OpKind.PIECEWISE_LINEAR.value:
        return _piecewise(spec.param("breakpoints"))
    raise ValueError(f"no table function for '{spec.function}'")


def _sigmoid(v: float) -> float:
    if v >= 0:
        return 1.0 / (1.0 + math.exp(-v))
    e = math.exp(v)
    return e / (1.0 + e)


def _piecewise(points: tuple) -> Callable[[float], float]:
    def f(v: float) -> float:
        if v <= points[0][0]:
            return points[0][1]
        for (x0, y0), (x1, y1) in zip(points, points[1:]):
            if v <= x1:
                if x1 == x0:
                    return y1
                return y0 + (y1 - y0) * (v - x0) / (x1 - x0)
        return points[-1][1]
    return f


def _quantize(value: float) -> int:
    """Round half away from zero to the nearest integer."""
    q = math.floor(abs(value) + 0.5)
    return int(q) if value >= 0 else -int(q)
