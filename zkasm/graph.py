"""
Op Graph - In-Memory Circuit Representation

The compiled circuit produced by arithmetization: tensors with shapes,
fixed-point scales and visibility, and the operations that produce them.
The graph is built once by the loader and treated as immutable afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np


class Visibility(Enum):
    """Visibility class of a tensor. Selects a namespace, never changes arithmetic."""
    PUBLIC = "public"
    PRIVATE = "private"
    FIXED = "fixed"


class OpCategory(Enum):
    ELEMENTWISE = "elementwise"
    CONTRACTION = "contraction"
    NONLINEARITY = "nonlinearity"
    REQUANT = "requant"


class OpKind(Enum):
    """Operation kinds with an instruction template."""
    # Elementwise
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    NEG = "neg"
    IDENTITY = "identity"

    # Contractions
    MATMUL = "matmul"
    DOT = "dot"
    CONV = "conv"
    SUM = "sum"

    # Nonlinearities (lookup)
    RELU = "relu"
    LEAKY_RELU = "leaky_relu"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    PIECEWISE_LINEAR = "piecewise_linear"

    # Requantization
    RESCALE = "rescale"

    @property
    def category(self) -> OpCategory:
        return _CATEGORIES[self]

    @classmethod
    def from_name(cls, name: str) -> Optional["OpKind"]:
        """Return the kind for a name, or None if there is no such kind."""
        try:
            return cls(name)
        except ValueError:
            return None


_CATEGORIES = {
    OpKind.ADD: OpCategory.ELEMENTWISE,
    OpKind.SUB: OpCategory.ELEMENTWISE,
    OpKind.MUL: OpCategory.ELEMENTWISE,
    OpKind.NEG: OpCategory.ELEMENTWISE,
    OpKind.IDENTITY: OpCategory.ELEMENTWISE,
    OpKind.MATMUL: OpCategory.CONTRACTION,
    OpKind.DOT: OpCategory.CONTRACTION,
    OpKind.CONV: OpCategory.CONTRACTION,
    OpKind.SUM: OpCategory.CONTRACTION,
    OpKind.RELU: OpCategory.NONLINEARITY,
    OpKind.LEAKY_RELU: OpCategory.NONLINEARITY,
    OpKind.SIGMOID: OpCategory.NONLINEARITY,
    OpKind.TANH: OpCategory.NONLINEARITY,
    OpKind.PIECEWISE_LINEAR: OpCategory.NONLINEARITY,
    OpKind.RESCALE: OpCategory.REQUANT,
}


@dataclass(frozen=True)
class TensorInfo:
    """A tensor declared by the circuit."""
    id: str
    shape: tuple[int, ...]
    scale: int
    visibility: Visibility

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64)) if self.shape else 1

    def __repr__(self):
        dims = "x".join(str(d) for d in self.shape) or "scalar"
        return f"%{self.id}<{dims}, s{self.scale}, {self.visibility.value}>"


@dataclass(frozen=True)
class Operation:
    """Single graph node: output = kind(inputs)

    `kind` is the raw kind string from the circuit so that unknown kinds
    survive loading and are reported by the emitter.
    """
    id: int
    kind: str
    inputs: tuple[str, ...]
    output: str
    scale: int
    params: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def op_kind(self) -> Optional[OpKind]:
        return OpKind.from_name(self.kind)

    def __repr__(self):
        ins = ", ".join(f"%{t}" for t in self.inputs)
        return f"n{self.id}: %{self.output} = {self.kind}({ins}) [s{self.scale}]"


@dataclass
class OpGraph:
    """A complete compiled circuit."""
    tensors: dict[str, TensorInfo] = field(default_factory=dict)
    operations: dict[int, Operation] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    _producer_map: Optional[dict[str, Operation]] = field(
        default=None, init=False, repr=False, compare=False)

    def producer(self, tensor_id: str) -> Optional[Operation]:
        """The operation producing a tensor, or None for sources."""
        return self._producers().get(tensor_id)

    def _producers(self) -> dict[str, Operation]:
        # Built lazily; the graph is not mutated after loading.
        if self._producer_map is None:
            self._producer_map = {op.output: op for op in self.operations.values()}
        return self._producer_map

    def is_source(self, tensor_id: str) -> bool:
        return tensor_id not in self._producers()

    def required_tensors(self) -> list[str]:
        """Tensors any operation reads or writes, plus declared outputs (sorted)."""
        needed: set[str] = set(self.outputs)
        for op in self.operations.values():
            needed.update(op.inputs)
            needed.add(op.output)
        return sorted(needed)


@dataclass
class LoadedCircuit:
    """The op graph together with its witness (tensor id -> value array)."""
    graph: OpGraph
    witness: dict[str, np.ndarray]
    name: str = "circuit"
