"""
Compiler Errors

Every stage validates its own preconditions and raises one of these on the
first problem it finds. Each kind carries the process exit status used by
the command line and the entity (node, tensor or address) it is about.
"""

from typing import Optional


class CompileError(Exception):
    """Base class for all errors that abort a compilation run."""

    exit_code = 1

    def __init__(self, message: str, entity: Optional[str] = None):
        self.message = message
        self.entity = entity
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__


class GraphMalformed(CompileError):
    """Structural defect in the compiled circuit (dangling refs, cycles, ...)."""
    exit_code = 3


class UnsupportedOperation(CompileError):
    """Operation kind with no instruction template."""
    exit_code = 4

    def __init__(self, kind: str, node_id: int):
        self.op_kind = kind
        self.node_id = node_id
        super().__init__(
            f"no lowering for op kind '{kind}' (node {node_id})",
            entity=f"node {node_id}",
        )


class ShapeMismatch(CompileError):
    """Operand shapes incompatible with the declared op kind."""
    exit_code = 5


class MemoryExhausted(CompileError):
    """A namespace ran out of cells."""
    exit_code = 6

    def __init__(self, namespace: str, owner: str, requested: int, used: int, size: int):
        self.namespace = namespace
        self.owner = owner
        self.requested = requested
        self.used = used
        self.size = size
        super().__init__(
            f"namespace '{namespace}' exhausted allocating {requested} cells for "
            f"'{owner}' ({used} of {size} cells already used)",
            entity=owner,
        )


class WitnessIncomplete(CompileError):
    """A required value is absent from the witness (or cannot be a field element)."""
    exit_code = 7


class TemplateMalformed(CompileError):
    """The assembly skeleton is missing, duplicating or misnaming an insertion point."""
    exit_code = 8


class WitnessInconsistent(CompileError):
    """Replaying the program disagrees with a value in the memory table."""
    exit_code = 9

    def __init__(self, message: str, address: int, pc: int = -1):
        self.address = address
        self.pc = pc
        super().__init__(message, entity=f"address {address}")

    @classmethod
    def mismatch(cls, address: int, expected: int, actual: int, pc: int) -> "WitnessInconsistent":
        return cls(f"cell [{address}] holds {expected} but instruction {pc} computes {actual}",
                   address, pc)
