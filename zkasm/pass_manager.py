"""
Pass Manager Infrastructure

Provides the framework for running compiler passes over the three IR
states of a compilation: the loaded op graph ("graph"), the lowered
program ("program") and the final text artifact ("artifact").
CompilerPipeline runs the passes in order and validates type
compatibility between adjacent passes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .emitter import Program
from .graph import LoadedCircuit

logger = logging.getLogger(__name__)

IR_TYPES = ("graph", "program", "artifact")


@dataclass
class PassConfig:
    """Configuration for a single pass."""
    name: str
    enabled: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class PassMetrics:
    """Metrics collected by a pass during execution."""
    ir_size_before: int = 0
    ir_size_after: int = 0
    custom: dict[str, Any] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)


@dataclass
class CompiledArtifact:
    """Final outputs of a compilation, rendered but not yet written."""
    name: str
    program_text: str
    memory_csv: str
    num_instructions: int = 0
    num_cells: int = 0


def ir_size(ir_type: str, ir: Any) -> int:
    """Size of an IR state: operations, instructions or program lines."""
    if ir_type == "graph":
        return len(ir.graph.operations)
    if ir_type == "program":
        return ir.num_instructions
    if ir_type == "artifact":
        return ir.program_text.count("\n")
    raise ValueError(f"unknown IR type '{ir_type}'")


class CompilerPass(ABC):
    """Base class for all compiler passes."""

    def __init__(self):
        self._metrics: Optional[PassMetrics] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the pass name for config matching."""
        pass

    @property
    @abstractmethod
    def input_type(self) -> str:
        """Return the input IR type: 'graph', 'program' or 'artifact'."""
        pass

    @property
    @abstractmethod
    def output_type(self) -> str:
        """Return the output IR type: 'graph', 'program' or 'artifact'."""
        pass

    @abstractmethod
    def run(self, ir: Any, config: PassConfig) -> Any:
        pass

    def get_metrics(self) -> Optional[PassMetrics]:
        """Return metrics from the last run, if collected."""
        return self._metrics

    def _init_metrics(self):
        self._metrics = PassMetrics()

    def _add_metric_message(self, msg: str):
        if self._metrics:
            self._metrics.messages.append(msg)


class LoweringPass(CompilerPass):
    """Base class for passes that lower the op graph to a program."""

    @property
    def input_type(self) -> str:
        return "graph"

    @property
    def output_type(self) -> str:
        return "program"

    @abstractmethod
    def run(self, circuit: LoadedCircuit, config: PassConfig) -> Program:
        pass


class ProgramPass(CompilerPass):
    """Base class for passes that inspect or annotate a lowered program."""

    @property
    def input_type(self) -> str:
        return "program"

    @property
    def output_type(self) -> str:
        return "program"

    @abstractmethod
    def run(self, program: Program, config: PassConfig) -> Program:
        pass


class AssemblyPass(CompilerPass):
    """Base class for passes that render a program into the final artifact."""

    @property
    def input_type(self) -> str:
        return "program"

    @property
    def output_type(self) -> str:
        return "artifact"

    @abstractmethod
    def run(self, program: Program, config: PassConfig) -> CompiledArtifact:
        pass


@dataclass
class CompilerPipeline:
    """
    Manages the full compilation pipeline from op graph to artifact.

    Validates that each pass consumes the IR type its predecessor
    produced and that the pipeline ends with an artifact.
    """
    passes: list[CompilerPass] = field(default_factory=list)
    config: dict[str, PassConfig] = field(default_factory=dict)
    print_after_all: bool = False
    print_metrics: bool = False

    def add_pass(self, p: CompilerPass) -> None:
        """Register a pass in the pipeline."""
        for ir_type in (p.input_type, p.output_type):
            if ir_type not in IR_TYPES:
                raise ValueError(f"Pass '{p.name}' uses unknown IR type '{ir_type}'")
        self.passes.append(p)

    def set_config(self, data: dict[str, Any]) -> None:
        """Load pass configs from an already decoded config document."""
        passes = data.get("passes", {})
        if not isinstance(passes, dict):
            raise ValueError("config 'passes' must be an object")
        for pass_name, opts in passes.items():
            if not isinstance(opts, dict):
                raise ValueError(f"config for pass '{pass_name}' must be an object")
            self.config[pass_name] = PassConfig(
                name=pass_name,
                enabled=opts.get("enabled", True),
                options=dict(opts.get("options", {}))
            )

    def override_option(self, pass_name: str, key: str, value: Any) -> None:
        """Set one pass option, keeping the rest of that pass's config."""
        cfg = self.config.setdefault(pass_name, PassConfig(name=pass_name))
        cfg.options[key] = value

    def _print_pass_metrics(self, p: CompilerPass, cfg: PassConfig,
                            before_size: int, result: Any):
        """Print metrics for one pass execution."""
        after_size = ir_size(p.output_type, result)

        print(f"\n=== Pass: {p.name} ({p.input_type} → {p.output_type}) ===")
        print(f"Config: {', '.join(f'{k}={v}' for k, v in cfg.options.items()) or '(default)'}")
        print(f"IR size: {before_size} -> {after_size}")

        metrics = p.get_metrics()
        if metrics:
            metrics.ir_size_before = before_size
            metrics.ir_size_after = after_size
            if metrics.custom:
                print(f"Custom metrics: {metrics.custom}")
            if metrics.messages:
                print("Diagnostics:")
                for msg in metrics.messages:
                    print(f"  - {msg}")

    def run(self, circuit: LoadedCircuit) -> CompiledArtifact:
        """
        Run the full compilation pipeline.

        Args:
            circuit: The loaded op graph and witness

        Returns:
            The rendered program text and memory table
        """
        from .printing import print_ir

        if self.print_after_all:
            print("\n" + "=" * 60)
            print("COMPILATION START")
            print("=" * 60)
            print_ir("graph", circuit)

        state: dict[str, Any] = {"type": "graph", "ir": circuit}

        for p in self.passes:
            cfg = self.config.get(p.name, PassConfig(name=p.name))

            if not cfg.enabled:
                logger.info("pass %s disabled", p.name)
                if self.print_metrics:
                    print(f"\n=== Pass: {p.name} === (SKIPPED - disabled)")
                continue

            if p.input_type != state["type"]:
                raise TypeError(
                    f"Pass '{p.name}' expects input type '{p.input_type}' "
                    f"but current state is '{state['type']}'"
                )

            before_size = ir_size(state["type"], state["ir"]) if self.print_metrics else 0

            logger.debug("running pass %s", p.name)
            result = p.run(state["ir"], cfg)

            if self.print_metrics:
                self._print_pass_metrics(p, cfg, before_size, result)

            if self.print_after_all:
                print("-" * 60)
                print(f"After {p.name}:")
                print("-" * 60)
                print_ir(p.output_type, result)

            state = {"type": p.output_type, "ir": result}

        if self.print_after_all:
            print("=" * 60)
            print("COMPILATION END")
            print("=" * 60 + "\n")

        if state["type"] != "artifact":
            raise RuntimeError(
                f"Pipeline did not produce an artifact, got '{state['type']}' instead"
            )

        return state["ir"]
