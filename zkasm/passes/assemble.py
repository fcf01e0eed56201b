"""
Assembly Pass

Splices the lowered program into the program skeleton and renders the
memory table, producing the final artifact.
"""

from ..emitter import Program
from ..memory import render_memory_csv, write_memory
from ..pass_manager import AssemblyPass, CompiledArtifact, PassConfig
from ..template import assemble, load_skeleton


class AssemblePass(AssemblyPass):
    """
    Pass that renders the program text and the memory table.

    Options:
        skeleton: path of an alternative program skeleton
    """

    @property
    def name(self) -> str:
        return "assemble"

    def run(self, program: Program, config: PassConfig) -> CompiledArtifact:
        self._init_metrics()

        # Parsed before any text is produced.
        skeleton = load_skeleton(config.options.get("skeleton"))
        cells = program.memory or write_memory(program)
        text = assemble(program, skeleton)

        if self._metrics:
            self._metrics.custom = {
                "lines": text.count("\n"),
                "slots": len(skeleton.slots),
            }

        return CompiledArtifact(
            name=program.name,
            program_text=text,
            memory_csv=render_memory_csv(cells),
            num_instructions=program.num_instructions,
            num_cells=len(cells),
        )
