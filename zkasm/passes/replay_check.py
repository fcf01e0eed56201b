"""
Replay Check Pass

Replays the lowered program against its own memory table and fails on
the first instruction whose result disagrees with the table.
"""

import logging

from ..allocator import Namespace
from ..emitter import Program
from ..memory import write_memory
from ..pass_manager import PassConfig, ProgramPass
from ..vm import Machine

logger = logging.getLogger(__name__)

CHECK_MODES = ("safe", "unsafe")


class ReplayCheckPass(ProgramPass):
    """
    Self-check of the emitted program.

    Options:
        check_mode: "safe" replays every instruction, "unsafe" skips the check
        tolerance:  percentage by which replayed OUTPUT cells may differ
    """

    @property
    def name(self) -> str:
        return "replay-check"

    def run(self, program: Program, config: PassConfig) -> Program:
        self._init_metrics()
        mode = str(config.options.get("check_mode", "safe")).lower()
        if mode not in CHECK_MODES:
            raise ValueError(f"check_mode must be one of {CHECK_MODES}, got '{mode}'")
        tolerance = float(config.options.get("tolerance", 0.0))
        if tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {tolerance}")

        if mode == "unsafe":
            self._add_metric_message("check mode unsafe: replay skipped")
            return program

        cells = program.memory or write_memory(program)
        allocator = program.allocator
        out_base = allocator.layout.base(Namespace.OUTPUT)
        output_cells = set(range(out_base, out_base + allocator.used(Namespace.OUTPUT)))

        machine = Machine(
            {cell.address: cell.value for cell in cells},
            program.instructions,
            modulus=program.modulus,
            strict=True,
            tolerance=tolerance,
            tolerant_cells=output_cells,
        )
        machine.run()
        logger.info("replay check passed: %d instructions", machine.steps)

        if self._metrics:
            self._metrics.custom = {
                "replayed": machine.steps,
                "tolerance": tolerance,
            }

        return program
