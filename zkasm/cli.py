"""
Command Line Interface

    zkasm CIRCUIT WITNESS [-o PROGRAM] [-m MEMORY] [--config PATH]
          [--check-mode safe|unsafe] [--tolerance PCT] [--lookup-bits N]
          [--print-program] [--print-after-all] [--print-metrics] [-v]

Exits 0 on success. Compilation errors print a single
`error[<Kind>]: <message>` line to stderr and exit with the kind's
status; unreadable inputs and bad configuration exit 2.
"""

import argparse
import logging
import sys
from typing import Optional

from .compile import compile_files, load_config
from .errors import CompileError

logger = logging.getLogger(__name__)

EXIT_USAGE = 2


def add_compiler_flags(parser: argparse.ArgumentParser) -> None:
    """Add compiler diagnostic flags to an argument parser."""
    parser.add_argument("--print-program", action="store_true",
                        help="Print the final program text")
    parser.add_argument("--print-after-all", action="store_true",
                        help="Print IR after each compilation pass")
    parser.add_argument("--print-metrics", action="store_true",
                        help="Print pass metrics and diagnostics")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log progress (-v) or debug detail (-vv) to stderr")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zkasm",
        description="Compile an arithmetized inference graph and its witness "
                    "into a zkVM program and memory table",
    )
    parser.add_argument("circuit", help="Compiled circuit JSON")
    parser.add_argument("witness", help="Witness JSON")
    parser.add_argument("-o", "--output", dest="program",
                        help="Program output path (default: <circuit>.zasm)")
    parser.add_argument("-m", "--memory",
                        help="Memory table output path (default: <circuit>.memory.csv)")
    parser.add_argument("--config", help="Compile config JSON (default: packaged config)")
    parser.add_argument("--check-mode", choices=["safe", "unsafe"],
                        help="Replay the program against its memory table (safe) or not")
    parser.add_argument("--tolerance", type=float,
                        help="Percentage by which replayed outputs may differ in safe mode")
    parser.add_argument("--lookup-bits", type=int,
                        help="Lookup table width for nonlinearities without a bits param")
    add_compiler_flags(parser)
    return parser


def pass_options(args: argparse.Namespace) -> dict[str, dict]:
    """Pass option overrides from parsed CLI args."""
    options: dict[str, dict] = {}
    if args.check_mode is not None:
        options.setdefault("replay-check", {})["check_mode"] = args.check_mode
    if args.tolerance is not None:
        options.setdefault("replay-check", {})["tolerance"] = args.tolerance
    if args.lookup_bits is not None:
        options.setdefault("lowering", {})["lookup_bits"] = args.lookup_bits
    return options


def configure_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
        artifact = compile_files(
            args.circuit,
            args.witness,
            program_path=args.program,
            memory_path=args.memory,
            config=config,
            options=pass_options(args),
            print_after_all=args.print_after_all,
            print_metrics=args.print_metrics,
        )
    except CompileError as e:
        print(f"error[{e.kind}]: {e.message}", file=sys.stderr)
        return e.exit_code
    except (OSError, ValueError) as e:
        # json.JSONDecodeError is a ValueError
        print(f"error[InputError]: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.print_program:
        print(artifact.program_text, end="")
    return 0


if __name__ == "__main__":
    sys.exit(main())
