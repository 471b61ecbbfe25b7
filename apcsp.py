"""APCSP pseudocode entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import (
    DEFAULT_MAX_STEPS,
    STATUS_FINISHED,
    STATUS_STOPPED,
    Interpreter,
    TracebackFormatter,
    console_input_provider,
    console_output_sink,
)
from lexer import APRuntimeError


EXIT_FINISHED = 0
EXIT_CRASHED = 1
EXIT_STOPPED = 2
EXIT_INTERRUPTED = 130


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="APCSP pseudocode interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-steps", type=int, default=DEFAULT_MAX_STEPS, help="Abort after this many executed statements")
    parser.add_argument("--seed", type=int, default=None, help="Seed for RANDOM")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return EXIT_CRASHED

    interpreter = Interpreter(
        filename=filename,
        verbose=args.verbose,
        max_steps=args.max_steps,
        seed=args.seed,
        input_provider=console_input_provider,
        output_sink=console_output_sink,
    )
    try:
        outcome = interpreter.run(source_text)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    if isinstance(outcome.error, APRuntimeError):
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(outcome.error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(outcome.error), file=sys.stderr)
    if outcome.status == STATUS_FINISHED:
        return EXIT_FINISHED
    if outcome.status == STATUS_STOPPED:
        return EXIT_STOPPED
    return EXIT_CRASHED


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
