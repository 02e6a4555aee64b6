"""Metal entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import (
    STATUS_ACCEPT,
    STATUS_ERROR,
    STATUS_REJECT,
    STATUS_RUNNING,
    Configuration,
    Interpreter,
    Machine,
    TracebackFormatter,
)
from lexer import MetalParseError, MetalSyntaxError
from loader import LoadError, fold_files, load_program
from parser import parse
from symbols import SymbolTable


EXIT_CODES = {
    STATUS_ACCEPT: 0,
    STATUS_ERROR: 1,
    STATUS_REJECT: 2,
    STATUS_RUNNING: 3,
}


def format_machine(machine: Machine) -> str:
    cells, column = machine.config.tape.render()
    return "\n".join([machine.status, f"|{cells}|", " " * (column + 1) + "^"])


def _report_runtime_error(interpreter: Interpreter, machine: Machine, traceback_json: bool = False) -> None:
    assert machine.error is not None
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(machine.error, verbose=interpreter.verbose), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(machine.error), file=sys.stderr)


def run_repl(verbose: bool, tape: str = "", head: int = 0) -> int:
    print("\x1b[38;2;153;221;255mMetal\033[0m REPL. Enter statements, blank line to run buffer.")
    symbols = SymbolTable()
    config = Configuration.initial(tape, head)
    buffer: List[str] = []

    def _run(source_text: str) -> None:
        nonlocal symbols, config
        program, updated = parse(source_text, symbols, filename="<repl>")
        interpreter = Interpreter(filename="<repl>", verbose=verbose, output_sink=lambda text: print(text))
        machine = interpreter.run(program.body, config)
        if machine.failed:
            _report_runtime_error(interpreter, machine)
            return
        symbols = updated
        config = machine.config
        if config.halted:
            print(format_machine(machine))
            # Start a fresh run on the same tape and bindings.
            config = Configuration(tape=config.tape, env=config.env)

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()

        is_block_start = False
        if not buffer:
            words = stripped.split()
            if words and words[0] in ("func", "proc", "if", "while"):
                is_block_start = True
            if stripped.endswith("{"):
                is_block_start = True

        if not buffer and stripped != "" and not is_block_start:
            try:
                _run(line)
            except MetalSyntaxError:
                # A single line that does not parse may be the start of a longer entry.
                buffer.append(line)
            except MetalParseError as error:
                print(f"ParseError: {error}", file=sys.stderr)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            try:
                _run(source_text)
            except MetalParseError as error:
                print(f"ParseError: {error}", file=sys.stderr)
            continue

        if stripped != "":
            buffer.append(line)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Metal tape-language interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--tape", default="", help="Initial tape contents")
    parser.add_argument("--head", type=int, default=0, help="Initial head position")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, tape=args.tape, head=args.head)

    filename = "<string>" if args.source_mode else args.program
    try:
        if args.source_mode:
            statement = fold_files(None, [(filename, args.program)])
        else:
            statement = load_program(filename)
    except LoadError as error:
        print(error.message, file=sys.stderr)
        return 1
    except MetalParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(filename=filename, verbose=args.verbose, output_sink=lambda text: print(text))
    machine = interpreter.run(statement, Configuration.initial(args.tape, args.head))
    if machine.failed:
        _report_runtime_error(interpreter, machine, traceback_json=args.traceback_json)
        return EXIT_CODES[STATUS_ERROR]
    print(format_machine(machine))
    return EXIT_CODES[machine.status]


if __name__ == "__main__":
    raise SystemExit(run_cli())
