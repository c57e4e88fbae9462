"""Fyfth entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Any, List, Optional, Tuple

from commands import PRELUDE, default_language
from extensions import FyfthExtensionError, LanguageExtension
from host import InMemoryHost, demo_host
from interpreter import ITERATION_LIMIT, FyfthPreludeError, Interpreter, RunResult, TraceFormatter
from lexer import FyfthLexError
from printer import format_value


PROMPT = "\x1b[38;2;153;221;255mfyfth>\033[0m "  # light blue


def _help_text(language: LanguageExtension) -> str:
    lines = ["Commands:"]
    for info in language.commands:
        doc = f"  {info.doc}" if info.doc else ""
        lines.append(f"  {info.keyword} ({info.arity}){doc}")
    lines.append("Prefixes: " + " ".join(info.char for info in language.prefixes))
    lines.append("REPL: help, vars, exit")
    return "\n".join(lines)


def _report_failure(interpreter: Interpreter, result: RunResult, *, verbose: bool, traceback_json: bool) -> None:
    if result.error is None:
        return
    formatter = TraceFormatter(interpreter)
    if verbose:
        print(formatter.format_text(result.error), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(result.error), file=sys.stderr)


def run_line(committed: Interpreter, line: str, host: Any) -> Tuple[Interpreter, RunResult]:
    """Run ``line`` on a copy of ``committed`` and return the copy with the result.

    ``committed`` itself is never touched; the caller keeps the copy only
    when the run succeeded.
    """
    candidate = committed.clone()
    candidate.parse_code(line)
    return candidate, candidate.run(host)


def run_repl(interpreter: Interpreter, host: Any, *, verbose: bool) -> int:
    print("\x1b[38;2;153;221;255mFyfth\033[0m REPL. Type `help` for the vocabulary, `exit` to leave.")
    while True:
        try:
            line = input(PROMPT)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not stripped:
            continue
        if stripped in ("exit", "quit"):
            break
        if stripped == "help":
            print(_help_text(interpreter.language))
            continue
        if stripped == "vars":
            for name, value in interpreter.vars.items():
                print(f'"{name}" : {format_value(value, host, interpreter.language)}')
            continue

        try:
            candidate, result = run_line(interpreter, line, host)
        except FyfthLexError as error:
            print(f"LexError: {error}", file=sys.stderr)
            continue
        if result.output:
            print(result.output)
        if result.ok:
            interpreter = candidate
            print(interpreter.pretty_print_stack(host, " "))
        else:
            _report_failure(candidate, result, verbose=verbose, traceback_json=False)
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fyfth stack language interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record stack snapshots and print traces on failure")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit the failure trace as JSON")
    parser.add_argument("--prelude", action="append", default=[], metavar="PATH", help="Run PATH before the program (repeatable)")
    parser.add_argument("--no-prelude", action="store_true", help="Skip the built-in prelude")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module or .fyx pointer file (repeatable)")
    parser.add_argument("--iteration-limit", type=int, default=ITERATION_LIMIT, help="Maximum queue entries executed per run")
    parser.add_argument("--demo", action="store_true", help="Start with a small scene of named entities")
    args = parser.parse_args(argv)

    if args.program is None and args.source_mode:
        print("-source requires a program string", file=sys.stderr)
        return 1

    try:
        language = default_language(args.ext)
    except FyfthExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    host = demo_host() if args.demo else InMemoryHost()
    try:
        interpreter = Interpreter.from_prelude(
            language,
            host,
            paths=args.prelude,
            sources=() if args.no_prelude else (PRELUDE,),
            iteration_limit=args.iteration_limit,
            verbose=args.verbose,
        )
    except FyfthPreludeError as error:
        print(f"PreludeError: {error}", file=sys.stderr)
        return 1

    if args.program is None:
        return run_repl(interpreter, host, verbose=args.verbose)

    if args.source_mode:
        source_text = args.program
    else:
        try:
            with open(args.program, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {args.program}: {exc}", file=sys.stderr)
            return 1

    try:
        interpreter.parse_code(source_text)
    except FyfthLexError as error:
        print(f"LexError: {error}", file=sys.stderr)
        return 1
    result = interpreter.run(host)
    if result.output:
        print(result.output)
    if not result.ok:
        _report_failure(interpreter, result, verbose=args.verbose, traceback_json=args.traceback_json)
        return 1
    print(interpreter.pretty_print_stack(host, " "))
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
