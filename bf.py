"""Command-line entry point: load, optionally compile, and execute programs."""

from __future__ import annotations
import argparse
import sys
import time
from typing import List, Optional, TextIO

from compiler import disassemble
from extensions import BFExtensionError, RuntimeServices, load_runtime_services
from interpreter import Brainfuck, ExecuteMode, TracebackFormatter
from lexer import BFCompileError, BFConfigError, BFError, BFRuntimeError, load_file, load_stream, load_string
from tape import DEFAULT_HEAP_SIZE, check_heap_size


DEFAULT_OPTIMIZE_LEVEL = 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Byte-tape language interpreter",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("programs", nargs="*", metavar="program", help="Source file paths (stdin when omitted), or literal source with --source")
    parser.add_argument("-t", "--time", action="store_true", help="Show execution time")
    parser.add_argument(
        "-O",
        "--optimize",
        dest="optimize",
        type=int,
        default=DEFAULT_OPTIMIZE_LEVEL,
        metavar="LEVEL",
        help="Specify optimize level\n  0: No optimize\n  1: Compile to IR-code",
    )
    parser.add_argument("-H", "--heapsize", dest="heap_size", type=int, default=DEFAULT_HEAP_SIZE, metavar="HEAP_SIZE", help="Specify heap size")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program arguments as literal source text")
    parser.add_argument("--dump-ir", action="store_true", help="Print the compiled IR instead of executing")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Include recent steps and the tape in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    return parser


def _check_optimize_level(level: int) -> int:
    if level < 0:
        raise BFConfigError(f"Optimize level must be 0 or greater, got {level}")
    return level


def _run_one(bf: Brainfuck, args: argparse.Namespace, out: TextIO, err: TextIO) -> int:
    # Program bytes go straight to out.buffer; text written earlier must land first.
    out.flush()
    start = time.perf_counter()
    try:
        if args.optimize > 0 or args.dump_ir:
            program = bf.compile()
            if args.dump_ir:
                print(disassemble(program), file=out)
                return 0
        bf.execute(args.heap_size, ExecuteMode.COMPILED if args.optimize > 0 else ExecuteMode.NORMAL)
    except BFCompileError as error:
        print(f"CompileError: {error}", file=err)
        return 1
    except BFRuntimeError as error:
        formatter = TracebackFormatter(bf)
        print(formatter.format_text(error, verbose=args.verbose), file=err)
        if args.traceback_json:
            print(formatter.to_json(error), file=err)
        return 1
    if args.time:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        out.flush()
        print(f"Execution time: {elapsed_ms} ms", file=out)
    return 0


def run_cli(argv: Optional[List[str]] = None, *, stdin=None, stdout=None, stderr=None) -> int:
    out: TextIO = stdout or sys.stdout
    err: TextIO = stderr or sys.stderr
    args = _build_parser().parse_args(argv)

    try:
        check_heap_size(args.heap_size)
        _check_optimize_level(args.optimize)
    except BFConfigError as error:
        print(f"ConfigError: {error}", file=err)
        return 1

    try:
        services = load_runtime_services(args.extensions) if args.extensions else RuntimeServices()
    except BFExtensionError as error:
        print(f"ExtensionError: {error}", file=err)
        return 1

    in_stream = stdin or sys.stdin
    bf = Brainfuck(
        stdin=getattr(in_stream, "buffer", in_stream),
        stdout=getattr(out, "buffer", out),
        services=services,
    )

    if not args.programs:
        if args.source_mode:
            print("--source requires a program string", file=err)
            return 1
        # The program text consumes stdin; ',' then sees end of input.
        try:
            bf.load(load_stream(in_stream))
        except BFError as error:
            print(f"Error: {error}", file=err)
            return 1
        return _run_one(bf, args, out, err)

    status = 0
    for index, program in enumerate(args.programs):
        try:
            if args.source_mode:
                source = load_string(program, name="<string>" if len(args.programs) == 1 else f"<string:{index}>")
            else:
                source = load_file(program)
        except BFError as error:
            print(f"Error: {error}", file=err)
            status = 1
            continue
        bf.load(source)
        if _run_one(bf, args, out, err) != 0:
            status = 1
    return status


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
