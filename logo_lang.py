"""Logo-Lang entry point and REPL wiring."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from canvas import LogoImageError, TurtleCanvas
from interpreter import MAX_LOOP_ITERATIONS, Interpreter, LogoRuntimeError, TracebackFormatter
from lexer import LogoSyntaxError

REPL_CANVAS_SIZE = 500


def run_repl(verbose: bool, output: Optional[str], max_loop_iterations: int) -> int:
    print("\x1b[38;2;153;221;255mLogo-Lang\033[0m REPL. Enter statements, blank line to run buffer.")
    canvas = TurtleCanvas(REPL_CANVAS_SIZE, REPL_CANVAS_SIZE)
    interpreter = Interpreter(
        source="",
        canvas=canvas,
        filename="<repl>",
        verbose=verbose,
        max_loop_iterations=max_loop_iterations,
    )
    buffer: List[str] = []

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        # TO and unfinished [ blocks need more lines before they can run.
        if not buffer and stripped != "" and stripped.split()[0] != "TO" and stripped.count("[") <= stripped.count("]"):
            source_text = line
        elif stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
        else:
            if stripped != "":
                buffer.append(line)
            continue

        try:
            interpreter.execute(source_text)
        except LogoSyntaxError as error:
            print(f"SyntaxError: {error}", file=sys.stderr)
        except LogoRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)

    if output:
        try:
            canvas.save(output)
        except LogoImageError as error:
            print(f"ImageError: {error}", file=sys.stderr)
            return 1
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Logo-Lang turtle graphics interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("image", nargs="?", help="Output image path (.png, .bmp or .svg)")
    parser.add_argument("height", nargs="?", type=int, help="Canvas height in pixels")
    parser.add_argument("width", nargs="?", type=int, help="Canvas width in pixels")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit variable snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-loop-iterations", type=int, default=MAX_LOOP_ITERATIONS, help="Ceiling on WHILE iterations")
    parser.add_argument("-o", "--output", help="REPL only: save the drawing here on exit")
    args = parser.parse_args(argv)

    if args.max_loop_iterations < 0:
        print("--max-loop-iterations must be non-negative", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, output=args.output, max_loop_iterations=args.max_loop_iterations)

    if args.image is None or args.height is None or args.width is None:
        print("A program needs IMAGE HEIGHT WIDTH arguments", file=sys.stderr)
        return 1

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
            return 1

    try:
        canvas = TurtleCanvas(args.width, args.height)
    except LogoImageError as error:
        print(f"ImageError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        source=source_text,
        canvas=canvas,
        filename=filename,
        verbose=args.verbose,
        max_loop_iterations=args.max_loop_iterations,
    )
    try:
        interpreter.run()
    except LogoSyntaxError as error:
        print(f"SyntaxError: {error}", file=sys.stderr)
        return 1
    except LogoRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1

    try:
        canvas.save(args.image)
    except LogoImageError as error:
        print(f"ImageError: {error}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
