#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
abi_recovery/__main__.py
========================

Command-line front end of the calling-convention recovery engine.

Usage
-----
    python -m abi_recovery [options] <program.sexp>
    abi-recovery [options] <program.sexp>

Output formats
--------------
    text    Summaries, raw analysis maps and call-site results (default)
    csv     One row per return / tail-call site with its stack offset
    dot     Graphviz call graph of the entry points

Exit codes
----------
    0   success
    1   the program could not be read or analyzed
    2   input file missing / bad invocation
    3   analysis finished but some entry points did not converge
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Optional, Sequence, TextIO

from . import __version__
from .errors import AbiRecoveryError
from .fixpoint import AnalysisOptions, analyze_program
from .ir_reader import parse_program_file
from .report import format_branch_info_csv, format_call_graph, format_report

_log = logging.getLogger("abi_recovery")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2
EXIT_NOT_CONVERGED: int = 3

_HANDLER_NAME = "abi-recovery-cli"


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the root ``abi_recovery`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger("abi_recovery")
    for old in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(old)
    root.setLevel(level)
    root.addHandler(handler)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream (stdout for ``None`` or ``-``)."""
    if dest is None or dest == "-":
        return sys.stdout
    return open(dest, "w", encoding="utf-8")


# ===========================================================================
# Command
# ===========================================================================

def cmd_analyze(args: argparse.Namespace) -> int:
    path = _resolve_path(args.input, "lifted program")
    options = AnalysisOptions(
        max_iterations=args.max_iterations,
        max_outlined_nodes=args.max_nodes,
        max_inline_depth=args.max_inline_depth,
    )
    try:
        program = parse_program_file(path)
        report = analyze_program(program, options)
    except (AbiRecoveryError, UnicodeDecodeError, OSError) as exc:
        _log.error("%s: %s", path, exc)
        return EXIT_ERROR

    if args.format == "csv":
        text = format_branch_info_csv(report)
    elif args.format == "dot":
        text = format_call_graph(report, title=path.name)
    else:
        text = format_report(report, raw=not args.brief)

    try:
        out = _open_output(args.output)
    except OSError as exc:
        _log.error("cannot write output: %s", exc)
        return EXIT_ERROR
    try:
        out.write(text)
        if not text.endswith("\n"):
            out.write("\n")
    finally:
        if out is not sys.stdout:
            out.close()

    if not report.converged:
        return EXIT_NOT_CONVERGED
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    defaults = AnalysisOptions()
    parser = argparse.ArgumentParser(
        prog="abi-recovery",
        description="Recover calling conventions from a lifted program.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s program.sexp
              %(prog)s program.sexp --format csv -o branches.csv
              %(prog)s program.sexp --format dot | dot -Tsvg > cg.svg
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug).",
    )
    parser.add_argument(
        "input",
        help="Lifted program in S-expression form.",
    )
    parser.add_argument(
        "-f", "--format",
        choices=("text", "csv", "dot"),
        default="text",
        help="Output format (default: text).",
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    parser.add_argument(
        "--brief",
        action="store_true",
        help="Omit the raw per-analysis maps from the text report.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=defaults.max_iterations,
        metavar="N",
        help=f"Fixpoint iteration cap (default: {defaults.max_iterations}).",
    )
    parser.add_argument(
        "--max-nodes",
        type=int,
        default=defaults.max_outlined_nodes,
        metavar="N",
        help=f"Outlined body size cap (default: {defaults.max_outlined_nodes}).",
    )
    parser.add_argument(
        "--max-inline-depth",
        type=int,
        default=defaults.max_inline_depth,
        metavar="N",
        help=f"Fake-function nesting cap (default: {defaults.max_inline_depth}).",
    )
    parser.set_defaults(func=cmd_analyze)
    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA


# ---------------------------------------------------------------------------
# Module execution support
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    raise SystemExit(main())
