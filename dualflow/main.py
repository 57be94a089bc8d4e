#!/usr/bin/env python3
"""dualflow/main.py — CLI entry-point for dual-path correlation.

Usage examples
--------------
    # Correlate two flows declared by a catalogue over a flow graph
    python -m dualflow analyze program.flow.json --catalogue cookies.sexp

    # Several catalogues, SARIF output, stricter joint transitions
    python -m dualflow analyze program.flow.json -c a.sexp -c b.sexp \\
        --format sarif --output findings.sarif --policy call-site

    # Validate inputs
    python -m dualflow check program.flow.json
    python -m dualflow check-catalogue cookies.sexp

    # Render the flow graph with Graphviz
    python -m dualflow dot program.flow.json | dot -Tsvg > graph.svg

Exit codes
----------
    0   Success, no findings.
    1   One or more findings were reported.
    2   Infrastructure failure (missing file, malformed graph or catalogue).

The module doubles as ``python -m dualflow`` via the companion
``dualflow/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence, TextIO

from . import __version__
from .catalogue import Catalogue, load_catalogue
from .correlation import CorrelationConfig, SyncPolicy, correlate
from .errors import DualflowError
from .flowgraph import FlowGraph, load_flowgraph
from .report import ReportFormat, RuleFindings, Severity, write_reports

_log = logging.getLogger("dualflow")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_FINDINGS: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``dualflow`` logger.

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
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root = logging.getLogger("dualflow")
    root.setLevel(level)
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream (``None`` or ``"-"`` → stdout)."""
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _load_graph(raw: str) -> FlowGraph:
    path = _resolve_path(raw, "flow graph")
    _log.info("Loading flow graph: %s", path)
    graph = load_flowgraph(path)
    _log.info("%r", graph)
    return graph


# ===========================================================================
# Sub-command implementations
# ===========================================================================

def cmd_analyze(args: argparse.Namespace) -> int:
    """Correlate the flows of every catalogue over one flow graph."""
    graph = _load_graph(args.graph)
    catalogues: List[Catalogue] = []
    for raw in args.catalogue:
        path = _resolve_path(raw, "catalogue")
        _log.info("Loading catalogue: %s", path)
        catalogues.append(load_catalogue(path))

    config = CorrelationConfig(
        policy=SyncPolicy(args.policy),
        call_depth=args.call_depth,
        max_quadruples=args.max_quadruples,
    )

    batches: List[RuleFindings] = []
    for cat in catalogues:
        t0 = time.monotonic()
        result = correlate(graph, cat, config)
        findings = result.findings()
        _log.info(
            "catalogue %s: %d quadruples, %d finding(s) in %.3fs",
            cat.name, len(result), len(findings), time.monotonic() - t0,
        )
        if result.truncated:
            _log.warning("catalogue %s: exploration was truncated", cat.name)
        batches.append(RuleFindings(
            rule_id=cat.name,
            findings=findings,
            severity=Severity.from_string(cat.severity),
            description=cat.description,
        ))

    out = _open_output(args.output)
    try:
        total = write_reports(batches, args.format, out)
    finally:
        if out is not sys.stdout:
            out.close()

    return EXIT_FINDINGS if total else EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Validate a flow-graph file."""
    graph = _load_graph(args.graph)
    print(f"{args.graph}: ok ({len(list(graph.routines()))} routines, "
          f"{len(graph)} nodes, {len(list(graph.edges()))} edges)")
    return EXIT_OK


def cmd_check_catalogue(args: argparse.Namespace) -> int:
    """Validate a catalogue file."""
    path = _resolve_path(args.catalogue, "catalogue")
    cat = load_catalogue(path)
    print(f"{args.catalogue}: ok (catalogue {cat.name}: "
          f"{len(cat.source_rules)} source pair(s), "
          f"{len(cat.sink_rules)} sink pair(s), "
          f"{len(cat.barriers)} barrier(s))")
    return EXIT_OK


def cmd_dot(args: argparse.Namespace) -> int:
    """Print the flow graph in Graphviz DOT syntax."""
    graph = _load_graph(args.graph)
    out = _open_output(args.output)
    try:
        out.write(graph.to_dot(title=args.title) + "\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dualflow",
        description="Correlate pairs of taint flows that cross calls in lockstep.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v INFO, -vv DEBUG).",
    )
    subparsers = parser.add_subparsers(title="commands", metavar="COMMAND")

    # --- analyze -----------------------------------------------------------
    p_analyze = subparsers.add_parser(
        "analyze",
        help="Report correlated flow pairs.",
        description=(
            "Build the two flow instances declared by each catalogue and "
            "report every correlated source pair that reaches a sink pair."
        ),
    )
    p_analyze.add_argument("graph", metavar="GRAPH", help="Flow graph (.json).")
    p_analyze.add_argument(
        "-c", "--catalogue",
        metavar="FILE",
        action="append",
        required=True,
        help="Pair catalogue (.sexp); may be repeated.",
    )
    p_analyze.add_argument(
        "-f", "--format",
        choices=[f.value for f in ReportFormat],
        default=ReportFormat.TEXT.value,
        help="Output format (default: text).",
    )
    p_analyze.add_argument(
        "-o", "--output",
        metavar="FILE",
        default=None,
        help="Write output to FILE instead of stdout.",
    )
    p_analyze.add_argument(
        "--policy",
        choices=[p.value for p in SyncPolicy],
        default=SyncPolicy.ROUTINE.value,
        help="What a joint call transition must agree on (default: routine).",
    )
    p_analyze.add_argument(
        "--call-depth",
        type=int,
        default=3,
        metavar="K",
        help="Call-string bound for the flow instances (default: 3).",
    )
    p_analyze.add_argument(
        "--max-quadruples",
        type=int,
        default=0,
        metavar="N",
        help="Stop exploring after N quadruples (default: unbounded).",
    )
    p_analyze.set_defaults(func=cmd_analyze)

    # --- check -------------------------------------------------------------
    p_check = subparsers.add_parser("check", help="Validate a flow graph.")
    p_check.add_argument("graph", metavar="GRAPH", help="Flow graph (.json).")
    p_check.set_defaults(func=cmd_check)

    # --- check-catalogue ---------------------------------------------------
    p_cat = subparsers.add_parser("check-catalogue", help="Validate a catalogue.")
    p_cat.add_argument("catalogue", metavar="FILE", help="Pair catalogue (.sexp).")
    p_cat.set_defaults(func=cmd_check_catalogue)

    # --- dot ---------------------------------------------------------------
    p_dot = subparsers.add_parser("dot", help="Render a flow graph as DOT.")
    p_dot.add_argument("graph", metavar="GRAPH", help="Flow graph (.json).")
    p_dot.add_argument("-o", "--output", metavar="FILE", default=None)
    p_dot.add_argument("--title", default=None)
    p_dot.set_defaults(func=cmd_dot)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the dualflow CLI.

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

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except DualflowError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except OSError as exc:
        _log.error("I/O error: %s", exc)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
