"""
dualflow — Dual-Path Taint Correlation
======================================

Finds correlated pairs of taint paths: two independent flows that start at
a related pair of sources, end at a related pair of sinks, and cross the
call graph in lockstep so that at every synchronized checkpoint both flows
are inside the same routine.

Core modules
------------
errors
    Exception hierarchy.
flowgraph
    Whole-program value-flow graph (routines, flow nodes, call/return edges).
path_graph
    Single-source/single-sink reachability with path reconstruction.
pairs
    Source-pair / sink-pair declarations and their single-flow projections.
correlation
    The synchronized-product engine producing correlated quadruples.
catalogue
    S-expression catalogues of pair declarations.
report
    Text / JSON / SARIF rendering of findings.

Quick start
-----------
>>> from dualflow import FlowGraph, FlowNode, Routine, PairTable, correlate
>>> g = FlowGraph()
>>> f = Routine("f")
>>> for nid in ("a", "b", "x", "y"):
...     _ = g.add_node(FlowNode(nid, f))
>>> _ = g.add_edge("a", "x"); _ = g.add_edge("b", "y")
>>> pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("x", "y")})
>>> len(correlate(g, pairs).findings())
1
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__author__ = "dualflow contributors"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_re-export)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "DualflowError",
        "GraphError",
        "CatalogueError",
        "InvariantViolation",
    ],
    "flowgraph": [
        "Routine",
        "FlowNode",
        "FlowEdge",
        "FlowGraph",
        "NodeKind",
        "EdgeKind",
        "load_flowgraph",
    ],
    "path_graph": [
        "CallString",
        "PathNode",
        "PathGraph",
        "build_path_graph",
    ],
    "pairs": [
        "Side",
        "PairConfig",
        "PairTable",
        "FlowProjection",
        "project",
    ],
    "correlation": [
        "SyncPolicy",
        "CorrelationConfig",
        "StepKind",
        "Quadruple",
        "Finding",
        "CorrelationResult",
        "CorrelationEngine",
        "correlate",
    ],
    "catalogue": [
        "Catalogue",
        "parse_catalogue",
        "load_catalogue",
    ],
    "report": [
        "RuleFindings",
        "write_reports",
        "write_report",
        "SarifBuilder",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"dualflow: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(
                f"dualflow.{module_rel_name} does not export '{name}'"
            )
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all re-exported submodules."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

# ---------------------------------------------------------------------------
# Re-declarations for static type checkers
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        DualflowError as DualflowError,
        GraphError as GraphError,
        CatalogueError as CatalogueError,
        InvariantViolation as InvariantViolation,
    )
    from .flowgraph import (
        Routine as Routine,
        FlowNode as FlowNode,
        FlowEdge as FlowEdge,
        FlowGraph as FlowGraph,
        NodeKind as NodeKind,
        EdgeKind as EdgeKind,
        load_flowgraph as load_flowgraph,
    )
    from .path_graph import (
        CallString as CallString,
        PathNode as PathNode,
        PathGraph as PathGraph,
        build_path_graph as build_path_graph,
    )
    from .pairs import (
        Side as Side,
        PairConfig as PairConfig,
        PairTable as PairTable,
        FlowProjection as FlowProjection,
        project as project,
    )
    from .correlation import (
        SyncPolicy as SyncPolicy,
        CorrelationConfig as CorrelationConfig,
        StepKind as StepKind,
        Quadruple as Quadruple,
        Finding as Finding,
        CorrelationResult as CorrelationResult,
        CorrelationEngine as CorrelationEngine,
        correlate as correlate,
    )
    from .catalogue import (
        Catalogue as Catalogue,
        parse_catalogue as parse_catalogue,
        load_catalogue as load_catalogue,
    )
    from .report import (
        RuleFindings as RuleFindings,
        write_reports as write_reports,
        write_report as write_report,
        SarifBuilder as SarifBuilder,
    )
