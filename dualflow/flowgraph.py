"""
dualflow.flowgraph
==================

Whole-program value-flow graph consumed by the path-graph builder.

The graph is a directed graph where:

- **Nodes** are occurrences of a value at a program point
  (:class:`FlowNode`).  Every node belongs to exactly one
  :class:`Routine`.
- **Edges** are single propagation steps (:class:`FlowEdge`), classified by
  how they interact with the call stack.

Edge kinds
----------
``LOCAL``
    A step inside one routine.  Both endpoints must share a routine.
``CALL``
    Argument → parameter.  Pushes ``call_site`` onto the calling context.
``RETURN``
    Return value → call result.  Pops ``call_site`` from the context.
``JUMP``
    A context-free step between routines (e.g. through a global variable).

Typical usage::

    from dualflow.flowgraph import FlowGraph, Routine, FlowNode, EdgeKind

    g = FlowGraph()
    main = g.add_routine(Routine("main"))
    g.add_node(FlowNode("a", main, label="getenv()"))
    g.add_node(FlowNode("b", main, label="system(x)"))
    g.add_edge("a", "b")
    print(g.to_dot())

Graphs are fully built before analysis starts and are never mutated while
an analysis is running.
"""

from __future__ import annotations

import enum
import json
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from .errors import GraphError


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """What a flow node represents."""

    EXPR        = "expr"
    PARAMETER   = "parameter"
    ARGUMENT    = "argument"
    RETURN      = "return"
    CALL_RESULT = "call-result"


class EdgeKind(enum.Enum):
    """How a flow edge interacts with the calling context."""

    LOCAL  = "local"
    CALL   = "call"
    RETURN = "return"
    JUMP   = "jump"


# ---------------------------------------------------------------------------
# Nodes and edges
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Routine:
    """A function or method body; the unit of call-context alignment."""

    name: str
    file: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class FlowNode:
    """A value at a program point.

    Attributes
    ----------
    id : str
        Unique identifier within the graph.
    routine : Routine
        Enclosing routine.
    label : str
        Human-readable text (usually the source expression).
    kind : NodeKind
        Classification of the node.
    call_site : str or None
        For ``ARGUMENT``/``CALL_RESULT`` nodes, the call this value belongs to.
    callee : str or None
        Name of the called routine for ``ARGUMENT``/``CALL_RESULT`` nodes.
    arg_index : int
        Argument position for ``ARGUMENT`` nodes, ``-1`` otherwise.
    """

    id: str
    routine: Routine
    label: str = ""
    kind: NodeKind = NodeKind.EXPR
    call_site: Optional[str] = None
    callee: Optional[str] = None
    arg_index: int = -1
    file: str = ""
    line: int = 0

    @property
    def location(self) -> str:
        f = self.file or self.routine.file
        if self.line:
            return f"{f}:{self.line}"
        return f or self.routine.name

    def __str__(self) -> str:
        return f"{self.routine.name}:{self.label or self.id}"


@dataclass(frozen=True, slots=True)
class FlowEdge:
    """One propagation step ``src → dst``."""

    src: str
    dst: str
    kind: EdgeKind = EdgeKind.LOCAL
    call_site: Optional[str] = None

    def __repr__(self) -> str:
        site = f"@{self.call_site}" if self.call_site else ""
        return f"{self.src} -{self.kind.value}{site}-> {self.dst}"


# ---------------------------------------------------------------------------
# FlowGraph
# ---------------------------------------------------------------------------

class FlowGraph:
    """The whole-program value-flow graph."""

    def __init__(self) -> None:
        self._routines: Dict[str, Routine] = OrderedDict()
        self._nodes: Dict[str, FlowNode] = OrderedDict()
        self._by_routine: Dict[Routine, List[FlowNode]] = defaultdict(list)
        self._succ: Dict[str, List[FlowEdge]] = defaultdict(list)
        self._pred: Dict[str, List[FlowEdge]] = defaultdict(list)
        self._edges: List[FlowEdge] = []

    # -- construction -------------------------------------------------------

    def add_routine(self, routine: Routine) -> Routine:
        """Register *routine*; registering an identical routine is a no-op."""
        existing = self._routines.get(routine.name)
        if existing is not None:
            if existing != routine:
                raise GraphError(f"conflicting definitions of routine {routine.name!r}")
            return existing
        self._routines[routine.name] = routine
        return routine

    def add_node(self, node: FlowNode) -> FlowNode:
        if node.id in self._nodes:
            raise GraphError(f"duplicate node id {node.id!r}")
        self.add_routine(node.routine)
        self._nodes[node.id] = node
        self._by_routine[node.routine].append(node)
        return node

    def add_edge(
        self,
        src: str,
        dst: str,
        kind: EdgeKind = EdgeKind.LOCAL,
        call_site: Optional[str] = None,
    ) -> FlowEdge:
        """Add a propagation edge between two existing nodes."""
        s = self.node(src)
        d = self.node(dst)
        if kind in (EdgeKind.CALL, EdgeKind.RETURN) and not call_site:
            raise GraphError(f"{kind.value} edge {src} -> {dst} needs a call site")
        if kind is EdgeKind.LOCAL and s.routine != d.routine:
            raise GraphError(
                f"local edge {src} -> {dst} crosses routines "
                f"({s.routine.name} -> {d.routine.name})"
            )
        edge = FlowEdge(src, dst, kind, call_site)
        self._succ[src].append(edge)
        self._pred[dst].append(edge)
        self._edges.append(edge)
        return edge

    # -- queries ------------------------------------------------------------

    def node(self, node_id: str) -> FlowNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphError(f"unknown node id {node_id!r}") from None

    def nodes(self) -> Iterator[FlowNode]:
        return iter(self._nodes.values())

    def routines(self) -> Iterator[Routine]:
        return iter(self._routines.values())

    def routine(self, name: str) -> Routine:
        try:
            return self._routines[name]
        except KeyError:
            raise GraphError(f"unknown routine {name!r}") from None

    def nodes_in(self, routine: Routine) -> Tuple[FlowNode, ...]:
        return tuple(self._by_routine.get(routine, ()))

    def out_edges(self, node: Union[FlowNode, str]) -> Tuple[FlowEdge, ...]:
        nid = node.id if isinstance(node, FlowNode) else node
        return tuple(self._succ.get(nid, ()))

    def in_edges(self, node: Union[FlowNode, str]) -> Tuple[FlowEdge, ...]:
        nid = node.id if isinstance(node, FlowNode) else node
        return tuple(self._pred.get(nid, ()))

    def edges(self) -> Iterator[FlowEdge]:
        return iter(self._edges)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return (
            f"FlowGraph(routines={len(self._routines)}, "
            f"nodes={len(self._nodes)}, edges={len(self._edges)})"
        )

    # -- serialisation ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-compatible representation (inverse of :meth:`from_dict`)."""
        return {
            "routines": [
                {"name": r.name, "file": r.file} for r in self._routines.values()
            ],
            "nodes": [
                {
                    "id": n.id,
                    "routine": n.routine.name,
                    "label": n.label,
                    "kind": n.kind.value,
                    "call_site": n.call_site,
                    "callee": n.callee,
                    "arg_index": n.arg_index,
                    "file": n.file,
                    "line": n.line,
                }
                for n in self._nodes.values()
            ],
            "edges": [
                {
                    "src": e.src,
                    "dst": e.dst,
                    "kind": e.kind.value,
                    "call_site": e.call_site,
                }
                for e in self._edges
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlowGraph":
        """Build a graph from the JSON document shape produced by :meth:`to_dict`.

        Routines referenced by nodes but not listed under ``"routines"`` are
        created implicitly.
        """
        if not isinstance(data, Mapping):
            raise GraphError("flow graph document must be a JSON object")
        g = cls()
        try:
            for r in data.get("routines", ()):
                g.add_routine(Routine(r["name"], r.get("file", "")))
            for n in data.get("nodes", ()):
                rname = n["routine"]
                routine = g._routines.get(rname) or g.add_routine(Routine(rname))
                g.add_node(FlowNode(
                    id=str(n["id"]),
                    routine=routine,
                    label=n.get("label", ""),
                    kind=NodeKind(n.get("kind", NodeKind.EXPR.value)),
                    call_site=n.get("call_site"),
                    callee=n.get("callee"),
                    arg_index=int(n.get("arg_index", -1)),
                    file=n.get("file", ""),
                    line=int(n.get("line", 0)),
                ))
            for e in data.get("edges", ()):
                g.add_edge(
                    str(e["src"]),
                    str(e["dst"]),
                    EdgeKind(e.get("kind", EdgeKind.LOCAL.value)),
                    e.get("call_site"),
                )
        except KeyError as exc:
            raise GraphError(f"missing required field {exc.args[0]!r}") from exc
        except (TypeError, ValueError) as exc:
            raise GraphError(f"malformed flow graph: {exc}") from exc
        return g

    # -- rendering ----------------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation, one cluster per routine."""
        lines = ["digraph FlowGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{_dot_escape(title)}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        for i, routine in enumerate(self._routines.values()):
            lines.append(f"  subgraph cluster_{i} {{")
            lines.append(f'    label="{_dot_escape(routine.name)}";')
            for n in self._by_routine.get(routine, ()):
                lines.append(
                    f'    "{_dot_escape(n.id)}" '
                    f'[label="{_dot_escape(n.label or n.id)}"];'
                )
            lines.append("  }")

        edge_attrs = {
            EdgeKind.LOCAL: "",
            EdgeKind.CALL: ", style=dashed, color=blue",
            EdgeKind.RETURN: ", style=dashed, color=darkgreen",
            EdgeKind.JUMP: ", style=dotted, color=red",
        }
        for e in self._edges:
            elabel = e.kind.value
            if e.call_site:
                elabel += f"@{e.call_site}"
            lines.append(
                f'  "{_dot_escape(e.src)}" -> "{_dot_escape(e.dst)}" '
                f'[label="{_dot_escape(elabel)}"{edge_attrs[e.kind]}];'
            )
        lines.append("}")
        return "\n".join(lines)


def _dot_escape(text: str) -> str:
    return text.replace('"', '\\"')


def load_flowgraph(path: Union[str, Path]) -> FlowGraph:
    """Read a flow graph from a JSON file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except UnicodeDecodeError as exc:
        raise GraphError(f"{p}: not valid UTF-8: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise GraphError(f"{p}: invalid JSON: {exc}") from exc
    return FlowGraph.from_dict(data)


__all__ = [
    "NodeKind",
    "EdgeKind",
    "Routine",
    "FlowNode",
    "FlowEdge",
    "FlowGraph",
    "load_flowgraph",
]
