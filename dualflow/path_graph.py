#!/usr/bin/env python3
"""
path_graph.py  –  Single-source/single-sink reachability with path reconstruction.

This is the reference *Path-Graph Primitive* the correlation engine is
instantiated over.  Given a :class:`~dualflow.flowgraph.FlowGraph` and a
:class:`FlowConfig` (source / sink / barrier predicates) it computes every
realizable path from a source to a sink and exposes the result as a graph
of :class:`PathNode` objects.

Path nodes
----------
A path node is a *(flow node, calling context)* pair.  The context is a
bounded call string (:class:`CallString`), so the number of path nodes is
finite even for recursive programs.  Path nodes are interned per
:class:`PathGraph`: there is exactly one object per (node, context) and
identity comparison is sufficient.

Construction
------------
1. Forward worklist from every source at the empty context.

   ======== =====================================================
   LOCAL    context unchanged
   CALL     push the edge's call site (left-truncated to *k*)
   RETURN   pop if the top matches; reject a mismatch; an empty
            context returns to any caller
   JUMP     reset to the empty context
   ======== =====================================================

   Barrier nodes are never entered.

2. Backward pass from every sink.  Path nodes that cannot reach a sink are
   discarded together with their edges.

Any object offering the same query surface (``nodes``, ``sources``,
``successors``, ``PathNode.routine`` ...) can stand in for
:class:`PathGraph` when driving the engine.

Licence: MIT
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from .flowgraph import EdgeKind, FlowEdge, FlowGraph, FlowNode, Routine

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Calling contexts
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CallString:
    """A bounded call-string of depth ≤ *k*.

    Stored as a tuple of call-site identifiers, most recent call last.
    When the string grows beyond *k* the oldest entries are discarded.
    """

    sites: Tuple[str, ...] = ()
    k: int = 3

    @classmethod
    def empty(cls, k: int = 3) -> "CallString":
        return cls(sites=(), k=k)

    @property
    def top(self) -> Optional[str]:
        return self.sites[-1] if self.sites else None

    def extend(self, call_site: str) -> "CallString":
        """Push *call_site* and truncate to *k*."""
        new_sites = (*self.sites, call_site)
        if len(new_sites) > self.k:
            new_sites = new_sites[len(new_sites) - self.k:]
        return CallString(sites=new_sites, k=self.k)

    def pop(self) -> "CallString":
        return CallString(sites=self.sites[:-1], k=self.k)

    def __bool__(self) -> bool:
        return bool(self.sites)

    def __repr__(self) -> str:
        inner = ", ".join(self.sites)
        return f"CS<{inner}>"


def step_context(ctx: CallString, edge: FlowEdge) -> Optional[CallString]:
    """Return the context after taking *edge*, or ``None`` if unrealizable."""
    if edge.kind is EdgeKind.LOCAL:
        return ctx
    if edge.kind is EdgeKind.CALL:
        return ctx.extend(edge.call_site)
    if edge.kind is EdgeKind.RETURN:
        if not ctx:
            return ctx
        if ctx.top == edge.call_site:
            return ctx.pop()
        return None
    return CallString.empty(ctx.k)


# ═══════════════════════════════════════════════════════════════════════
#  Configuration protocol
# ═══════════════════════════════════════════════════════════════════════

@runtime_checkable
class FlowConfig(Protocol):
    """Source / sink / barrier predicates for one flow instance."""

    def is_source(self, node: FlowNode) -> bool: ...

    def is_sink(self, node: FlowNode) -> bool: ...

    def is_barrier(self, node: FlowNode) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════
#  Path nodes
# ═══════════════════════════════════════════════════════════════════════

class PathNode:
    """An occurrence of a flow node under one calling context."""

    __slots__ = ("_graph", "_node", "_context", "_source", "_sink", "_index")

    def __init__(
        self,
        graph: "PathGraph",
        node: FlowNode,
        context: CallString,
        index: int,
    ) -> None:
        self._graph = graph
        self._node = node
        self._context = context
        self._source = False
        self._sink = False
        self._index = index

    @property
    def node(self) -> FlowNode:
        return self._node

    @property
    def context(self) -> CallString:
        return self._context

    @property
    def index(self) -> int:
        """Discovery order inside the owning graph (stable across runs)."""
        return self._index

    @property
    def graph(self) -> "PathGraph":
        return self._graph

    def underlying_node(self) -> FlowNode:
        return self._node

    def routine(self) -> Routine:
        return self._node.routine

    def successors(self) -> Tuple["PathNode", ...]:
        return self._graph.successors(self)

    def is_source_flagged(self) -> bool:
        return self._source

    def is_sink_flagged(self) -> bool:
        return self._sink

    def __repr__(self) -> str:
        return f"PathNode[{self._graph.name}]({self._node}, {self._context!r})"


# ═══════════════════════════════════════════════════════════════════════
#  Path graph
# ═══════════════════════════════════════════════════════════════════════

class PathGraph:
    """All realizable source→sink paths of one flow instance."""

    def __init__(self, name: str, config: FlowConfig, call_depth: int) -> None:
        self.name = name
        self.config = config
        self.call_depth = call_depth
        self._interned: Dict[Tuple[str, Tuple[str, ...]], PathNode] = {}
        self._succ: Dict[PathNode, Dict[PathNode, FlowEdge]] = {}
        self._pred: Dict[PathNode, Dict[PathNode, FlowEdge]] = {}

    # -- construction -------------------------------------------------------

    def _intern(self, node: FlowNode, ctx: CallString) -> Tuple[PathNode, bool]:
        key = (node.id, ctx.sites)
        pn = self._interned.get(key)
        if pn is not None:
            return pn, False
        pn = PathNode(self, node, ctx, len(self._interned))
        self._interned[key] = pn
        self._succ[pn] = {}
        self._pred[pn] = {}
        return pn, True

    def _link(self, src: PathNode, dst: PathNode, edge: FlowEdge) -> None:
        if dst not in self._succ[src]:
            self._succ[src][dst] = edge
            self._pred[dst][src] = edge

    def _prune(self) -> None:
        """Drop every path node that cannot reach a sink."""
        alive: Dict[PathNode, None] = {}
        queue: Deque[PathNode] = deque()
        for pn in self._interned.values():
            if pn._sink:
                alive[pn] = None
                queue.append(pn)
        while queue:
            cur = queue.popleft()
            for pred in self._pred[cur]:
                if pred not in alive:
                    alive[pred] = None
                    queue.append(pred)

        dead = len(self._interned) - len(alive)
        self._interned = {
            k: pn for k, pn in self._interned.items() if pn in alive
        }
        self._succ = {
            pn: {s: e for s, e in succ.items() if s in alive}
            for pn, succ in self._succ.items() if pn in alive
        }
        self._pred = {
            pn: {p: e for p, e in pred.items() if p in alive}
            for pn, pred in self._pred.items() if pn in alive
        }
        logger.debug("%s: pruned %d path nodes that reach no sink", self.name, dead)

    # -- queries ------------------------------------------------------------

    def nodes(self) -> Iterator[PathNode]:
        return iter(self._interned.values())

    def sources(self) -> Tuple[PathNode, ...]:
        return tuple(pn for pn in self._interned.values() if pn._source)

    def sinks(self) -> Tuple[PathNode, ...]:
        return tuple(pn for pn in self._interned.values() if pn._sink)

    def successors(self, pn: PathNode) -> Tuple[PathNode, ...]:
        return tuple(self._succ.get(pn, ()))

    def predecessors(self, pn: PathNode) -> Tuple[PathNode, ...]:
        return tuple(self._pred.get(pn, ()))

    def edge(self, pn: PathNode, succ: PathNode) -> FlowEdge:
        """The flow edge behind the step ``pn → succ``."""
        try:
            return self._succ[pn][succ]
        except KeyError:
            raise KeyError(f"no step {pn!r} -> {succ!r} in {self.name}") from None

    def lookup(
        self, node_id: str, context: Optional[CallString] = None
    ) -> Optional[PathNode]:
        sites = context.sites if context is not None else ()
        return self._interned.get((node_id, sites))

    def occurrences(self, node_id: str) -> Tuple[PathNode, ...]:
        """Every path node built over flow node *node_id*, in any context."""
        return tuple(
            pn for (nid, _), pn in self._interned.items() if nid == node_id
        )

    def path_to(self, target: PathNode) -> Tuple[PathNode, ...]:
        """A shortest trace from some source-flagged node to *target*.

        Returns an empty tuple when *target* is not reachable from a source
        (which cannot happen for nodes of a fully built graph).
        """
        parent: Dict[PathNode, Optional[PathNode]] = {target: None}
        queue: Deque[PathNode] = deque([target])
        while queue:
            cur = queue.popleft()
            if cur._source:
                trace: List[PathNode] = [cur]
                nxt = parent[cur]
                while nxt is not None:
                    trace.append(nxt)
                    nxt = parent[nxt]
                return tuple(trace)
            for pred in self._pred.get(cur, ()):
                if pred not in parent:
                    parent[pred] = cur
                    queue.append(pred)
        return ()

    def __contains__(self, pn: object) -> bool:
        return pn in self._succ

    def __len__(self) -> int:
        return len(self._interned)

    def __repr__(self) -> str:
        return (
            f"PathGraph({self.name!r}, nodes={len(self)}, "
            f"sources={len(self.sources())}, sinks={len(self.sinks())})"
        )


def build_path_graph(
    graph: FlowGraph,
    config: FlowConfig,
    *,
    name: str = "A",
    call_depth: int = 3,
) -> PathGraph:
    """Compute the path graph of *config* over *graph*."""
    pg = PathGraph(name, config, call_depth)
    worklist: Deque[PathNode] = deque()

    for node in graph.nodes():
        if config.is_source(node):
            pn, _ = pg._intern(node, CallString.empty(call_depth))
            pn._source = True
            worklist.append(pn)

    while worklist:
        pn = worklist.popleft()
        if config.is_sink(pn.node):
            pn._sink = True
        if config.is_barrier(pn.node):
            continue
        for edge in graph.out_edges(pn.node):
            dst = graph.node(edge.dst)
            if config.is_barrier(dst):
                continue
            ctx = step_context(pn.context, edge)
            if ctx is None:
                continue
            succ, new = pg._intern(dst, ctx)
            pg._link(pn, succ, edge)
            if new:
                worklist.append(succ)

    explored = len(pg)
    pg._prune()
    logger.info(
        "path graph %s: %d path nodes explored, %d on source-sink paths",
        name, explored, len(pg),
    )
    return pg


__all__ = [
    "CallString",
    "step_context",
    "FlowConfig",
    "PathNode",
    "PathGraph",
    "build_path_graph",
]
