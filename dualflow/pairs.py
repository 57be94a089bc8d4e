"""
dualflow.pairs
==============

Pair-declaration interface.

A client declares which *pairs* of flow nodes are interesting as joint
sources and joint sinks.  Each relation only ever relates two nodes of the
same routine.  From the two relations this module derives ordinary
single-flow source/sink predicates, one set per side:

- a node is a source of flow **A** iff it is the first member of some
  source pair, a source of flow **B** iff it is the second member;
- sinks are derived the same way from the sink pairs.

The two flow instances can then be computed with plain single-source /
single-sink reachability (:func:`dualflow.path_graph.build_path_graph`)
and all correlation is left to :mod:`dualflow.correlation`.

Partners are only searched inside the candidate's own routine, so a
declared pair whose members live in different routines contributes
nothing.  This is not checked or reported.
"""

from __future__ import annotations

import abc
import enum
from typing import AbstractSet, FrozenSet, Iterable, Optional, Set, Tuple

from .flowgraph import FlowGraph, FlowNode


class Side(enum.Enum):
    """Which of the two flow instances a projection describes."""

    A = "A"
    B = "B"


class PairConfig(abc.ABC):
    """Client-supplied declaration of correlated source and sink pairs."""

    @abc.abstractmethod
    def is_source_pair(self, a: FlowNode, b: FlowNode) -> bool:
        """Holds if *a* (flow A) and *b* (flow B) are a joint source."""

    @abc.abstractmethod
    def is_sink_pair(self, a: FlowNode, b: FlowNode) -> bool:
        """Holds if *a* (flow A) and *b* (flow B) are a joint sink."""

    def is_barrier_a(self, node: FlowNode) -> bool:
        return False

    def is_barrier_b(self, node: FlowNode) -> bool:
        return False

    def describe(self, source1: FlowNode, source2: FlowNode,
                 sink1: FlowNode, sink2: FlowNode) -> str:
        """Text attached to a finding."""
        return (
            f"correlated flows {source1} -> {sink1} and {source2} -> {sink2}"
        )


class PairTable(PairConfig):
    """A :class:`PairConfig` backed by explicit sets of node-id pairs."""

    def __init__(
        self,
        source_pairs: Iterable[Tuple[str, str]] = (),
        sink_pairs: Iterable[Tuple[str, str]] = (),
        barriers_a: Iterable[str] = (),
        barriers_b: Iterable[str] = (),
    ) -> None:
        self.source_pairs: Set[Tuple[str, str]] = set(source_pairs)
        self.sink_pairs: Set[Tuple[str, str]] = set(sink_pairs)
        self.barriers_a: Set[str] = set(barriers_a)
        self.barriers_b: Set[str] = set(barriers_b)

    def add_source_pair(self, a: str, b: str) -> "PairTable":
        self.source_pairs.add((a, b))
        return self

    def add_sink_pair(self, a: str, b: str) -> "PairTable":
        self.sink_pairs.add((a, b))
        return self

    def is_source_pair(self, a: FlowNode, b: FlowNode) -> bool:
        return (a.id, b.id) in self.source_pairs

    def is_sink_pair(self, a: FlowNode, b: FlowNode) -> bool:
        return (a.id, b.id) in self.sink_pairs

    def is_barrier_a(self, node: FlowNode) -> bool:
        return node.id in self.barriers_a

    def is_barrier_b(self, node: FlowNode) -> bool:
        return node.id in self.barriers_b

    def __repr__(self) -> str:
        return (
            f"PairTable(source_pairs={len(self.source_pairs)}, "
            f"sink_pairs={len(self.sink_pairs)})"
        )


class FlowProjection:
    """Single-flow view of a :class:`PairConfig` for one side.

    Satisfies :class:`dualflow.path_graph.FlowConfig`.
    """

    def __init__(
        self,
        pairs: PairConfig,
        side: Side,
        sources: AbstractSet[str],
        sinks: AbstractSet[str],
    ) -> None:
        self.pairs = pairs
        self.side = side
        self.source_ids: FrozenSet[str] = frozenset(sources)
        self.sink_ids: FrozenSet[str] = frozenset(sinks)

    def is_source(self, node: FlowNode) -> bool:
        return node.id in self.source_ids

    def is_sink(self, node: FlowNode) -> bool:
        return node.id in self.sink_ids

    def is_barrier(self, node: FlowNode) -> bool:
        if self.side is Side.A:
            return self.pairs.is_barrier_a(node)
        return self.pairs.is_barrier_b(node)

    def __repr__(self) -> str:
        return (
            f"FlowProjection({self.side.value}, sources={len(self.source_ids)}, "
            f"sinks={len(self.sink_ids)})"
        )


def _members(graph: FlowGraph, relation) -> Tuple[Set[str], Set[str]]:
    firsts: Set[str] = set()
    seconds: Set[str] = set()
    for routine in graph.routines():
        local = graph.nodes_in(routine)
        for a in local:
            for b in local:
                if relation(a, b):
                    firsts.add(a.id)
                    seconds.add(b.id)
    return firsts, seconds


def project(
    pairs: PairConfig,
    graph: FlowGraph,
    side: Optional[Side] = None,
):
    """Derive the single-flow configurations of *pairs* over *graph*.

    Returns ``(projection_a, projection_b)``, or just the requested one
    when *side* is given.
    """
    src_a, src_b = _members(graph, pairs.is_source_pair)
    snk_a, snk_b = _members(graph, pairs.is_sink_pair)
    proj_a = FlowProjection(pairs, Side.A, src_a, snk_a)
    proj_b = FlowProjection(pairs, Side.B, src_b, snk_b)
    if side is Side.A:
        return proj_a
    if side is Side.B:
        return proj_b
    return proj_a, proj_b


__all__ = [
    "Side",
    "PairConfig",
    "PairTable",
    "FlowProjection",
    "project",
]
