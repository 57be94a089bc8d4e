# tests/conftest.py
"""
Shared fixtures and graph builders for the dualflow test-suite.

The builders return ``(graph, pairs)`` tuples so that tests can tweak the
pair table before correlating.  They are importable as plain functions::

    from tests.conftest import build_caller_callee
"""

from __future__ import annotations

import random
from typing import Dict, List, Set, Tuple

import pytest

from dualflow.flowgraph import EdgeKind, FlowGraph, FlowNode, NodeKind, Routine
from dualflow.pairs import PairTable


# ─────────────────────────────────────────────────────────────────────────
#  Small helpers
# ─────────────────────────────────────────────────────────────────────────

def add_nodes(g: FlowGraph, routine: Routine, *ids: str, **attrs) -> None:
    for nid in ids:
        g.add_node(FlowNode(nid, routine, label=nid, **attrs))


def argument(g: FlowGraph, nid: str, routine: Routine, site: str,
             callee: str, index: int) -> FlowNode:
    return g.add_node(FlowNode(
        nid, routine, label=f"{callee}#{index}", kind=NodeKind.ARGUMENT,
        call_site=site, callee=callee, arg_index=index,
    ))


def parameter(g: FlowGraph, nid: str, routine: Routine) -> FlowNode:
    return g.add_node(FlowNode(nid, routine, label=nid, kind=NodeKind.PARAMETER))


# ─────────────────────────────────────────────────────────────────────────
#  Canonical scenarios
# ─────────────────────────────────────────────────────────────────────────

def build_single_routine() -> Tuple[FlowGraph, PairTable]:
    """Both flows stay in ``f``: a → m0 → k0 and b → m1 → k1."""
    g = FlowGraph()
    f = g.add_routine(Routine("f", "single.c"))
    add_nodes(g, f, "a", "b", "m0", "m1", "k0", "k1")
    g.add_edge("a", "m0")
    g.add_edge("m0", "k0")
    g.add_edge("b", "m1")
    g.add_edge("m1", "k1")
    pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("k0", "k1")})
    return g, pairs


def build_caller_callee() -> Tuple[FlowGraph, PairTable]:
    """Both values are passed to ``helper`` through the same call ``c1``.

    ``helper`` forwards its two parameters to the two arguments of one
    ``addCookie`` call (``c2``).
    """
    g = FlowGraph()
    caller = g.add_routine(Routine("caller", "app.c"))
    helper = g.add_routine(Routine("helper", "app.c"))
    add_nodes(g, caller, "a", "b")
    argument(g, "arg0", caller, "c1", "helper", 0)
    argument(g, "arg1", caller, "c1", "helper", 1)
    parameter(g, "p0", helper)
    parameter(g, "p1", helper)
    argument(g, "k0", helper, "c2", "addCookie", 0)
    argument(g, "k1", helper, "c2", "addCookie", 1)

    g.add_edge("a", "arg0")
    g.add_edge("b", "arg1")
    g.add_edge("arg0", "p0", EdgeKind.CALL, "c1")
    g.add_edge("arg1", "p1", EdgeKind.CALL, "c1")
    g.add_edge("p0", "k0")
    g.add_edge("p1", "k1")
    pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("k0", "k1")})
    return g, pairs


def build_divergent_callees() -> Tuple[FlowGraph, PairTable]:
    """The two values are passed to two different callees.

    Each callee holds a complete sink pair, and each flow on its own does
    reach one member of a sink pair, but never inside the same routine.
    """
    g = FlowGraph()
    caller = g.add_routine(Routine("caller"))
    left = g.add_routine(Routine("left"))
    right = g.add_routine(Routine("right"))
    add_nodes(g, caller, "a", "b")
    argument(g, "arg0", caller, "c1", "left", 0)
    argument(g, "arg1", caller, "c2", "right", 0)
    parameter(g, "p0", left)
    parameter(g, "p1", right)
    add_nodes(g, left, "k0L", "k1L")
    add_nodes(g, right, "k0R", "k1R")

    g.add_edge("a", "arg0")
    g.add_edge("b", "arg1")
    g.add_edge("arg0", "p0", EdgeKind.CALL, "c1")
    g.add_edge("arg1", "p1", EdgeKind.CALL, "c2")
    g.add_edge("p0", "k0L")
    g.add_edge("p1", "k1R")
    pairs = PairTable(
        source_pairs={("a", "b")},
        sink_pairs={("k0L", "k1L"), ("k0R", "k1R")},
    )
    return g, pairs


def build_call_and_return() -> Tuple[FlowGraph, PairTable]:
    """Both values go through ``id2`` (call ``c1``) and come back."""
    g = FlowGraph()
    caller = g.add_routine(Routine("caller"))
    callee = g.add_routine(Routine("id2"))
    add_nodes(g, caller, "a", "b")
    argument(g, "arg0", caller, "c1", "id2", 0)
    argument(g, "arg1", caller, "c1", "id2", 1)
    add_nodes(g, caller, "r0", "r1", kind=NodeKind.CALL_RESULT,
              call_site="c1", callee="id2")
    argument(g, "k0", caller, "c9", "send", 0)
    argument(g, "k1", caller, "c9", "send", 1)
    parameter(g, "p0", callee)
    parameter(g, "p1", callee)
    add_nodes(g, callee, "ret0", "ret1", kind=NodeKind.RETURN)

    g.add_edge("a", "arg0")
    g.add_edge("b", "arg1")
    g.add_edge("arg0", "p0", EdgeKind.CALL, "c1")
    g.add_edge("arg1", "p1", EdgeKind.CALL, "c1")
    g.add_edge("p0", "ret0")
    g.add_edge("p1", "ret1")
    g.add_edge("ret0", "r0", EdgeKind.RETURN, "c1")
    g.add_edge("ret1", "r1", EdgeKind.RETURN, "c1")
    g.add_edge("r0", "k0")
    g.add_edge("r1", "k1")
    pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("k0", "k1")})
    return g, pairs


def build_separate_calls() -> Tuple[FlowGraph, PairTable]:
    """Both values reach ``helper``, but through two different calls."""
    g = FlowGraph()
    caller = g.add_routine(Routine("caller"))
    helper = g.add_routine(Routine("helper"))
    add_nodes(g, caller, "a", "b")
    argument(g, "arg0", caller, "c1", "helper", 0)
    argument(g, "arg1", caller, "c2", "helper", 1)
    parameter(g, "p0", helper)
    parameter(g, "p1", helper)
    add_nodes(g, helper, "k0", "k1")

    g.add_edge("a", "arg0")
    g.add_edge("b", "arg1")
    g.add_edge("arg0", "p0", EdgeKind.CALL, "c1")
    g.add_edge("arg1", "p1", EdgeKind.CALL, "c2")
    g.add_edge("p0", "k0")
    g.add_edge("p1", "k1")
    pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("k0", "k1")})
    return g, pairs


def build_global_jump(second_kind: EdgeKind = EdgeKind.JUMP) -> Tuple[FlowGraph, PairTable]:
    """Flow A leaves ``f`` through a global; flow B through *second_kind*."""
    g = FlowGraph()
    f = g.add_routine(Routine("f"))
    h = g.add_routine(Routine("h"))
    add_nodes(g, f, "a", "b")
    add_nodes(g, h, "x", "y", "k0", "k1")
    g.add_edge("a", "x", EdgeKind.JUMP)
    g.add_edge("b", "y", second_kind,
               None if second_kind is EdgeKind.JUMP else "c1")
    g.add_edge("x", "k0")
    g.add_edge("y", "k1")
    pairs = PairTable(source_pairs={("a", "b")}, sink_pairs={("k0", "k1")})
    return g, pairs


# ─────────────────────────────────────────────────────────────────────────
#  Random graphs
# ─────────────────────────────────────────────────────────────────────────

_CROSS_KINDS = (EdgeKind.CALL, EdgeKind.CALL, EdgeKind.RETURN, EdgeKind.JUMP)


def make_random_graph(
    seed: int,
    n_routines: int = 4,
    nodes_per_routine: int = 5,
    local_edges: int = 6,
    cross_edges: int = 6,
    n_source_pairs: int = 3,
    n_sink_pairs: int = 3,
) -> Tuple[FlowGraph, PairTable]:
    """A reproducible random flow graph with a random pair table.

    Local edges may form cycles.  Cross-routine edges draw their call sites
    from a small pool so that joint transitions and returns actually match.
    Pairs always relate two nodes of one routine, except for one extra
    cross-routine pair that must contribute nothing.
    """
    rng = random.Random(seed)
    g = FlowGraph()
    by_routine: Dict[str, List[str]] = {}
    for r in range(n_routines):
        routine = g.add_routine(Routine(f"r{r}"))
        ids = [f"r{r}n{j}" for j in range(nodes_per_routine)]
        add_nodes(g, routine, *ids)
        by_routine[routine.name] = ids

    names = sorted(by_routine)
    seen: Set[Tuple[str, str]] = set()
    for rname in names:
        ids = by_routine[rname]
        for _ in range(local_edges):
            src, dst = rng.choice(ids), rng.choice(ids)
            if src != dst and (src, dst) not in seen:
                seen.add((src, dst))
                g.add_edge(src, dst)

    sites = ("c0", "c1", "c2")
    for _ in range(cross_edges):
        r1, r2 = rng.sample(names, 2)
        src, dst = rng.choice(by_routine[r1]), rng.choice(by_routine[r2])
        if (src, dst) in seen:
            continue
        seen.add((src, dst))
        kind = rng.choice(_CROSS_KINDS)
        site = None if kind is EdgeKind.JUMP else rng.choice(sites)
        g.add_edge(src, dst, kind, site)

    pairs = PairTable()
    for _ in range(n_source_pairs):
        ids = by_routine[rng.choice(names)]
        pairs.add_source_pair(rng.choice(ids), rng.choice(ids))
    for _ in range(n_sink_pairs):
        ids = by_routine[rng.choice(names)]
        pairs.add_sink_pair(rng.choice(ids), rng.choice(ids))
    pairs.add_source_pair(by_routine[names[0]][0], by_routine[names[-1]][0])
    return g, pairs


def reference_quadruples(flow_a, flow_b, pairs) -> Set[tuple]:
    """Naive least fixpoint of the four derivation rules (routine policy)."""
    reached: Set[tuple] = set()
    for a in flow_a.sources():
        for b in flow_b.sources():
            if a.routine() == b.routine() and pairs.is_source_pair(a.node, b.node):
                reached.add((a, b, a, b))

    changed = True
    while changed:
        changed = False
        for s1, s2, n1, n2 in list(reached):
            new = set()
            for m1 in n1.successors():
                if m1.routine() == n2.routine():
                    new.add((s1, s2, m1, n2))
            for m2 in n2.successors():
                if m2.routine() == n1.routine():
                    new.add((s1, s2, n1, m2))
            for m1 in n1.successors():
                for m2 in n2.successors():
                    if m1.routine() == m2.routine() != n1.routine():
                        new.add((s1, s2, m1, m2))
            if not new <= reached:
                reached |= new
                changed = True
    return reached


# ─────────────────────────────────────────────────────────────────────────
#  Fixtures
# ─────────────────────────────────────────────────────────────────────────

@pytest.fixture
def caller_callee():
    return build_caller_callee()


@pytest.fixture
def single_routine():
    return build_single_routine()


@pytest.fixture
def divergent_callees():
    return build_divergent_callees()


@pytest.fixture
def cookie_catalogue_text():
    return """
    (catalogue cookie-split
      (description "Related values leave through one addCookie call")
      (message "{source1} and {source2} reach one addCookie call in {routine}")
      (source-pair (first (id "a")) (second (id "b")))
      (sink-pair (first (call "addCookie") (arg 0))
                 (second (call "addCookie") (arg 1))
                 (same-call)))
    """
