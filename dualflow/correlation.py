#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dualflow/correlation.py
═══════════════════════

Dual-path correlation engine.

Two flow instances (A and B) are computed independently over the same
program, each a :class:`~dualflow.path_graph.PathGraph`.  The engine explores
their *synchronized product*: a state is a **correlated quadruple**

    (source1, source2, node1, node2)

where ``source1``/``source2`` are the path nodes the two flows started from
and ``node1``/``node2`` the path nodes they have currently reached.  Every
recorded quadruple satisfies routine alignment: ``node1`` and ``node2`` lie
in the same routine.

Derivation rules
────────────────

    SEED        (a, b, a, b)        a ∈ sources(A), b ∈ sources(B),
                                    is_source_pair(a, b)

    ADVANCE_A   (s1, s2, n1', n2)   n1 → n1',  routine(n1') = routine(n2)

    ADVANCE_B   (s1, s2, n1, n2')   n2 → n2',  routine(n2') = routine(n1)

    JOINT       (s1, s2, n1', n2')  n1 → n1', n2 → n2',
                                    routine(n1') = routine(n2') ≠ routine(n1)

JOINT is the only rule that changes the routine, and it changes it for both
flows at once.  Under :attr:`SyncPolicy.CALL_SITE` the two crossing edges
must additionally be the same kind of step through the same call site.

The least fixpoint is computed with a FIFO worklist and a visited map keyed
by the four path-node identities.  The relation is monotone: a quadruple is
never revised or removed once recorded.

A quadruple is reported as a :class:`Finding` when its two current nodes
form a sink pair.

Usage Example
─────────────

    from dualflow.correlation import correlate
    from dualflow.pairs import PairTable

    pairs = PairTable(source_pairs={("x", "y")}, sink_pairs={("p0", "p1")})
    result = correlate(graph, pairs)
    for finding in result.findings():
        print(finding.description)

License: MIT
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import (
    Deque,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Tuple,
)

from .errors import InvariantViolation
from .flowgraph import EdgeKind, FlowGraph, Routine
from .pairs import PairConfig, project
from .path_graph import PathGraph, PathNode, build_path_graph

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════

class SyncPolicy(Enum):
    """What a joint transition must agree on.

    ROUTINE
        Both flows enter the same destination routine.
    CALL_SITE
        Both flows enter the same destination routine through the same kind
        of step and the same call site.
    """
    ROUTINE = "routine"
    CALL_SITE = "call-site"


@dataclass(frozen=True)
class CorrelationConfig:
    """
    Engine settings.

    Attributes:
        policy: Joint-transition agreement required (see :class:`SyncPolicy`)
        call_depth: Call-string bound used when building the flow instances
        max_quadruples: Stop after recording this many quadruples
                        (0 = unbounded)
    """
    policy: SyncPolicy = SyncPolicy.ROUTINE
    call_depth: int = 3
    max_quadruples: int = 0


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — DERIVED ENTITIES
# ═══════════════════════════════════════════════════════════════════════════

class StepKind(Enum):
    """The rule that derived a quadruple."""
    SEED = "seed"
    ADVANCE_A = "advance-a"
    ADVANCE_B = "advance-b"
    JOINT = "joint"


@dataclass(frozen=True, slots=True)
class Quadruple:
    """Synchronized progress of two flows from a source pair."""
    source1: PathNode
    source2: PathNode
    node1: PathNode
    node2: PathNode

    @property
    def routine(self) -> Routine:
        return self.node1.routine()

    def is_aligned(self) -> bool:
        return self.node1.routine() == self.node2.routine()

    def sort_key(self) -> Tuple[int, int, int, int]:
        return (self.source1.index, self.source2.index,
                self.node1.index, self.node2.index)

    def __repr__(self) -> str:
        return (f"Quadruple({self.source1.node}, {self.source2.node} | "
                f"{self.node1.node}, {self.node2.node})")


@dataclass(frozen=True, slots=True)
class Derivation:
    """How a quadruple was first derived."""
    parent: Optional[Quadruple]
    step: StepKind


@dataclass(frozen=True)
class Finding:
    """
    A reachable quadruple whose current nodes form a sink pair.

    Attributes:
        quadruple: The reported quadruple
        trace_a: Path nodes of flow A from source1 to sink1
        trace_b: Path nodes of flow B from source2 to sink2
        joint_steps: Number of joint transitions on the derivation
        description: Human-readable message
    """
    quadruple: Quadruple
    trace_a: Tuple[PathNode, ...]
    trace_b: Tuple[PathNode, ...]
    joint_steps: int
    description: str = ""

    @property
    def source1(self) -> PathNode:
        return self.quadruple.source1

    @property
    def source2(self) -> PathNode:
        return self.quadruple.source2

    @property
    def sink1(self) -> PathNode:
        return self.quadruple.node1

    @property
    def sink2(self) -> PathNode:
        return self.quadruple.node2

    def routines_a(self) -> Tuple[Routine, ...]:
        return tuple(pn.routine() for pn in self.trace_a)

    def routines_b(self) -> Tuple[Routine, ...]:
        return tuple(pn.routine() for pn in self.trace_b)


class CorrelationResult:
    """The reachable-quadruple relation of one engine run."""

    def __init__(
        self,
        derivations: Dict[Quadruple, Derivation],
        pairs: PairConfig,
        flow_a: PathGraph,
        flow_b: PathGraph,
        truncated: bool = False,
    ) -> None:
        self._derivations = derivations
        self.pairs = pairs
        self.flow_a = flow_a
        self.flow_b = flow_b
        self.truncated = truncated
        self.stats: Dict[StepKind, int] = {kind: 0 for kind in StepKind}
        for d in derivations.values():
            self.stats[d.step] += 1

    @property
    def quadruples(self) -> FrozenSet[Quadruple]:
        return frozenset(self._derivations)

    def derivation(self, q: Quadruple) -> Derivation:
        return self._derivations[q]

    def chain(self, q: Quadruple) -> List[Tuple[Quadruple, StepKind]]:
        """The derivation of *q* from its seed, oldest first."""
        steps: List[Tuple[Quadruple, StepKind]] = []
        cur: Optional[Quadruple] = q
        while cur is not None:
            d = self._derivations[cur]
            steps.append((cur, d.step))
            cur = d.parent
        steps.reverse()
        return steps

    def findings(self) -> List[Finding]:
        """Every reachable quadruple whose current nodes form a sink pair."""
        out: List[Finding] = []
        for q in self._derivations:
            if not self.pairs.is_sink_pair(q.node1.node, q.node2.node):
                continue
            chain = self.chain(q)
            trace_a: List[PathNode] = []
            trace_b: List[PathNode] = []
            joints = 0
            for cur, step in chain:
                if not trace_a or trace_a[-1] is not cur.node1:
                    trace_a.append(cur.node1)
                if not trace_b or trace_b[-1] is not cur.node2:
                    trace_b.append(cur.node2)
                if step is StepKind.JOINT:
                    joints += 1
            out.append(Finding(
                quadruple=q,
                trace_a=tuple(trace_a),
                trace_b=tuple(trace_b),
                joint_steps=joints,
                description=self.pairs.describe(
                    q.source1.node, q.source2.node, q.node1.node, q.node2.node
                ),
            ))
        return out

    def __iter__(self) -> Iterator[Quadruple]:
        return iter(self._derivations)

    def __contains__(self, q: object) -> bool:
        return q in self._derivations

    def __len__(self) -> int:
        return len(self._derivations)

    def __repr__(self) -> str:
        counts = ", ".join(f"{k.value}={v}" for k, v in self.stats.items())
        trunc = ", truncated" if self.truncated else ""
        return f"CorrelationResult({len(self)} quadruples: {counts}{trunc})"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — THE ENGINE
# ═══════════════════════════════════════════════════════════════════════════

class CorrelationEngine:
    """
    Synchronized product exploration of two flow instances.

    The engine only reads the two path graphs and the pair declaration; it
    can be solved any number of times with identical results.
    """

    def __init__(
        self,
        flow_a: PathGraph,
        flow_b: PathGraph,
        pairs: PairConfig,
        config: Optional[CorrelationConfig] = None,
    ) -> None:
        self.flow_a = flow_a
        self.flow_b = flow_b
        self.pairs = pairs
        self.config = config or CorrelationConfig()

    # ─────────────────────────────────────────────────────────────────
    #  Seed matcher
    # ─────────────────────────────────────────────────────────────────

    def seeds(self) -> Iterator[Quadruple]:
        """Quadruples ``(a, b, a, b)`` for every matching pair of flow starts."""
        b_by_routine: Dict[Routine, List[PathNode]] = defaultdict(list)
        for b in self.flow_b.sources():
            b_by_routine[b.routine()].append(b)

        for a in self.flow_a.sources():
            for b in b_by_routine.get(a.routine(), ()):
                if self.pairs.is_source_pair(a.node, b.node):
                    logger.debug("seed %s / %s", a.node, b.node)
                    yield Quadruple(a, b, a, b)

    # ─────────────────────────────────────────────────────────────────
    #  Lockstep advancer
    # ─────────────────────────────────────────────────────────────────

    def advance_a(self, q: Quadruple) -> Iterator[Quadruple]:
        """Move flow A one step while it stays in flow B's routine."""
        here = q.node2.routine()
        for n1 in q.node1.successors():
            if n1.routine() == here:
                yield Quadruple(q.source1, q.source2, n1, q.node2)

    def advance_b(self, q: Quadruple) -> Iterator[Quadruple]:
        """Move flow B one step while it stays in flow A's routine."""
        here = q.node1.routine()
        for n2 in q.node2.successors():
            if n2.routine() == here:
                yield Quadruple(q.source1, q.source2, q.node1, n2)

    # ─────────────────────────────────────────────────────────────────
    #  Call-transition synchronizer
    # ─────────────────────────────────────────────────────────────────

    def joint_transitions(self, q: Quadruple) -> Iterator[Quadruple]:
        """Move both flows together into one new routine."""
        here = q.node1.routine()
        b_targets: Dict[Routine, List[PathNode]] = defaultdict(list)
        for n2 in q.node2.successors():
            r = n2.routine()
            if r != here:
                b_targets[r].append(n2)
        if not b_targets:
            return

        for n1 in q.node1.successors():
            r = n1.routine()
            if r == here:
                continue
            for n2 in b_targets.get(r, ()):
                if (self.config.policy is SyncPolicy.CALL_SITE
                        and not self._same_crossing(q, n1, n2)):
                    continue
                yield Quadruple(q.source1, q.source2, n1, n2)

    def _same_crossing(self, q: Quadruple, n1: PathNode, n2: PathNode) -> bool:
        e1 = self.flow_a.edge(q.node1, n1)
        e2 = self.flow_b.edge(q.node2, n2)
        if e1.kind is not e2.kind:
            return False
        if e1.kind is EdgeKind.JUMP:
            return True
        return e1.call_site is not None and e1.call_site == e2.call_site

    # ─────────────────────────────────────────────────────────────────
    #  Fixpoint
    # ─────────────────────────────────────────────────────────────────

    def _expand(self, q: Quadruple) -> Iterator[Tuple[Quadruple, StepKind]]:
        for nq in self.advance_a(q):
            yield nq, StepKind.ADVANCE_A
        for nq in self.advance_b(q):
            yield nq, StepKind.ADVANCE_B
        for nq in self.joint_transitions(q):
            yield nq, StepKind.JOINT

    def solve(self) -> CorrelationResult:
        """Compute every reachable quadruple."""
        bound = self.config.max_quadruples
        derivations: Dict[Quadruple, Derivation] = {}
        worklist: Deque[Quadruple] = deque()
        truncated = False

        def record(q: Quadruple, parent: Optional[Quadruple], step: StepKind) -> bool:
            nonlocal truncated
            if q in derivations:
                return True
            if bound and len(derivations) >= bound:
                truncated = True
                return False
            if not q.is_aligned():
                raise InvariantViolation(
                    f"{step.value} produced misaligned quadruple {q!r}: "
                    f"{q.node1.routine()} vs {q.node2.routine()}"
                )
            derivations[q] = Derivation(parent, step)
            worklist.append(q)
            return True

        for seed in self.seeds():
            if not record(seed, None, StepKind.SEED):
                break

        while worklist and not truncated:
            q = worklist.popleft()
            for nq, step in self._expand(q):
                if not record(nq, q, step):
                    break

        if truncated:
            logger.warning(
                "correlation stopped after %d quadruples (max_quadruples=%d)",
                len(derivations), bound,
            )
        result = CorrelationResult(
            derivations, self.pairs, self.flow_a, self.flow_b, truncated
        )
        logger.info("%r", result)
        return result


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — CONVENIENCE
# ═══════════════════════════════════════════════════════════════════════════

def correlate(
    graph: FlowGraph,
    pairs: PairConfig,
    config: Optional[CorrelationConfig] = None,
) -> CorrelationResult:
    """Build both flow instances of *pairs* over *graph* and correlate them."""
    cfg = config or CorrelationConfig()
    proj_a, proj_b = project(pairs, graph)
    flow_a = build_path_graph(graph, proj_a, name="A", call_depth=cfg.call_depth)
    flow_b = build_path_graph(graph, proj_b, name="B", call_depth=cfg.call_depth)
    return CorrelationEngine(flow_a, flow_b, pairs, cfg).solve()


__all__ = [
    "SyncPolicy",
    "CorrelationConfig",
    "StepKind",
    "Quadruple",
    "Derivation",
    "Finding",
    "CorrelationResult",
    "CorrelationEngine",
    "correlate",
]
