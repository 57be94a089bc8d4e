# tests/test_correlation.py
"""
Tests for the dual-path correlation engine.
"""

import logging

import pytest

from dualflow.correlation import (
    CorrelationConfig,
    CorrelationEngine,
    Quadruple,
    StepKind,
    SyncPolicy,
    correlate,
)
from dualflow.errors import InvariantViolation
from dualflow.flowgraph import EdgeKind
from dualflow.pairs import PairTable, project
from dualflow.path_graph import build_path_graph
from tests.conftest import (
    build_call_and_return,
    build_caller_callee,
    build_divergent_callees,
    build_global_jump,
    build_separate_calls,
    build_single_routine,
    make_random_graph,
    reference_quadruples,
)


def _ids(trace):
    return [pn.node.id for pn in trace]


def _engine(graph, pairs, config=None):
    cfg = config or CorrelationConfig()
    proj_a, proj_b = project(pairs, graph)
    flow_a = build_path_graph(graph, proj_a, name="A", call_depth=cfg.call_depth)
    flow_b = build_path_graph(graph, proj_b, name="B", call_depth=cfg.call_depth)
    return CorrelationEngine(flow_a, flow_b, pairs, cfg)


def _keys(result):
    def key(pn):
        return (pn.node.id, pn.context.sites)
    return {
        (key(q.source1), key(q.source2), key(q.node1), key(q.node2))
        for q in result
    }


# ─────────────────────────────────────────────────────────────────────────
#  Canonical scenarios
# ─────────────────────────────────────────────────────────────────────────

class TestScenarios:

    def test_caller_callee_single_finding(self, caller_callee):
        graph, pairs = caller_callee
        result = correlate(graph, pairs)
        findings = result.findings()
        assert len(findings) == 1
        f = findings[0]
        assert f.joint_steps == 1
        assert f.source1.node.id == "a"
        assert f.source2.node.id == "b"
        assert f.sink1.node.id == "k0"
        assert f.sink2.node.id == "k1"
        assert _ids(f.trace_a) == ["a", "arg0", "p0", "k0"]
        assert _ids(f.trace_b) == ["b", "arg1", "p1", "k1"]

    def test_caller_callee_routines_switch_together(self, caller_callee):
        graph, pairs = caller_callee
        f = correlate(graph, pairs).findings()[0]
        assert [r.name for r in f.routines_a()] == ["caller", "caller", "helper", "helper"]
        assert [r.name for r in f.routines_b()] == ["caller", "caller", "helper", "helper"]

    def test_divergent_callees_no_finding(self, divergent_callees):
        graph, pairs = divergent_callees
        result = correlate(graph, pairs)
        assert result.findings() == []
        # each flow on its own does reach a sink
        assert result.flow_a.sinks()
        assert result.flow_b.sinks()
        assert result.stats[StepKind.JOINT] == 0

    def test_single_routine_no_joint(self, single_routine):
        graph, pairs = single_routine
        result = correlate(graph, pairs)
        findings = result.findings()
        assert len(findings) == 1
        assert findings[0].joint_steps == 0
        assert result.stats[StepKind.JOINT] == 0
        assert {r.name for r in findings[0].routines_a()} == {"f"}

    def test_call_and_return(self):
        graph, pairs = build_call_and_return()
        findings = correlate(graph, pairs).findings()
        assert len(findings) == 1
        f = findings[0]
        assert f.joint_steps == 2
        assert _ids(f.trace_a) == ["a", "arg0", "p0", "ret0", "r0", "k0"]
        assert f.sink1.context.sites == ()

    def test_source_pair_without_sinks(self, caller_callee):
        graph, _ = caller_callee
        pairs = PairTable(source_pairs={("a", "b")})
        result = correlate(graph, pairs)
        assert len(result) == 0
        assert result.findings() == []

    def test_unrelated_sources(self, caller_callee):
        graph, _ = caller_callee
        pairs = PairTable(source_pairs={("a", "a")}, sink_pairs={("k0", "k1")})
        assert correlate(graph, pairs).findings() == []

    def test_cross_routine_source_pair_contributes_nothing(self, caller_callee):
        graph, _ = caller_callee
        pairs = PairTable(source_pairs={("a", "p1")}, sink_pairs={("k0", "k1")})
        result = correlate(graph, pairs)
        assert len(result) == 0

    def test_barrier_on_one_side(self, caller_callee):
        graph, pairs = caller_callee
        pairs.barriers_b.add("p1")
        assert correlate(graph, pairs).findings() == []

    def test_several_source_pairs(self, single_routine):
        graph, pairs = single_routine
        pairs.add_source_pair("m0", "m1")
        findings = correlate(graph, pairs).findings()
        assert {(f.source1.node.id, f.source2.node.id) for f in findings} == {
            ("a", "b"), ("m0", "m1"),
        }

    def test_description(self, single_routine):
        graph, pairs = single_routine
        f = correlate(graph, pairs).findings()[0]
        assert f.description == "correlated flows f:a -> f:k0 and f:b -> f:k1"


# ─────────────────────────────────────────────────────────────────────────
#  Synchronization policies
# ─────────────────────────────────────────────────────────────────────────

class TestSyncPolicy:

    def test_separate_calls_match_by_routine(self):
        graph, pairs = build_separate_calls()
        findings = correlate(graph, pairs).findings()
        assert len(findings) == 1

    def test_separate_calls_rejected_by_call_site(self):
        graph, pairs = build_separate_calls()
        cfg = CorrelationConfig(policy=SyncPolicy.CALL_SITE)
        assert correlate(graph, pairs, cfg).findings() == []

    @pytest.mark.parametrize("builder", [build_caller_callee, build_call_and_return])
    def test_shared_call_accepted_by_call_site(self, builder):
        graph, pairs = builder()
        cfg = CorrelationConfig(policy=SyncPolicy.CALL_SITE)
        assert len(correlate(graph, pairs, cfg).findings()) == 1

    def test_two_jumps_accepted(self):
        graph, pairs = build_global_jump()
        cfg = CorrelationConfig(policy=SyncPolicy.CALL_SITE)
        assert len(correlate(graph, pairs, cfg).findings()) == 1

    def test_jump_and_call_differ(self):
        graph, pairs = build_global_jump(EdgeKind.CALL)
        assert len(correlate(graph, pairs).findings()) == 1
        cfg = CorrelationConfig(policy=SyncPolicy.CALL_SITE)
        assert correlate(graph, pairs, cfg).findings() == []

    def test_call_site_result_is_subset(self):
        for seed in range(10):
            graph, pairs = make_random_graph(seed)
            loose = _keys(correlate(graph, pairs))
            strict = _keys(correlate(
                graph, pairs, CorrelationConfig(policy=SyncPolicy.CALL_SITE)
            ))
            assert strict <= loose


# ─────────────────────────────────────────────────────────────────────────
#  Engine internals
# ─────────────────────────────────────────────────────────────────────────

class TestEngine:

    def test_seeds(self, caller_callee):
        engine = _engine(*caller_callee)
        seeds = list(engine.seeds())
        assert len(seeds) == 1
        q = seeds[0]
        assert q.node1 is q.source1
        assert q.node2 is q.source2
        assert (q.node1.node.id, q.node2.node.id) == ("a", "b")

    def test_advance_stays_in_routine(self, caller_callee):
        engine = _engine(*caller_callee)
        seed = next(engine.seeds())
        (qa,) = list(engine.advance_a(seed))
        assert qa.node1.node.id == "arg0"
        assert qa.node2 is seed.node2
        (qb,) = list(engine.advance_b(qa))
        assert qb.node2.node.id == "arg1"
        # crossing into the callee is never an advance
        assert list(engine.advance_a(qb)) == []
        assert list(engine.advance_b(qb)) == []

    def test_joint_transition(self, caller_callee):
        engine = _engine(*caller_callee)
        seed = next(engine.seeds())
        (qa,) = list(engine.advance_a(seed))
        (qb,) = list(engine.advance_b(qa))
        (qj,) = list(engine.joint_transitions(qb))
        assert (qj.node1.node.id, qj.node2.node.id) == ("p0", "p1")
        assert qj.routine.name == "helper"
        assert qj.node1.context.sites == ("c1",)

    def test_no_joint_without_routine_change(self, single_routine):
        engine = _engine(*single_routine)
        seed = next(engine.seeds())
        assert list(engine.joint_transitions(seed)) == []

    def test_misaligned_quadruple_raises(self, caller_callee):
        engine = _engine(*caller_callee)
        seed = next(engine.seeds())
        (qa,) = list(engine.advance_a(seed))
        (qb,) = list(engine.advance_b(qa))
        p0 = engine.flow_a.occurrences("p0")[0]
        bad = Quadruple(seed.source1, seed.source2, p0, qb.node2)

        class Broken(CorrelationEngine):
            def advance_a(self, q):
                yield bad

        with pytest.raises(InvariantViolation):
            Broken(engine.flow_a, engine.flow_b, engine.pairs).solve()

    def test_chain_starts_at_seed(self, caller_callee):
        result = correlate(*caller_callee)
        for q in result:
            chain = result.chain(q)
            assert chain[0][1] is StepKind.SEED
            assert chain[-1][0] == q
            assert result.derivation(chain[0][0]).parent is None

    def test_stats_cover_every_step_kind(self, caller_callee):
        result = correlate(*caller_callee)
        assert set(result.stats) == set(StepKind)
        assert sum(result.stats.values()) == len(result)
        assert result.stats[StepKind.SEED] == 1
        assert result.stats[StepKind.JOINT] == 1

    def test_repr(self, single_routine):
        text = repr(correlate(*single_routine))
        assert text.startswith("CorrelationResult(")
        assert "seed=1" in text


# ─────────────────────────────────────────────────────────────────────────
#  Bounded exploration
# ─────────────────────────────────────────────────────────────────────────

class TestBound:

    def test_truncation_flag_and_warning(self, caller_callee, caplog):
        graph, pairs = caller_callee
        cfg = CorrelationConfig(max_quadruples=3)
        with caplog.at_level(logging.WARNING, logger="dualflow.correlation"):
            result = correlate(graph, pairs, cfg)
        assert result.truncated
        assert len(result) == 3
        assert any("stopped after" in r.getMessage() for r in caplog.records)

    def test_bound_not_reached(self, single_routine):
        graph, pairs = single_routine
        full = correlate(graph, pairs)
        result = correlate(graph, pairs, CorrelationConfig(max_quadruples=len(full)))
        assert not result.truncated
        assert len(result) == len(full)

    @pytest.mark.parametrize("seed", range(8))
    def test_bounded_runs_are_nested(self, seed):
        graph, pairs = make_random_graph(seed)
        engine = _engine(graph, pairs)
        full = engine.solve().quadruples
        previous = frozenset()
        for n in range(1, min(len(full), 25) + 1):
            engine.config = CorrelationConfig(max_quadruples=n)
            bounded = engine.solve().quadruples
            assert len(bounded) == n
            assert previous <= bounded <= full
            previous = bounded


# ─────────────────────────────────────────────────────────────────────────
#  Properties over random graphs
# ─────────────────────────────────────────────────────────────────────────

SEEDS = range(30)


class TestProperties:

    @pytest.mark.parametrize("seed", SEEDS)
    def test_matches_naive_fixpoint(self, seed):
        graph, pairs = make_random_graph(seed)
        engine = _engine(graph, pairs)
        result = engine.solve()
        got = {(q.source1, q.source2, q.node1, q.node2) for q in result}
        assert got == reference_quadruples(engine.flow_a, engine.flow_b, pairs)

    @pytest.mark.parametrize("seed", SEEDS)
    def test_routine_alignment(self, seed):
        result = correlate(*make_random_graph(seed))
        for q in result:
            assert q.node1.routine() == q.node2.routine()

    @pytest.mark.parametrize("seed", SEEDS)
    def test_derivation_steps(self, seed):
        result = correlate(*make_random_graph(seed))
        for q in result:
            d = result.derivation(q)
            p = d.parent
            if d.step is StepKind.SEED:
                assert p is None
                assert q.node1 is q.source1 and q.node2 is q.source2
                continue
            assert (q.source1, q.source2) == (p.source1, p.source2)
            if d.step is StepKind.ADVANCE_A:
                assert q.node2 is p.node2
                assert q.node1 in p.node1.successors()
                assert q.routine == p.routine
            elif d.step is StepKind.ADVANCE_B:
                assert q.node1 is p.node1
                assert q.node2 in p.node2.successors()
                assert q.routine == p.routine
            else:
                assert q.node1 in p.node1.successors()
                assert q.node2 in p.node2.successors()
                assert q.routine != p.routine

    @pytest.mark.parametrize("seed", SEEDS)
    def test_findings_start_and_end_at_pairs(self, seed):
        graph, pairs = make_random_graph(seed)
        result = correlate(graph, pairs)
        for f in result.findings():
            assert pairs.is_source_pair(f.source1.node, f.source2.node)
            assert pairs.is_sink_pair(f.sink1.node, f.sink2.node)
            assert f.source1.is_source_flagged()
            assert f.sink1.is_sink_flagged()
            assert f.trace_a[0] is f.source1 and f.trace_a[-1] is f.sink1
            assert f.trace_b[0] is f.source2 and f.trace_b[-1] is f.sink2
            for trace in (f.trace_a, f.trace_b):
                for cur, nxt in zip(trace, trace[1:]):
                    assert nxt in cur.successors()

    @pytest.mark.parametrize("seed", SEEDS)
    def test_idempotent(self, seed):
        graph, pairs = make_random_graph(seed)
        engine = _engine(graph, pairs)
        assert engine.solve().quadruples == engine.solve().quadruples
        assert _keys(correlate(graph, pairs)) == _keys(correlate(graph, pairs))
