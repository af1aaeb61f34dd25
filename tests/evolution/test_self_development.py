"""Tests for stability gating, the self-development engine and its daemon."""

import asyncio

import pytest

from saia.evolution.daemon import EvolutionDaemon
from saia.evolution.engine import SelfDevelopmentEngine
from saia.evolution.stability import StabilityAssessor
from saia.evolution.state import EvolutionState
from saia.governance.audit import AuditTrail
from saia.metrics.store import MetricsStore, RequestEvent
from saia.patterns.registry import PatternRegistry


def _event(success: bool) -> RequestEvent:
    return RequestEvent(request_id="r", cell_id="cell-base", latency_ms=5, success=success, policy_passed=True)


@pytest.fixture
def registry(tmp_path):
    return PatternRegistry(tmp_path / "patterns.json")


def _engine(registry, metrics, audit, tmp_path=None, router=None, canary=None, min_cycles=3):
    state = EvolutionState(tmp_path / "state.json") if tmp_path else None
    return SelfDevelopmentEngine(
        registry, metrics, audit, state=state, router=router, min_cycles=min_cycles, canary=canary,
    )


def test_stability_delta_v():
    s = StabilityAssessor(alpha=1.0, beta=0.5)
    assert s.compute_prospective(1, 0, 0.5, 0.5) == -0.5
    assert s.compute_prospective(1, 3, 0.5, 0.6) == pytest.approx(0.9)
    assert s.get_last().complexity == 1.0
    s.commit(2, 0.7)
    assert s.get_last().success == 0.7


async def test_observes_until_min_cycles(registry, metrics, audit):
    engine = _engine(registry, metrics, audit)
    d1 = await engine.evaluate()
    d2 = await engine.evaluate()
    assert (d1.action, d1.non_improving_cycles) == ("observe", 1)
    assert (d2.action, d2.non_improving_cycles) == ("observe", 2)


async def test_improvement_resets_counter(registry, metrics, audit):
    engine = _engine(registry, metrics, audit)
    await engine.evaluate()
    await engine.evaluate()
    metrics.record(_event(True))
    decision = await engine.evaluate()
    assert decision.action == "observe"
    assert decision.non_improving_cycles == 0
    assert engine.last_perf == 0.6


async def test_commits_simpler_pattern(registry, metrics, audit, router_factory, cell_maker):
    router = router_factory([cell_maker("cell-base"), cell_maker("cell-x")])
    router.apply_pattern(registry.active())
    assert [c.id for c in router.pool] == ["cell-base"]

    engine = _engine(registry, metrics, audit, router=router)
    for _ in range(2):
        await engine.evaluate()
    decision = await engine.evaluate()

    assert decision.action == "commit"
    assert decision.candidate_id == "bandit-pool"
    assert decision.delta_v == pytest.approx(-0.5)
    assert decision.non_improving_cycles == 0
    assert registry.active_id == "bandit-pool"
    assert len(router.pool) == 2
    assert engine.stability.get_last().complexity == 0

    events = await audit.query("evolution")
    assert events[0].decision == "commit"
    assert events[0].from_pattern == "solo"
    assert audit.verify("evolution").ok


async def test_rolls_back_when_canary_regresses(registry, metrics, audit):
    async def canary(pattern):
        return 0.0

    engine = _engine(registry, metrics, audit, canary=canary)
    for _ in range(3):
        decision = await engine.evaluate()
    assert decision.action == "rollback"
    assert decision.post_perf == 0.0
    assert registry.active_id == "solo"
    assert (await audit.query("evolution"))[0].decision == "rollback"


async def test_not_approved_without_secret(registry, metrics, tmp_path):
    engine = _engine(registry, metrics, AuditTrail(tmp_path / "logs", secret=""))
    for _ in range(3):
        decision = await engine.evaluate()
    assert decision.action == "not_approved"
    assert decision.non_improving_cycles == 3
    assert registry.active_id == "solo"


async def test_snapshot_roundtrip(registry, audit, tmp_path):
    metrics = MetricsStore()
    metrics.record(_event(True))
    metrics.set_success_ema("cell-base", 0.8)
    engine = _engine(registry, metrics, audit, tmp_path=tmp_path)
    decision = await engine.evaluate()
    assert decision.action == "observe"
    assert (tmp_path / "state.json").exists()

    fresh_metrics = MetricsStore()
    restored = _engine(PatternRegistry(), fresh_metrics, audit, tmp_path=tmp_path)
    assert restored.load_snapshot()
    assert restored.last_perf == 0.6
    assert restored.non_improving_cycles == 0
    assert fresh_metrics.success_ema("cell-base") == 0.8
    assert [e.request_id for e in fresh_metrics.recent()] == ["r"]


async def test_missing_snapshot(registry, metrics, audit, tmp_path):
    engine = _engine(registry, metrics, audit, tmp_path=tmp_path)
    assert not engine.load_snapshot()
    assert engine.last_perf == 0.5


async def test_daemon_runs_cycles(registry, metrics, audit):
    engine = _engine(registry, metrics, audit)
    daemon = EvolutionDaemon(engine, interval_s=0.01, history_limit=2)
    await daemon.run_once()
    assert daemon.history[0].action == "observe"

    await daemon.start()
    assert daemon.is_running
    await asyncio.sleep(0.05)
    await daemon.stop()
    assert not daemon.is_running
    assert len(daemon.history) == 2
