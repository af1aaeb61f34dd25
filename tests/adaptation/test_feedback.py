"""Tests for the feedback controller."""

import pytest

from saia.adaptation.feedback import FeedbackController, Outcome
from saia.metrics.store import MetricsStore, RequestEvent


def test_success_raises_ema_and_sai(cell_maker):
    metrics = MetricsStore()
    cell = cell_maker("cell-a")
    fb = FeedbackController(metrics, latency_slo_ms=2000)

    sai = fb.update(cell, Outcome(success=True, latency_ms=0), router_confidence=1.0)

    assert metrics.success_ema("cell-a") == 0.6
    assert sai == pytest.approx(0.6)
    assert metrics.router_confidence("cell-a") == 1.0
    assert metrics.cell_stat("cell-a").adaptation_steps == 1
    # confidence 0.72 on a non-precision cell
    assert cell.temperature == 0.68


def test_latency_penalty_and_compliance(cell_maker):
    metrics = MetricsStore()
    metrics.record(RequestEvent(request_id="r", cell_id="cell-a", latency_ms=1, success=True, policy_passed=False))
    cell = cell_maker("cell-a")
    fb = FeedbackController(metrics, latency_slo_ms=2000)

    sai = fb.update(cell, Outcome(success=True, latency_ms=1000), router_confidence=0.5)
    # ema 0.6, latency penalty 0.5, compliance 0.8
    assert sai == pytest.approx(0.24)


def test_failure_lowers_ema_and_latency_over_slo_zeroes_sai(cell_maker):
    metrics = MetricsStore()
    cell = cell_maker("cell-code", tags=["code"])
    fb = FeedbackController(metrics, latency_slo_ms=100)

    sai = fb.update(cell, Outcome(success=False, latency_ms=500), router_confidence=0.0)

    assert metrics.success_ema("cell-code") == 0.4
    assert sai == 0.0
    # precision cells cool down as confidence grows; low confidence keeps them warm
    assert cell.temperature > 0.6
