"""Shared test fixtures — MockLLMProvider for testing without API calls."""

from __future__ import annotations

import random

import pytest

from saia.adaptation.router import BanditParams, LearningRouter
from saia.cells.cell import Cell, CellIdentity
from saia.config import SaiaSettings
from saia.governance.audit import AuditTrail
from saia.llm.base import BaseLLMProvider, LLMResponse
from saia.metrics.store import MetricsStore


class MockLLMProvider(BaseLLMProvider):
    """LLM provider that returns canned responses. No API calls."""

    def __init__(self, responses: list[str] | None = None, fail: Exception | None = None):
        self._responses = responses or []
        self._call_count = 0
        self._fail = fail
        self.calls: list[dict] = []  # record all calls for assertions

    async def complete(self, messages, system=None, temperature=0.6, max_tokens=300):
        self.calls.append({
            "messages": messages,
            "system": system,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self._fail is not None:
            raise self._fail
        if self._call_count < len(self._responses):
            text = self._responses[self._call_count]
            self._call_count += 1
            return LLMResponse(content=text, stop_reason="end_turn")
        return LLMResponse(content="Done.", stop_reason="end_turn")


def make_cell(cell_id: str, tags=(), llm=None, temperature: float = 0.6) -> Cell:
    return Cell(CellIdentity(id=cell_id, capabilities=tuple(tags)), llm=llm, temperature=temperature)


@pytest.fixture
def mock_llm():
    return MockLLMProvider()


@pytest.fixture
def mock_llm_with_responses():
    def _factory(responses: list[str]) -> MockLLMProvider:
        return MockLLMProvider(responses=responses)
    return _factory


@pytest.fixture
def metrics():
    return MetricsStore()


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(tmp_path / "logs", secret="test-secret")


@pytest.fixture
def router_factory(metrics):
    def _factory(cells, seed: int = 7, **params) -> LearningRouter:
        return LearningRouter(
            cells,
            metrics,
            params=BanditParams(**params),
            tool_ids=["file.write", "http.fetch"],
            rng=random.Random(seed),
        )
    return _factory


@pytest.fixture
def settings(tmp_path):
    return SaiaSettings(
        secret="test-secret",
        anthropic_api_key="",
        knowledge_dir=tmp_path / "knowledge",
        logs_dir=tmp_path / "logs",
        workspace_dir=tmp_path / "workspace",
        auto_synthesize=False,
    )


@pytest.fixture
def cell_maker():
    return make_cell


@pytest.fixture
def failing_llm():
    def _factory(exc: Exception) -> MockLLMProvider:
        return MockLLMProvider(fail=exc)
    return _factory


@pytest.fixture
def runtime_factory(settings):
    """Build a runtime over ``settings`` with a canned LLM; returns (runtime, llm)."""
    from saia.runtime import SaiaRuntime

    def _factory(responses=None, fail=None, load_state=False):
        llm = MockLLMProvider(responses=responses, fail=fail)
        return SaiaRuntime.from_settings(settings, llm=llm, load_state=load_state), llm
    return _factory
