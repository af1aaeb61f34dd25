"""Tests for the external safety model adapter."""

import httpx
import orjson
import pytest

from saia.policy.engine import PolicyEngine
from saia.policy.safety_model import HttpSafetyModel, NullSafetyModel, parse_verdict


def _model(handler, max_retries=2):
    return HttpSafetyModel(
        "http://safety.test/classify",
        api_key="k",
        model="guard-1",
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    "data, passed, risk, reason",
    [
        ({"allowed": True}, True, 0.05, "llm_allow"),
        ({"passed": False, "score": 0.7}, False, 0.7, "llm_block"),
        ({"blocked": True, "explanation": "bad"}, False, 0.99, "bad"),
        ({"allowed": False, "risk": 4}, False, 1.0, "llm_block"),
    ],
)
def test_parse_verdict(data, passed, risk, reason):
    decision = parse_verdict(data)
    assert decision.passed is passed
    assert decision.risk == risk
    assert decision.reason == reason


@pytest.mark.parametrize("data", [None, [], {"risk": 0.3}, {"allowed": "yes"}])
def test_parse_verdict_malformed(data):
    assert parse_verdict(data) is None


async def test_null_model_defers():
    assert await NullSafetyModel().classify("anything") is None


async def test_http_model_posts_prompt_and_parses():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = orjson.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"allowed": False, "risk": 0.8, "reason": "nope"})

    model = _model(handler)
    decision = await model.classify("hello")
    await model.aclose()

    assert seen["body"] == {"prompt": "hello", "model": "guard-1"}
    assert seen["auth"] == "Bearer k"
    assert not decision.passed
    assert decision.risk == 0.8
    assert decision.reason == "nope"


async def test_http_model_retries_timeouts_then_gives_up():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    model = _model(handler, max_retries=3)
    assert await model.classify("x") is None
    assert len(calls) == 3
    await model.aclose()


async def test_http_model_retries_server_errors():
    responses = iter([httpx.Response(503), httpx.Response(200, json={"allowed": True, "risk": 0.1})])
    model = _model(lambda request: next(responses))
    decision = await model.classify("x")
    assert decision.passed
    await model.aclose()


async def test_http_model_bad_json_is_none():
    model = _model(lambda request: httpx.Response(200, content=b"not json"))
    assert await model.classify("x") is None
    await model.aclose()


async def test_engine_prefers_safety_verdict():
    model = _model(lambda request: httpx.Response(200, json={"allowed": False, "risk": 0.9}))
    engine = PolicyEngine(safety_model=model)
    decision = await engine.evaluate("write a haiku")
    assert not decision.passed
    assert decision.reason == "llm_block"
    await engine.aclose()


async def test_engine_falls_back_when_model_fails():
    model = _model(lambda request: httpx.Response(500))
    engine = PolicyEngine(safety_model=model)
    decision = await engine.evaluate("rm -rf /")
    assert decision.reason == "hard_block"
    await engine.aclose()
