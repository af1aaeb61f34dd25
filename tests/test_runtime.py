"""End-to-end tests for the request pipeline, synthesis and persistence."""

import pytest

from saia.runtime import NO_CELL

COOKING_REPLY = 'Try buttermilk pancakes.\n{"domain": "Cooking", "tags": ["recipe"]}'


async def test_served_request_strips_domain_suggestion(runtime_factory):
    runtime, llm = runtime_factory([COOKING_REPLY])
    result = await runtime.act("what is a good pancake recipe")

    assert result.ok
    assert result.cell_id == "cell-base"
    assert result.router == "success_rate"
    assert result.response == "Try buttermilk pancakes."
    assert (result.domain, result.tags) == ("cooking", ["recipe"])
    assert result.policy.passed
    assert result.signature
    assert len(llm.calls) == 1

    event = runtime.metrics.recent()[-1]
    assert event.domain == "cooking"
    assert event.success
    actions = await runtime.audit.query("action")
    assert actions[0].request_id == result.request_id
    assert runtime.audit.verify("action").ok


async def test_blocked_prompt_never_reaches_a_cell(runtime_factory):
    runtime, llm = runtime_factory()
    result = await runtime.act("rm -rf /")

    assert not result.ok
    assert result.error_type == "PolicyRejectedError"
    assert not result.policy.passed
    assert result.cell_id is None
    assert llm.calls == []

    event = runtime.metrics.recent()[-1]
    assert (event.cell_id, event.policy_passed, event.success) == (NO_CELL, False, False)
    action = (await runtime.audit.query("action"))[0]
    assert action.adaptation_reason == "policy-fail"
    assert action.signature == result.signature


async def test_empty_prompt_is_rejected(runtime_factory):
    runtime, _ = runtime_factory()
    result = await runtime.act("   ")
    assert not result.ok
    assert result.error == "prompt is required"
    assert runtime.metrics.recent()[-1].cell_id == NO_CELL
    assert await runtime.audit.count() == 0


async def test_backend_failure_degrades(runtime_factory):
    runtime, _ = runtime_factory(fail=RuntimeError("upstream down"))
    result = await runtime.act("summarize the quarterly report")

    assert not result.ok
    assert result.error_type == "BackendError"
    assert result.response.startswith("(degraded) cell-base")
    assert result.cell_id == "cell-base"
    assert not runtime.metrics.recent()[-1].success
    assert not (await runtime.audit.query("action"))[0].success


async def test_tool_step_runs_through_the_governed_runner(settings, runtime_factory):
    reply = '{"tool": {"id": "file.write", "input": {"file": "out.txt", "content": "hi"}}}'
    runtime, _ = runtime_factory([reply])
    result = await runtime.act("save a greeting", tools=["file.write"])

    assert result.ok
    assert result.tool_id == "file.write"
    assert result.tool_output.ok
    assert "[tool:file.write] => " in result.response
    assert (settings.workspace_dir / "out.txt").read_text() == "hi"
    # no suggestion in the reply: the tool's tags stand in
    assert result.domain == "file"
    assert result.tags == ["file", "write", "io"]
    assert (await runtime.audit.query("tool"))[0].cell_id == "cell-base"


async def test_tool_outside_the_request_allowlist_is_ignored(settings, runtime_factory):
    reply = '{"tool": {"id": "file.write", "input": {"file": "out.txt", "content": "hi"}}}'
    runtime, _ = runtime_factory([reply])
    result = await runtime.act("save a greeting", tools=["search.regex"])

    assert result.ok
    assert result.tool_id is None
    assert not (settings.workspace_dir / "out.txt").exists()


async def test_auto_recommend_allows_the_top_tools(settings, runtime_factory):
    reply = '{"tool": {"id": "file.write", "input": {"file": "out.txt", "content": "hi"}}}'
    runtime, _ = runtime_factory([reply, reply])

    result = await runtime.act("write a file", auto_recommend=True, recommend_k=2)
    assert result.ok
    assert result.tool_id == "file.write"
    assert (settings.workspace_dir / "out.txt").read_text() == "hi"

    # http.fetch ranks last for this prompt, so it stays out of a top-1 allowlist
    fetch = '{"tool": {"id": "http.fetch", "input": {"url": "https://example.test"}}}'
    runtime, _ = runtime_factory([fetch])
    result = await runtime.act("write a file", auto_recommend=True, recommend_k=1)
    assert result.ok
    assert result.tool_id is None


async def test_bandit_strategy_is_reported(runtime_factory):
    runtime, _ = runtime_factory()
    result = await runtime.act("hello there", router="rl_bandit")
    assert result.router == "rl_bandit"
    assert result.ok


async def test_synthesize_creates_cell_for_suggested_domain(runtime_factory):
    runtime, _ = runtime_factory([COOKING_REPLY, COOKING_REPLY])
    await runtime.act("what is a good pancake recipe")
    await runtime.act("how do I bake bread")

    report = await runtime.synthesize()
    assert report.created == ["cell-cooking"]
    assert report.total_cells == 2
    assert runtime.router.get_cell("cell-cooking").identity.capabilities == ("cooking", "recipe")
    assert [d.id for d in runtime.state.data.domains] == ["cooking"]
    assert (await runtime.audit.query("cell"))[0].cell_id == "cell-cooking"

    again = await runtime.synthesize()
    assert again.created == []


async def test_synthesized_cells_survive_a_restart(runtime_factory):
    runtime, _ = runtime_factory([COOKING_REPLY, COOKING_REPLY], load_state=True)
    await runtime.act("what is a good pancake recipe")
    await runtime.act("how do I bake bread")
    await runtime.synthesize()
    await runtime.aclose()

    restored, _ = runtime_factory(load_state=True)
    assert {c.id for c in restored.router.cells} == {"cell-base", "cell-cooking"}
    assert len(restored.metrics.recent()) == 2
    assert restored.audit.verify("cell").ok
    await restored.aclose()


async def test_bandit_values_survive_a_restart(runtime_factory):
    runtime, _ = runtime_factory(load_state=True)
    await runtime.act("hello there", router="rl_bandit")
    learned = runtime.router.get_bandit_state()
    await runtime.aclose()

    restored, _ = runtime_factory(load_state=True)
    assert restored.router.get_bandit_state().values == learned.values
    assert restored.router.get_bandit_state().counts == {"cell-base": 1}
    await restored.aclose()


async def test_auto_synthesis_runs_in_the_background(settings, runtime_factory):
    settings.auto_synthesize = True
    runtime, _ = runtime_factory([COOKING_REPLY, COOKING_REPLY])
    await runtime.act("what is a good pancake recipe")
    await runtime.act("how do I bake bread")
    await runtime.aclose()
    assert runtime.router.get_cell("cell-cooking") is not None


async def test_evolve_observes_first(runtime_factory):
    runtime, _ = runtime_factory()
    decision = await runtime.evolve()
    assert decision.action == "observe"


@pytest.mark.parametrize("router", [None, "bogus"])
async def test_unknown_router_falls_back_to_the_active_pattern(runtime_factory, router):
    runtime, _ = runtime_factory()
    result = await runtime.act("hello there", router=router)
    assert result.router == "success_rate"
