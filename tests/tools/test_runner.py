"""Tests for the governed tool runner."""

import pytest

from saia.policy.schema import ToolPolicy
from saia.tools.builtins import register_builtin_tools
from saia.tools.registry import ToolRegistry
from saia.tools.runner import GovernedToolRunner
from saia.tools.schema import TaskContext, ToolOutput, ToolSpec


@pytest.fixture
def registry():
    reg = ToolRegistry()
    register_builtin_tools(reg)
    return reg


@pytest.fixture
def runner(registry, audit, tmp_path):
    return GovernedToolRunner(registry, audit, workspace_dir=tmp_path / "ws")


async def test_unknown_tool(runner, audit):
    out = await runner.run("nope")
    assert not out.ok
    assert out.error_type == "ToolNotFoundError"
    assert await audit.count() == 0


async def test_network_denied_by_default(runner, registry):
    out = await runner.run("http.fetch", {"url": "http://example.com"})
    assert not out.ok
    assert out.error_type == "ToolPolicyDeniedError"
    assert registry.knowledge.stat("http.fetch").count == 0


async def test_read_only_policy_blocks_writes(registry, audit, tmp_path):
    runner = GovernedToolRunner(registry, audit, ToolPolicy(read_only=True), workspace_dir=tmp_path)
    out = await runner.run("file.write", {"file": "a.txt", "content": "x"})
    assert out.error_type == "ToolPolicyDeniedError"
    assert not (tmp_path / "a.txt").exists()


async def test_write_then_read_is_audited_and_learned(runner, registry, audit):
    task = TaskContext(domain="files", tags=["write"], cell_id="cell-base")
    out = await runner.run("file.write", {"file": "notes/a.txt", "content": "hello"}, task)
    assert out.ok
    assert out.data["file"] == "notes/a.txt"
    assert out.latency_ms is not None

    out = await runner.run("file.read.range", {"file": "notes/a.txt"})
    assert out.data["content"] == "hello"

    events = await audit.query("tool")
    assert [e.tool_id for e in events] == ["file.read.range", "file.write"]
    assert events[1].cell_id == "cell-base"
    assert audit.verify("tool").ok
    assert registry.knowledge.stat("file.write").by_domain["files"].ok == 1


async def test_traversal_is_a_tool_failure(runner, registry):
    out = await runner.run("file.write", {"file": "../escape.txt", "content": "x"})
    assert not out.ok
    assert out.error_type == "ToolExecutionError"
    assert "unsafe path" in out.error
    assert registry.knowledge.success_rate("file.write") == 0.0
    assert registry.knowledge.stat("file.write").count == 1


async def test_handler_crash_is_wrapped(registry, audit, tmp_path):
    async def boom(tool_input, ctx):
        raise RuntimeError("kaput")

    async def soft_fail(tool_input, ctx):
        return ToolOutput(ok=False, error="nothing to do")

    registry.register(ToolSpec(id="boom", title="Boom", description="fails"), boom)
    registry.register(ToolSpec(id="soft", title="Soft", description="fails softly"), soft_fail)
    runner = GovernedToolRunner(registry, audit, workspace_dir=tmp_path)

    out = await runner.run("boom")
    assert out.error_type == "ToolExecutionError"
    assert "RuntimeError: kaput" in out.error

    out = await runner.run("soft")
    assert out.error_type == "ToolExecutionError"
    assert (await audit.query("tool"))[0].error == "nothing to do"
