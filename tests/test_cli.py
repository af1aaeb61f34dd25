"""Tests for the saia CLI."""

import pytest
import structlog
from typer.testing import CliRunner

from saia import __version__
from saia.cli.context import SaiaContext
from saia.cli.main import _app, main
from saia.governance.audit import AuditTrail

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SAIA_KNOWLEDGE_DIR", str(tmp_path / "knowledge"))
    monkeypatch.setenv("SAIA_LOGS_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("SAIA_WORKSPACE_DIR", str(tmp_path / "workspace"))
    monkeypatch.setenv("SAIA_SECRET", "cli-secret")
    monkeypatch.setenv("SAIA_ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("SAIA_AUTO_SYNTHESIZE", "false")
    monkeypatch.setenv("SAIA_POLICY_LLM_ENDPOINT", "")
    SaiaContext.reset()
    yield tmp_path
    SaiaContext.reset()
    structlog.reset_defaults()


def test_version():
    result = runner.invoke(_app, ["version"])
    assert result.exit_code == 0
    assert f"saia v{__version__}" in result.output


def test_tools_lists_builtins():
    result = runner.invoke(_app, ["tools"])
    assert result.exit_code == 0
    assert "http.fetch" in result.output
    assert "network" in result.output


def test_policy_score():
    result = runner.invoke(_app, ["policy-score", "rm -rf /"])
    assert result.exit_code == 0
    assert "block" in result.output

    result = runner.invoke(_app, ["policy-score", "write a haiku about autumn leaves"])
    assert "pass" in result.output


def test_act_with_stub_cell_is_audited(cli_env):
    result = runner.invoke(_app, ["act", "hello world"])
    assert result.exit_code == 0
    assert "STUB(cell-base)" in result.output

    trail = AuditTrail(cli_env / "logs", secret="cli-secret")
    assert trail.verify("action").checked == 1
    assert (cli_env / "knowledge" / "state.json").exists()

    result = runner.invoke(_app, ["audit", "--kind", "action"])
    assert result.exit_code == 0
    assert "Audit (action)" in result.output


def test_blocked_act_exits_nonzero():
    result = runner.invoke(_app, ["act", "rm -rf /"])
    assert result.exit_code == 1
    assert "Blocked by policy" in result.output


def test_audit_verify_detects_tampering(cli_env):
    runner.invoke(_app, ["act", "hello world"])
    result = runner.invoke(_app, ["audit-verify"])
    assert result.exit_code == 0
    assert "OK actions.jsonl: 1 entries" in result.output

    path = AuditTrail(cli_env / "logs", secret="cli-secret").stream_path("action")
    with path.open("a") as fh:
        fh.write('{"id": "forged", "kind": "action"}\n')
    result = runner.invoke(_app, ["audit-verify", "--kind", "action"])
    assert result.exit_code == 1
    assert "INVALID" in result.output


def test_unknown_audit_kind():
    result = runner.invoke(_app, ["audit", "--kind", "nope"])
    assert result.exit_code == 1


def test_patterns_activate_persists():
    result = runner.invoke(_app, ["patterns", "--activate", "bandit-pool"])
    assert result.exit_code == 0
    result = runner.invoke(_app, ["status"])
    assert "bandit-pool (rl_bandit)" in result.output

    result = runner.invoke(_app, ["patterns", "--activate", "nope"])
    assert result.exit_code == 1


def test_router_state_json():
    result = runner.invoke(_app, ["router-state", "--json"])
    assert result.exit_code == 0
    assert '"cell-base"' in result.output


def test_bare_prompt_is_routed_to_act(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["hello", "there"])
    assert exc.value.code == 0
    assert "STUB(cell-base): hello there" in capsys.readouterr().out


def test_act_with_recommended_tools(cli_env):
    result = runner.invoke(_app, ["act", "write a file", "--auto-tools", "-k", "2", "--json"])
    assert result.exit_code == 0
    assert '"ok": true' in result.output
