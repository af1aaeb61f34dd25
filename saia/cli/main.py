"""saia CLI — natural language first.

`saia "summarize this"` routes the prompt through the request pipeline.
`saia tools`, `saia evolve`, etc. are management subcommands.

The first argument is checked BEFORE Typer sees it: anything that is not a
known subcommand is treated as a prompt for `act`.
"""

from __future__ import annotations

import logging
import sys

import orjson
import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from saia.cli.context import SaiaContext, run_with_runtime

console = Console()

_SUBCOMMANDS = {
    "act", "status", "evolve", "synthesize", "policy-score", "tools",
    "recommend", "router-state", "metrics", "patterns", "audit",
    "audit-verify", "version",
    "--help", "-h", "--install-completion", "--show-completion",
}

_app = typer.Typer(
    name="saia",
    help="saia -- self-adaptive cells behind a learning router and a policy gate.",
    no_args_is_help=True,
)


def _print_json(data) -> None:
    console.print_json(orjson.dumps(data).decode())


@_app.command("act")
def act(
    prompt: str = typer.Argument(help="The request to handle"),
    router: str = typer.Option("", "--router", "-r", help="Routing strategy override"),
    tool: list[str] = typer.Option(None, "--tool", "-t", help="Tool id the cell may call (repeatable)"),
    auto_recommend: bool = typer.Option(False, "--auto-tools", help="Also allow the top recommended tools"),
    recommend_k: int = typer.Option(3, "--top-k", "-k", help="How many recommended tools to allow"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Route a prompt to a cell and print the reply."""
    result = run_with_runtime(lambda rt: rt.act(
        prompt,
        router=router or None,
        tools=tool or None,
        auto_recommend=auto_recommend,
        recommend_k=recommend_k,
    ))

    if as_json:
        _print_json(result.model_dump(mode="json"))
    elif result.policy is not None and not result.policy.passed:
        console.print(
            f"[red]Blocked by policy[/red] risk={result.policy.risk} reason={result.policy.reason}"
        )
    elif result.cell_id is None:
        console.print(f"[red]Error:[/red] {result.error}")
    else:
        border = "green" if result.ok else "yellow"
        console.print(Panel(
            result.response,
            title=f"{result.cell_id} via {result.router}",
            subtitle=f"conf={result.confidence:.2f} sai={result.sai or 0:.3f} {result.latency_ms:.0f}ms",
            border_style=border,
        ))
    if not result.ok:
        raise typer.Exit(1)


@_app.command("status")
def status():
    """Show configuration and pool status."""
    from saia import __version__

    ctx = SaiaContext.get()
    rt = ctx.runtime
    s = ctx.settings
    active = rt.patterns.active()
    console.print(Panel(
        f"[bold]saia v{__version__}[/bold]\n\n"
        f"API Key:    {'[green]set[/green]' if s.anthropic_api_key else '[yellow]not set (stub cells)[/yellow]'}\n"
        f"Secret:     {'[green]set[/green]' if rt.audit.secret_configured else '[yellow]dev (evolution disabled)[/yellow]'}\n"
        f"Model:      {s.default_model}\n"
        f"Cells:      {len(rt.router.cells)}\n"
        f"Tools:      {len(rt.tools.ids())}\n"
        f"Pattern:    {active.id if active else '-'} ({rt.default_strategy().value})\n"
        f"Threshold:  {rt.policy.threshold}",
        title="System Status",
        border_style="cyan",
    ))
    SaiaContext.reset()


@_app.command("evolve")
def evolve(
    cycles: int = typer.Option(1, "--cycles", "-n", help="Evaluation cycles to run"),
):
    """Run self-development cycles against the current metrics."""
    from saia.evolution.daemon import EvolutionDaemon

    async def _evolve(rt):
        daemon = EvolutionDaemon(rt.evolution, interval_s=rt.settings.evolution_interval_s)
        for _ in range(max(1, cycles)):
            await daemon.run_once()
        return daemon.history

    history = run_with_runtime(_evolve)
    table = Table(title="Evolution")
    table.add_column("#", justify="right")
    table.add_column("Action", style="bold")
    table.add_column("Perf", justify="right")
    table.add_column("Stall", justify="right")
    table.add_column("Pattern")
    table.add_column("Candidate")
    table.add_column("dV", justify="right")
    for i, d in enumerate(history, start=1):
        table.add_row(
            str(i), d.action, f"{d.perf:.3f}", str(d.non_improving_cycles),
            d.active_pattern_id or "-", d.candidate_id or "-",
            f"{d.delta_v:.3f}" if d.delta_v is not None else "-",
        )
    console.print(table)


@_app.command("synthesize")
def synthesize(
    max_create: int = typer.Option(3, "--max", help="Maximum cells to create"),
):
    """Create cells for observed domains and merge redundant ones."""
    report = run_with_runtime(lambda rt: rt.synthesize(max_create=max_create))
    console.print(f"[green]Created:[/green] {', '.join(report.created) or '-'}")
    console.print(f"[yellow]Removed:[/yellow] {', '.join(report.removed) or '-'}")
    console.print(f"[dim]{report.total_cells} cells in pool[/dim]")


@_app.command("policy-score")
def policy_score(
    text: str = typer.Argument(help="Text to score"),
):
    """Score text against the local policy rules without learning."""
    engine = SaiaContext.get().runtime.policy
    decision = engine.evaluate_rules(text)
    SaiaContext.reset()
    table = Table(title="Policy")
    table.add_column("Component")
    table.add_column("Value", justify="right")
    table.add_row("tokens", f"{engine.token_score(text):.3f}")
    table.add_row("proximity", f"{engine.proximity_score(text):.3f}")
    table.add_row("ngrams", f"{engine.ngram_score(text):.3f}")
    table.add_row("risk", f"{decision.risk:.3f}")
    table.add_row("threshold", f"{engine.threshold:.3f}")
    console.print(table)
    verdict = "[green]pass[/green]" if decision.passed else f"[red]block[/red] ({decision.reason})"
    console.print(f"Decision: {verdict}")


@_app.command("tools")
def tools():
    """List registered tools with their learned statistics."""
    registry = SaiaContext.get().runtime.tools
    SaiaContext.reset()
    table = Table(title="Tools")
    table.add_column("ID", style="bold")
    table.add_column("Side effects")
    table.add_column("Risk")
    table.add_column("Calls", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg ms", justify="right")
    for t in registry.list_with_stats():
        table.add_row(
            t.spec.id, t.spec.side_effects, t.spec.risk, str(t.stats.count),
            f"{t.success_rate:.0%}", f"{t.avg_latency_ms:.1f}",
        )
    console.print(table)


@_app.command("recommend")
def recommend(
    prompt: str = typer.Argument(help="Task description"),
    domain: str = typer.Option("", "--domain", "-d", help="Task domain"),
    tag: list[str] = typer.Option(None, "--tag", help="Task tag (repeatable)"),
    k: int = typer.Option(3, "--k", "-k", help="How many tools to return"),
):
    """Recommend tools for a task."""
    from saia.tools.schema import TaskContext

    registry = SaiaContext.get().runtime.tools
    SaiaContext.reset()
    recs = registry.recommend(TaskContext(prompt=prompt, domain=domain, tags=tag or []), k=k)
    table = Table(title="Recommended tools")
    table.add_column("ID", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg ms", justify="right")
    for r in recs:
        table.add_row(r.id, f"{r.score:.3f}", f"{r.success_rate:.0%}", f"{r.avg_latency_ms:.1f}")
    console.print(table)


@_app.command("router-state")
def router_state(
    as_json: bool = typer.Option(False, "--json", help="Print the raw state"),
):
    """Show the cell pool and bandit state."""
    rt = SaiaContext.get().runtime
    SaiaContext.reset()
    router = rt.router
    state = router.get_bandit_state()
    if as_json:
        _print_json({
            "cells": [c.id for c in router.cells],
            "active": [c.id for c in router.pool],
            "bandit": state.model_dump(),
            "params": router.get_params().model_dump(),
            "effective_epsilon": router.effective_epsilon(),
        })
        return
    table = Table(title=f"Router (eps={router.effective_epsilon():.3f}, step={router.step})")
    table.add_column("Cell", style="bold")
    table.add_column("Active")
    table.add_column("Tags")
    table.add_column("Temp", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("Pulls", justify="right")
    active = {c.id for c in router.pool}
    for c in router.cells:
        table.add_row(
            c.id, "yes" if c.id in active else "no", ", ".join(c.capabilities),
            f"{c.temperature:.2f}", f"{router.value(c.id):.3f}", str(state.counts.get(c.id, 0)),
        )
    console.print(table)


@_app.command("metrics")
def metrics():
    """Show per-cell adaptation metrics from the last snapshot."""
    rt = SaiaContext.get().runtime
    SaiaContext.reset()
    table = Table(title="Cells")
    table.add_column("Cell", style="bold")
    table.add_column("Success EMA", justify="right")
    table.add_column("Router conf", justify="right")
    for cell_id, stat in rt.metrics.per_cell().items():
        table.add_row(cell_id, f"{stat.success_ema:.3f}", f"{stat.router_confidence:.2f}")
    console.print(table)
    console.print(f"[dim]Last global perf: {rt.evolution.last_perf:.3f}, "
                  f"non-improving cycles: {rt.evolution.non_improving_cycles}[/dim]")


@_app.command("patterns")
def patterns(
    activate: str = typer.Option("", "--activate", help="Make a pattern active"),
):
    """List dispatch patterns, optionally switching the active one."""
    from saia.exceptions import PatternNotFoundError
    from saia.patterns.registry import pattern_complexity

    registry = SaiaContext.get().runtime.patterns
    SaiaContext.reset()
    if activate:
        try:
            registry.set_active(activate)
        except PatternNotFoundError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        registry.save()
        console.print(f"[green]Active pattern:[/green] {activate}")
    table = Table(title="Patterns")
    table.add_column("ID", style="bold")
    table.add_column("Router")
    table.add_column("Cells")
    table.add_column("Complexity", justify="right")
    for p in registry.list_patterns():
        marker = " *" if p.id == registry.active_id else ""
        table.add_row(p.id + marker, p.router, ", ".join(p.cells) or "(all)", f"{pattern_complexity(p):.0f}")
    console.print(table)


@_app.command("audit")
def audit(
    kind: str = typer.Option("action", "--kind", "-k", help="action, tool, cell or evolution"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries"),
):
    """Show recent signed audit entries."""
    from saia.governance.audit import STREAMS

    if kind not in STREAMS:
        console.print(f"[red]Unknown kind '{kind}'.[/red] Use one of: {', '.join(STREAMS)}")
        raise typer.Exit(1)
    trail = SaiaContext.get().runtime.audit
    SaiaContext.reset()
    rows = trail.read_stream(kind, limit)
    if not rows:
        console.print("[dim]No audit entries yet.[/dim]")
        return
    table = Table(title=f"Audit ({kind})")
    table.add_column("Time", style="dim")
    table.add_column("ID")
    table.add_column("Detail")
    table.add_column("Sig", style="dim")
    for row in rows:
        detail = {k: v for k, v in row.items() if k not in ("id", "kind", "timestamp", "signature", "signature_algo")}
        table.add_row(
            str(row.get("timestamp", ""))[:19], str(row.get("id", "")),
            orjson.dumps(detail).decode()[:80], str(row.get("signature", ""))[:12],
        )
    console.print(table)


@_app.command("audit-verify")
def audit_verify(
    kind: str = typer.Option("", "--kind", "-k", help="Only verify one stream"),
):
    """Re-check HMAC signatures of the persisted audit streams."""
    from saia.governance.audit import STREAMS

    trail = SaiaContext.get().runtime.audit
    SaiaContext.reset()
    kinds = [kind] if kind else ["action", "tool", "cell"]
    failed = False
    for k in kinds:
        if k not in STREAMS:
            console.print(f"[red]Unknown kind '{k}'.[/red]")
            raise typer.Exit(1)
        report = trail.verify(k)
        if report.ok:
            console.print(f"[green]OK[/green] {report.stream}: {report.checked} entries")
        else:
            failed = True
            lines = ", ".join(str(n) for n in report.invalid[:10])
            console.print(f"[red]INVALID[/red] {report.stream}: {len(report.invalid)}/{report.checked} (lines {lines})")
    if failed:
        raise typer.Exit(1)


@_app.command("version")
def version_cmd():
    """Show saia version."""
    from saia import __version__
    console.print(f"saia v{__version__}")


def _configure_logging() -> None:
    from saia.config import settings

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    # keep stdout for command output
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def main(args: list[str] | None = None) -> None:
    """Entry point that routes bare prompts to `act` before Typer sees them."""
    argv = args if args is not None else sys.argv[1:]
    _configure_logging()

    if argv and argv[0] not in _SUBCOMMANDS:
        argv = ["act", " ".join(argv)]

    original_argv = sys.argv
    sys.argv = ["saia"] + argv
    try:
        _app()
    finally:
        sys.argv = original_argv
