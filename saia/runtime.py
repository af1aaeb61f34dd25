"""SAIA Runtime — the request pipeline and the context object that owns state.

Every component is built once by ``SaiaRuntime.from_settings`` and passed
explicitly; there are no module-level singletons. ``act()`` is the request
boundary: it never raises for a single request and always records metrics.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import httpx
import orjson
import structlog
from pydantic import BaseModel, Field

from saia.adaptation.feedback import FeedbackController, Outcome
from saia.adaptation.router import BanditParams, LearningRouter
from saia.cells.factory import CellFactory, cell_id_for
from saia.config import SaiaSettings
from saia.evolution.engine import EvolutionDecision, SelfDevelopmentEngine
from saia.evolution.state import EvolutionState
from saia.evolution.synthesis import MergeThresholds, discover, find_redundant_cells
from saia.exceptions import BackendError, PolicyRejectedError
from saia.extract import extract_domain_suggestion, extract_tool_step
from saia.governance.audit import AuditTrail
from saia.governance.signing import sha256_hex
from saia.llm.base import BaseLLMProvider
from saia.metrics.store import MetricsStore, RequestEvent
from saia.patterns.registry import PatternRegistry
from saia.policy.engine import PolicyEngine
from saia.policy.knowledge import PolicyKnowledgeStore
from saia.policy.safety_model import HttpSafetyModel, NullSafetyModel, SafetyModelAdapter
from saia.policy.schema import PolicyDecision, ToolPolicy
from saia.tools.builtins import register_builtin_tools
from saia.tools.knowledge import ToolKnowledge
from saia.tools.registry import ToolRegistry
from saia.tools.runner import GovernedToolRunner
from saia.tools.schema import TaskContext, ToolOutput
from saia.types import RouterStrategy, new_id

logger = structlog.get_logger()

NO_CELL = "(none)"
UNKNOWN_CELL = "(unknown)"


class ActResult(BaseModel):
    """What a caller gets back for one request."""

    ok: bool
    request_id: str
    router: str | None = None
    cell_id: str | None = None
    response: str = ""
    confidence: float = 0.0
    route_reason: str = ""
    policy: PolicyDecision | None = None
    latency_ms: float = 0.0
    sai: float | None = None
    domain: str | None = None
    tags: list[str] = Field(default_factory=list)
    tool_id: str | None = None
    tool_output: ToolOutput | None = None
    signature: str = ""
    error: str | None = None
    error_type: str | None = None


class SynthesisReport(BaseModel):
    created: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    total_cells: int = 0


class SaiaRuntime:
    def __init__(
        self,
        settings: SaiaSettings,
        metrics: MetricsStore,
        router: LearningRouter,
        feedback: FeedbackController,
        policy: PolicyEngine,
        audit: AuditTrail,
        patterns: PatternRegistry,
        evolution: SelfDevelopmentEngine,
        tools: ToolRegistry,
        runner: GovernedToolRunner,
        factory: CellFactory,
    ) -> None:
        self.settings = settings
        self.metrics = metrics
        self.router = router
        self.feedback = feedback
        self.policy = policy
        self.audit = audit
        self.patterns = patterns
        self.evolution = evolution
        self.tools = tools
        self.runner = runner
        self.factory = factory
        self.state = evolution.state
        self._last_synthesis = float("-inf")
        self._synthesis_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: SaiaSettings,
        llm: BaseLLMProvider | None = None,
        safety_model: SafetyModelAdapter | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        load_state: bool = True,
    ) -> SaiaRuntime:
        """Wire every component from settings.

        With ``load_state=False`` nothing is read from or written to the
        knowledge directory; the audit trail stays in memory.
        """
        kdir: Path | None = settings.knowledge_dir if load_state else None

        def state_path(name: str) -> Path | None:
            return kdir / name if kdir is not None else None

        if llm is None and settings.anthropic_api_key:
            from saia.llm.anthropic import AnthropicProvider

            llm = AnthropicProvider(api_key=settings.anthropic_api_key, model=settings.default_model)

        if safety_model is None:
            if settings.policy_llm_endpoint:
                safety_model = HttpSafetyModel(
                    endpoint=settings.policy_llm_endpoint,
                    api_key=settings.policy_llm_api_key,
                    model=settings.policy_llm_model,
                    timeout_s=settings.policy_llm_timeout_s,
                    max_retries=settings.policy_llm_max_retries,
                    transport=http_transport,
                )
            else:
                safety_model = NullSafetyModel()

        metrics = MetricsStore()
        factory = CellFactory(llm=llm, timeout_s=settings.backend_timeout_s)
        base = factory.create_base()

        tools = ToolRegistry(ToolKnowledge(state_path("tools.json"), latency_slo_ms=settings.latency_slo_ms))
        register_builtin_tools(tools, http_transport=http_transport)

        params = BanditParams(
            eps0=settings.rl_epsilon0,
            min_epsilon=settings.rl_min_epsilon,
            epsilon_decay=settings.rl_epsilon_decay,
            warmup_steps=settings.rl_warmup_steps,
            alpha=settings.rl_alpha,
            decay=settings.rl_decay,
            drift_window=settings.rl_drift_window,
            drift_drop=settings.rl_drift_drop,
            spike_epsilon=settings.rl_spike_epsilon,
            spike_decay=settings.rl_spike_decay,
            spike_steps=settings.rl_spike_steps,
        )
        router = LearningRouter(
            [base],
            metrics,
            params=params,
            tag_guard_threshold=settings.tag_guard_threshold,
            base_cell_id=base.id,
            tool_ids=tools.ids(),
        )
        feedback = FeedbackController(metrics, latency_slo_ms=settings.latency_slo_ms)
        policy = PolicyEngine(PolicyKnowledgeStore(state_path("policy.json")), safety_model=safety_model)
        audit = AuditTrail(settings.logs_dir if load_state else None, secret=settings.secret)
        patterns = PatternRegistry(state_path("patterns.json"))
        state = EvolutionState(state_path("state.json"))
        evolution = SelfDevelopmentEngine(
            patterns,
            metrics,
            audit,
            state=state,
            router=router,
            min_cycles=settings.evolution_min_cycles,
        )
        if evolution.load_snapshot():
            for sig in state.data.domains:
                router.add_cell(factory.create_from_domain(sig))
        router.apply_pattern(patterns.active())

        tool_policy = ToolPolicy(
            allowed_tools=settings.allowed_tools or ["*"],
            allow_network=settings.tools_allow_network,
        )
        runner = GovernedToolRunner(tools, audit, policy=tool_policy, workspace_dir=settings.workspace_dir)
        return cls(
            settings=settings,
            metrics=metrics,
            router=router,
            feedback=feedback,
            policy=policy,
            audit=audit,
            patterns=patterns,
            evolution=evolution,
            tools=tools,
            runner=runner,
            factory=factory,
        )

    # ── Request pipeline ─────────────────────────────────────────

    def default_strategy(self) -> RouterStrategy:
        active = self.patterns.active()
        fallback = RouterStrategy.parse(self.settings.default_router)
        return RouterStrategy.parse(active.router, fallback) if active else fallback

    async def act(
        self,
        prompt: str,
        router: str | None = None,
        tools: list[str] | None = None,
        auto_recommend: bool = False,
        recommend_k: int = 3,
    ) -> ActResult:
        """Handle one request end to end.

        With ``auto_recommend`` the top ``recommend_k`` tools for the prompt
        are added to the allowed tools.
        """
        request_id = new_id()
        started = time.monotonic()

        def elapsed() -> float:
            return round((time.monotonic() - started) * 1000, 1)

        if not prompt or not prompt.strip():
            self._record(request_id, NO_CELL, elapsed(), success=False, policy_passed=True)
            return ActResult(ok=False, request_id=request_id, error="prompt is required", error_type="ValueError")

        decision: PolicyDecision | None = None
        try:
            decision = await self.policy.evaluate(prompt)
            await self.policy.alearn(prompt, decision)
            if not decision.passed:
                raise PolicyRejectedError("Policy rejected request", decision=decision)
            if auto_recommend:
                tools = self._with_recommended_tools(prompt, tools, recommend_k)
            return await self._serve(request_id, prompt, router, tools, decision, elapsed)
        except PolicyRejectedError as e:
            latency = elapsed()
            self._record(request_id, NO_CELL, latency, success=False, policy_passed=False)
            signed = await self.audit.log_action(
                request_id=request_id,
                cell_id=NO_CELL,
                prompt_hash=sha256_hex(prompt),
                policy_passed=False,
                policy_risk=e.decision.risk,
                policy_reason=e.decision.reason,
                router_strategy="n/a",
                adaptation_reason="policy-fail",
                latency_ms=latency,
            )
            logger.info("request_rejected", request_id=request_id, risk=e.decision.risk, reason=e.decision.reason)
            return ActResult(
                ok=False,
                request_id=request_id,
                policy=e.decision,
                latency_ms=latency,
                signature=signed.signature,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            latency = elapsed()
            self._record(request_id, UNKNOWN_CELL, latency, success=False, policy_passed=decision.passed if decision else True)
            logger.error("request_failed", request_id=request_id, error=str(e), error_type=type(e).__name__)
            return ActResult(
                ok=False,
                request_id=request_id,
                policy=decision,
                latency_ms=latency,
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )

    def _with_recommended_tools(self, prompt: str, tools: list[str] | None, k: int) -> list[str]:
        recommended = [r.id for r in self.tools.recommend(TaskContext(prompt=prompt), k)]
        logger.debug("tools_recommended", tools=recommended)
        return list(dict.fromkeys([*(tools or []), *recommended]))

    async def _serve(self, request_id, prompt, router, tools, decision, elapsed) -> ActResult:
        strategy = RouterStrategy.parse(router, self.default_strategy())
        route = self.router.route(prompt, strategy)
        cell = route.cell
        if tools:
            cell = self.router.get_cell(self.settings.base_cell_id) or cell

        error: BackendError | None = None
        try:
            reply = await cell.act(prompt)
        except BackendError as e:
            error = e
            reply = f"(degraded) {cell.id} could not answer: {e}"
        success = error is None

        tool_id: str | None = None
        tool_out: ToolOutput | None = None
        if success and tools:
            step = extract_tool_step(reply)
            if step is not None and step.tool_id in tools:
                task = TaskContext(prompt=prompt, cell_id=cell.id)
                tool_out = await self.runner.run(step.tool_id, step.input, task)
                tool_id = step.tool_id
                shown = orjson.dumps(tool_out.data).decode() if tool_out.ok else f"error: {tool_out.error}"
                reply = f"{reply}\n\n[tool:{tool_id}] => {shown}"

        suggestion, reply = extract_domain_suggestion(reply)
        domain = suggestion.domain if suggestion else None
        tags = list(suggestion.tags) if suggestion else []
        if not domain and tool_id and self.tools.has(tool_id):
            spec, _ = self.tools.get(tool_id)
            domain = spec.tags[0] if spec.tags else "general"
            tags = spec.tags[:6]

        latency = elapsed()
        self._record(
            request_id, cell.id, latency, success=success, policy_passed=True,
            prompt=prompt, response=reply, domain=domain, tags=tags,
        )
        sai = self.feedback.update(cell, Outcome(success=success, latency_ms=latency), route.confidence)
        if strategy is RouterStrategy.RL_BANDIT:
            self.router.update(cell.id, sai)

        signed = await self.audit.log_action(
            request_id=request_id,
            cell_id=cell.id,
            prompt_hash=sha256_hex(prompt),
            response_hash=sha256_hex(reply),
            policy_passed=True,
            policy_risk=decision.risk,
            policy_reason=decision.reason,
            router_strategy=strategy.value,
            router_confidence=route.confidence,
            adaptation_reason=route.reason,
            latency_ms=latency,
            success=success,
        )
        logger.info(
            "request_served",
            request_id=request_id,
            cell=cell.id,
            router=strategy.value,
            latency_ms=latency,
            success=success,
        )
        self._schedule_synthesis()
        return ActResult(
            ok=success,
            request_id=request_id,
            router=strategy.value,
            cell_id=cell.id,
            response=reply,
            confidence=route.confidence,
            route_reason=route.reason,
            policy=decision,
            latency_ms=latency,
            sai=sai,
            domain=domain,
            tags=tags,
            tool_id=tool_id,
            tool_output=tool_out,
            signature=signed.signature,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )

    def _record(self, request_id: str, cell_id: str, latency_ms: float, success: bool, policy_passed: bool, **extra) -> None:
        self.metrics.record(
            RequestEvent(
                request_id=request_id,
                cell_id=cell_id,
                latency_ms=latency_ms,
                success=success,
                policy_passed=policy_passed,
                prompt=extra.get("prompt"),
                response=extra.get("response"),
                domain=extra.get("domain"),
                tags=tuple(extra.get("tags") or ()),
            )
        )

    # ── Structural change ────────────────────────────────────────

    async def synthesize(self, max_create: int | None = None) -> SynthesisReport:
        """Create cells for newly observed domains, then merge near-duplicates."""
        report = SynthesisReport()
        existing = {c.id for c in self.router.cells}
        for sig in discover(self.metrics.recent()):
            if max_create is not None and len(report.created) >= max_create:
                break
            if cell_id_for(sig.id) in existing:
                continue
            cell = self.factory.create_from_domain(sig)
            self.router.add_cell(cell)
            self.state.data.domains.append(sig)
            existing.add(cell.id)
            report.created.append(cell.id)
            await self.audit.log_cell("created", cell.id, tags=sig.tags, reason="domain-synthesis")

        thresholds = MergeThresholds(
            min_name_sim=self.settings.merge_min_name_sim,
            min_tag_jaccard=self.settings.merge_min_tag_jaccard,
            min_obs=self.settings.merge_min_obs,
        )
        for cell_id in find_redundant_cells(self.router.cells, self.metrics.per_cell(), thresholds):
            if cell_id == self.settings.base_cell_id:
                continue
            self.router.remove_cell(cell_id)
            self.metrics.forget(cell_id)
            self.state.data.domains = [d for d in self.state.data.domains if cell_id_for(d.id) != cell_id]
            report.removed.append(cell_id)
            await self.audit.log_cell("removed", cell_id, reason="redundant")

        if report.created or report.removed:
            self.router.apply_pattern(self.patterns.active())
            self.evolution.save_snapshot()
            logger.info("cells_synthesized", created=report.created, removed=report.removed)
        report.total_cells = len(self.router.cells)
        return report

    def _schedule_synthesis(self) -> None:
        if not self.settings.auto_synthesize:
            return
        if self._synthesis_task is not None and not self._synthesis_task.done():
            return
        if time.monotonic() - self._last_synthesis < self.settings.synthesize_cooldown_s:
            return
        self._synthesis_task = asyncio.create_task(self._auto_synthesize())

    async def _auto_synthesize(self) -> None:
        try:
            report = await self.synthesize(max_create=1)
        except Exception as e:
            logger.warning("auto_synthesis_failed", error=str(e))
            return
        if report.created:
            self._last_synthesis = time.monotonic()

    async def evolve(self) -> EvolutionDecision:
        return await self.evolution.evaluate()

    async def aclose(self) -> None:
        if self._synthesis_task is not None and not self._synthesis_task.done():
            await self._synthesis_task
        self.evolution.save_snapshot()
        await self.policy.aclose()
