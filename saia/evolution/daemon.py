"""Evolution daemon — runs self-development cycles on an interval.

Uses an asyncio task for scheduling; a failed cycle is logged and the loop
keeps going.
"""

from __future__ import annotations

import asyncio

import structlog

from saia.evolution.engine import EvolutionDecision, SelfDevelopmentEngine

logger = structlog.get_logger()


class EvolutionDaemon:
    """Background loop calling ``SelfDevelopmentEngine.evaluate()``."""

    def __init__(self, engine: SelfDevelopmentEngine, interval_s: float = 300.0, history_limit: int = 100) -> None:
        self._engine = engine
        self._interval_s = max(0.01, interval_s)
        self._history_limit = history_limit
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[EvolutionDecision] = []

    async def start(self) -> None:
        """Start the daemon loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("evolution_daemon_started", interval_s=self._interval_s)

    async def stop(self) -> None:
        """Stop the daemon."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("evolution_daemon_stopped")

    async def run_once(self) -> EvolutionDecision:
        """Run a single evaluation cycle."""
        decision = await self._engine.evaluate()
        self._history.append(decision)
        del self._history[: -self._history_limit]
        if decision.action in ("commit", "rollback"):
            logger.info(
                "evolution_decision",
                action=decision.action,
                candidate=decision.candidate_id,
                delta_v=decision.delta_v,
            )
        return decision

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[EvolutionDecision]:
        return list(self._history)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("evolution_daemon_cycle_failed", error=str(e))

            try:
                await asyncio.sleep(self._interval_s)
            except asyncio.CancelledError:
                break
