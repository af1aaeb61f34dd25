"""CLI runtime context — bridges the sync CLI to the async runtime."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from saia.config import SaiaSettings
from saia.runtime import SaiaRuntime


class SaiaContext:
    """Process-wide context holding the runtime for CLI commands."""

    _instance: SaiaContext | None = None

    def __init__(self, settings: SaiaSettings | None = None) -> None:
        # Re-read the environment so SAIA_* changes apply per invocation.
        self.settings = settings or SaiaSettings()
        self.settings.knowledge_dir.mkdir(parents=True, exist_ok=True)
        self.runtime = SaiaRuntime.from_settings(self.settings)

    @classmethod
    def get(cls) -> SaiaContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def run_with_runtime(fn) -> Any:
    """Run ``fn(runtime)`` (a coroutine function) and persist state afterwards."""
    runtime = SaiaContext.get().runtime

    async def _go():
        try:
            return await fn(runtime)
        finally:
            await runtime.aclose()
            SaiaContext.reset()

    return run_async(_go())
