"""Custom exception hierarchy for saia."""

from __future__ import annotations

from typing import Any


class SaiaError(Exception):
    """Base for all saia errors."""


class PolicyRejectedError(SaiaError):
    """A request was blocked by the policy engine. Carries the decision."""

    def __init__(self, message: str, decision: Any = None) -> None:
        super().__init__(message)
        self.decision = decision


class ToolNotFoundError(SaiaError):
    """Requested tool does not exist in the registry."""


class ToolPolicyDeniedError(SaiaError):
    """Tool call disallowed by the tool allowlist or side-effect policy."""


class ToolExecutionError(SaiaError):
    """A tool adapter failed during execution."""


class BackendError(SaiaError):
    """The language-model backend call failed or timed out."""


class ConfigLoadError(SaiaError):
    """Persisted state is missing or corrupt."""


class SignatureMismatchError(SaiaError):
    """An audit record's signature does not match its payload."""


class PatternNotFoundError(SaiaError):
    """No pattern with the given id exists in the registry."""
