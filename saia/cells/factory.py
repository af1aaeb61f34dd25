"""Cell factory — builds cells from domain signatures."""

from __future__ import annotations

from pydantic import BaseModel, Field

from saia.cells.cell import Cell, CellIdentity
from saia.llm.base import BaseLLMProvider

TOOL_INSTRUCTIONS = (
    " You are tool-aware. When a tool is applicable, output ONLY JSON in the "
    'format {"tool":{"id":"tool-id","input":{...}}} with the correct '
    "parameters, no extra text."
)

BASE_PROMPT = (
    "You are a tool execution assistant. When the user mentions a tool by id "
    'you MUST output ONLY the tool JSON {"tool":{"id":"tool-id","input":{...}}}. '
    "Otherwise answer the request directly and concisely."
)


class DomainSignature(BaseModel):
    """Blueprint for a new cell proposed by domain synthesis."""

    id: str
    tags: list[str] = Field(default_factory=list)
    temperature: float = 0.4
    system_prompt: str


def cell_id_for(domain_id: str) -> str:
    return f"cell-{domain_id}"


class CellFactory:
    def __init__(self, llm: BaseLLMProvider | None = None, timeout_s: float = 30.0) -> None:
        self._llm = llm
        self._timeout_s = timeout_s

    def create_from_domain(self, sig: DomainSignature) -> Cell:
        identity = CellIdentity(
            id=cell_id_for(sig.id),
            capabilities=tuple(sig.tags),
            system_prompt=sig.system_prompt + TOOL_INSTRUCTIONS,
        )
        return Cell(identity, llm=self._llm, temperature=sig.temperature, timeout_s=self._timeout_s)

    def create_base(self) -> Cell:
        """The general-purpose cell every pool starts with."""
        return self.create_from_domain(
            DomainSignature(
                id="base",
                tags=["general", "assist"],
                temperature=0.1,
                system_prompt=BASE_PROMPT,
            )
        )
