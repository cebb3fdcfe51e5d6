from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from pydantic import BaseModel

from ..orchestration.errors import AgentInputError
from ..services.llm import BackendRequest, BackendResponse
from ..services.parsing import parse_structured_output

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.context import ContextSnapshot
    from ..schemas.pipeline import PipelineRequest
    from ..services.llm import BackendInvoker

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_SYSTEM_PROMPT = (
    "You are part of slideforge, a presentation content pipeline. "
    "Answer with a single JSON value and nothing else."
)


@dataclass
class AgentContext:
    """Context provided to an agent for one attempt of one task node."""

    node_id: str
    request: "PipelineRequest"
    snapshot: "ContextSnapshot"
    invoker: "BackendInvoker"
    attempt: int = 1
    fallback: bool = False
    slide_concurrency: int = 4

    @property
    def backend_id(self) -> str:
        return self.invoker.backend_id

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        task: str | None = None,
    ) -> BackendResponse:
        request = BackendRequest(
            task=task or self.node_id,
            prompt=prompt,
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return await self.invoker.invoke(request)

    async def generate_structured(
        self,
        prompt: str,
        model: type[ModelT],
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        task: str | None = None,
    ) -> ModelT:
        response = await self.generate(prompt, system_prompt=system_prompt, temperature=temperature, task=task)
        return parse_structured_output(response.content, model)


class BaseAgent(Protocol):
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]

    def prepare(self, request: "PipelineRequest", snapshot: "ContextSnapshot") -> dict[str, Any]:
        ...

    async def handle(self, payload: Any, *, context: AgentContext) -> BaseModel:
        ...


def word_count(text: str) -> int:
    return len(text.split())


def clip_words(text: str, limit: int) -> str:
    words = text.split()
    if len(words) <= limit:
        return " ".join(words)
    return " ".join(words[:limit])


def keywords(text: str, *, min_length: int = 4) -> set[str]:
    cleaned = "".join(char.lower() if char.isalnum() else " " for char in text)
    return {word for word in cleaned.split() if len(word) >= min_length}


def upstream(snapshot: "ContextSnapshot", node_id: str, model: type[ModelT]) -> ModelT:
    """Fetch a committed upstream output, failing as an input error when absent."""
    value = snapshot.get(node_id)
    if not isinstance(value, model):
        raise AgentInputError(f"Upstream output {node_id} is unavailable")
    return value


def optional_upstream(snapshot: "ContextSnapshot", node_id: str, model: type[ModelT]) -> ModelT | None:
    value = snapshot.get(node_id)
    return value if isinstance(value, model) else None
