from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Sequence

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import BackendSettings
from ..core.logging import get_logger
from ..core.metrics import record_backend_call
from ..orchestration.errors import BackendError, BackendTimeoutError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.routing import BackendDescriptor

logger = get_logger(name=__name__)


@dataclass(slots=True)
class BackendRequest:
    task: str
    prompt: str
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(slots=True)
class BackendResponse:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class ModelBackend(Protocol):
    async def generate(self, request: BackendRequest) -> BackendResponse:
        ...


def _messages_from_request(request: BackendRequest) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if request.system_prompt:
        messages.append(SystemMessage(content=request.system_prompt))
    messages.append(HumanMessage(content=request.prompt))
    return messages


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(
            str(item.get("text", "")) if isinstance(item, dict) else str(item)
            for item in content
        )
    return str(content)


@dataclass
class OllamaBackend:
    """LangChain-based client for local Ollama models."""

    settings: BackendSettings
    _client: Any

    @classmethod
    def from_settings(cls, settings: BackendSettings, *, client: Any | None = None) -> "OllamaBackend":
        if client is None:
            client = ChatOllama(
                model=settings.model,
                base_url=settings.base_url.rstrip("/"),
                temperature=settings.temperature,
                num_predict=settings.max_tokens,
            )
        return cls(settings=settings, _client=client)

    async def generate(self, request: BackendRequest) -> BackendResponse:
        messages = _messages_from_request(request)
        client = self._client
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens  # Ollama calls max tokens num_predict
        if options:
            client = client.bind(options=options)
        started = time.perf_counter()
        try:
            result = await client.ainvoke(messages)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "ollama_generation_failed",
                backend=self.settings.backend_id,
                model=self.settings.model,
                error=str(exc),
            )
            raise BackendError(f"Ollama backend {self.settings.backend_id} failed: {exc}") from exc
        content = _extract_content(result)
        usage = getattr(result, "usage_metadata", None) or {}
        return BackendResponse(
            content=content,
            prompt_tokens=int(usage.get("input_tokens") or _estimate_tokens(request.prompt)),
            completion_tokens=int(usage.get("output_tokens") or _estimate_tokens(content)),
            latency_ms=(time.perf_counter() - started) * 1000,
        )


@dataclass
class OpenAICompatibleBackend:
    """Chat-completions client for OpenAI-compatible HTTP APIs.

    One ``httpx.AsyncClient`` is kept for the backend's lifetime; a client
    passed in by the caller is never closed here.
    """

    settings: BackendSettings
    _client: httpx.AsyncClient
    _owns_client: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: BackendSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> "OpenAICompatibleBackend":
        if client is None:
            return cls(
                settings=settings,
                _client=httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds)),
                _owns_client=True,
            )
        return cls(settings=settings, _client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _payload(self, request: BackendRequest) -> dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": self.settings.model,
            "messages": messages,
            "temperature": request.temperature if request.temperature is not None else self.settings.temperature,
            "max_tokens": request.max_tokens or self.settings.max_tokens,
        }

    async def generate(self, request: BackendRequest) -> BackendResponse:
        url = f"{self.settings.base_url.rstrip('/')}/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.settings.api_key or ''}"}
        started = time.perf_counter()
        try:
            response = await self._client.post(url, json=self._payload(request), headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"Backend {self.settings.backend_id} returned status {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendError(f"Backend {self.settings.backend_id} request failed: {exc}") from exc

        try:
            content = body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise BackendError(f"Backend {self.settings.backend_id} returned an unexpected payload") from exc
        usage = body.get("usage") or {}
        return BackendResponse(
            content=str(content),
            prompt_tokens=int(usage.get("prompt_tokens") or _estimate_tokens(request.prompt)),
            completion_tokens=int(usage.get("completion_tokens") or _estimate_tokens(str(content))),
            latency_ms=(time.perf_counter() - started) * 1000,
        )


def build_backend(settings: BackendSettings) -> ModelBackend:
    if settings.provider == "openai":
        return OpenAICompatibleBackend.from_settings(settings)
    return OllamaBackend.from_settings(settings)


@dataclass
class BackendInvoker:
    """Calls one routed backend on behalf of a task node attempt."""

    descriptor: "BackendDescriptor"
    timeout_seconds: float
    calls: int = 0
    failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    responses: list[BackendResponse] = field(default_factory=list)

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    @property
    def cost(self) -> float:
        total = self.prompt_tokens + self.completion_tokens
        return total / 1000 * self.descriptor.cost_per_1k_tokens

    async def invoke(self, request: BackendRequest) -> BackendResponse:
        if request.temperature is None:
            request.temperature = self.descriptor.temperature
        if request.max_tokens is None:
            request.max_tokens = self.descriptor.max_tokens
        self.calls += 1
        try:
            response = await asyncio.wait_for(self.descriptor.backend.generate(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.failures += 1
            record_backend_call(backend=self.backend_id, outcome="timeout")
            raise BackendTimeoutError(
                f"Backend {self.backend_id} timed out after {self.timeout_seconds:.1f}s on {request.task}"
            ) from exc
        except BackendError:
            self.failures += 1
            record_backend_call(backend=self.backend_id, outcome="error")
            raise
        record_backend_call(backend=self.backend_id, outcome="success")
        self.prompt_tokens += response.prompt_tokens
        self.completion_tokens += response.completion_tokens
        self.responses.append(response)
        return response
