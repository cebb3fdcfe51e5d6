from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PolicyName = Literal["quality", "speed", "cost", "balanced", "local-only"]


class BackendSettings(BaseModel):
    backend_id: str = Field(..., min_length=1, description="Stable identifier used in routing tables and metrics.")
    provider: Literal["ollama", "openai"] = "ollama"
    model: str = Field(..., min_length=1, description="Model name passed to the provider.")
    base_url: str = Field("http://localhost:11434", description="Provider base URL.")
    api_key: str | None = Field(default=None, description="API key for remote providers.")
    tier: Literal["high", "balanced", "fast"] = Field("balanced", description="Capability tier.")
    speed: Literal["fast", "medium", "slow"] = "medium"
    cost_per_1k_tokens: float = Field(0.0, ge=0.0)
    local: bool = Field(False, description="Whether the backend may serve local-only requests.")
    tasks: list[str] = Field(
        default_factory=list,
        description="Task-node identifiers this backend serves; empty means general purpose.",
    )
    max_tokens: int = Field(4000, ge=64)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    http_timeout_seconds: float = Field(120.0, gt=0.0, description="Transport timeout for remote HTTP backends.")
    enabled: bool = True

    @model_validator(mode="after")
    def _local_backends_are_ollama(self) -> "BackendSettings":
        if self.local and self.provider != "ollama":
            raise ValueError(f"Backend {self.backend_id} is marked local but uses provider {self.provider}")
        return self


class ExecutionSettings(BaseModel):
    max_attempts: int = Field(3, ge=1, description="Attempts per node on its primary backend.")
    base_backoff_seconds: float = Field(1.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(8.0, ge=0.0)
    fallback_attempts: int = Field(1, ge=0, description="Attempts on the fallback backend once retries are exhausted.")
    node_timeout_seconds: float = Field(60.0, gt=0.0, description="Deadline for a single backend call.")
    request_deadline_seconds: float = Field(600.0, gt=0.0)
    max_concurrency: int = Field(7, ge=1, description="Concurrent nodes within a fan-out phase.")
    slide_concurrency: int = Field(4, ge=1, description="Concurrent section writers inside the slidewriter.")


class ObservabilitySettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    metrics_enabled: bool = Field(True)
    json_logs: bool = Field(True, description="Render log lines as JSON; console output otherwise.")


def _default_backends() -> list[BackendSettings]:
    return [
        BackendSettings(
            backend_id="gpt-4-turbo",
            provider="openai",
            model="gpt-4-turbo",
            base_url="https://api.openai.com",
            tier="high",
            speed="medium",
            cost_per_1k_tokens=0.03,
            max_tokens=8000,
            temperature=0.3,
        ),
        BackendSettings(
            backend_id="gpt-3.5-turbo",
            provider="openai",
            model="gpt-3.5-turbo",
            base_url="https://api.openai.com",
            tier="fast",
            speed="fast",
            cost_per_1k_tokens=0.002,
        ),
        BackendSettings(
            backend_id="llama3.1-70b",
            model="llama3.1:70b",
            tier="high",
            speed="slow",
            local=True,
            max_tokens=8000,
        ),
        BackendSettings(
            backend_id="llama3.1-8b",
            model="llama3.1:8b",
            tier="balanced",
            speed="medium",
            local=True,
        ),
        BackendSettings(
            backend_id="phi3-mini",
            model="phi3:mini",
            tier="fast",
            speed="fast",
            local=True,
            max_tokens=2000,
            temperature=0.5,
        ),
    ]


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    default_policy: PolicyName = Field("balanced")

    backends: list[BackendSettings] = Field(default_factory=_default_backends)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _unique_backend_ids(self) -> "Settings":
        seen: set[str] = set()
        for backend in self.backends:
            if backend.backend_id in seen:
                raise ValueError(f"Duplicate backend id: {backend.backend_id}")
            seen.add(backend.backend_id)
        return self


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
