from __future__ import annotations

from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from .agents import (
    AudienceAdaptationOutput,
    ChartSuggestion,
    ExecutiveSummaryOutput,
    MediaSuggestion,
    QualityFinding,
    Severity,
    WidgetPlacement,
)
from .deck import Deck


class RoutingPolicy(str, Enum):
    QUALITY = "quality"
    SPEED = "speed"
    COST = "cost"
    BALANCED = "balanced"
    LOCAL_ONLY = "local-only"


class PipelineRequest(BaseModel):
    topic: str = Field(..., min_length=3, max_length=2000)
    audience: str = Field("general audience", min_length=1)
    tone: str = Field("professional", min_length=1)
    desired_slide_count: int = Field(10, ge=3, le=50)
    theme: str = "professional"
    duration_minutes: int | None = Field(default=None, ge=1, le=240)
    sources: list[str] = Field(default_factory=list, description="Inline source documents.")
    urls: list[str] = Field(default_factory=list)
    policy: RoutingPolicy | None = None
    enable_live_data: bool = False
    generate_executive_summary: bool = False
    audience_adaptation_target: str | None = None
    target_duration_minutes: int | None = Field(default=None, ge=1, le=240)
    strict_fact_check: bool = False
    best_effort: bool = Field(False, description="Return completed work when the request is cancelled or times out.")
    request_id: str = Field(default_factory=lambda: uuid4().hex)

    @property
    def wants_executive_summary(self) -> bool:
        return self.generate_executive_summary or "executive" in self.audience.lower()

    @property
    def wants_audience_adaptation(self) -> bool:
        return bool(self.audience_adaptation_target)

    def flag_enabled(self, flag: str | None) -> bool:
        if flag is None:
            return True
        return bool(getattr(self, flag))


class QualityReport(BaseModel):
    findings: list[QualityFinding] = Field(default_factory=list)
    scores: dict[str, float] = Field(default_factory=dict)
    unavailable_validators: list[str] = Field(default_factory=list)

    def count(self, severity: Severity) -> int:
        return sum(1 for finding in self.findings if finding.severity == severity)

    def by_source(self, source: str) -> list[QualityFinding]:
        return [finding for finding in self.findings if finding.source == source]

    @property
    def high_severity_count(self) -> int:
        return self.count(Severity.HIGH)


class NodeReport(BaseModel):
    node_id: str
    phase: str
    status: str
    attempts: int = 0
    retries: int = 0
    backend_id: str | None = None
    fallback_used: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    latency_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    error: str | None = None


class BackendUsage(BaseModel):
    calls: int = 0
    failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0


class PipelineMetadata(BaseModel):
    run_id: str
    policy: RoutingPolicy
    total_latency_ms: float = 0.0
    execution_order: list[str] = Field(default_factory=list)
    nodes: dict[str, NodeReport] = Field(default_factory=dict)
    backend_usage: dict[str, BackendUsage] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class Enhancements(BaseModel):
    charts: list[ChartSuggestion] = Field(default_factory=list)
    media: list[MediaSuggestion] = Field(default_factory=list)
    live_widgets: list[WidgetPlacement] = Field(default_factory=list)


class PipelineResult(BaseModel):
    status: Literal["completed", "degraded", "partial"]
    deck: Deck | None = None
    quality_report: QualityReport = Field(default_factory=QualityReport)
    enhancements: Enhancements = Field(default_factory=Enhancements)
    executive_summary: ExecutiveSummaryOutput | None = None
    audience_adaptation: AudienceAdaptationOutput | None = None
    degraded_nodes: list[str] = Field(default_factory=list)
    skipped_nodes: list[str] = Field(default_factory=list)
    missing_nodes: list[str] = Field(default_factory=list, description="Nodes cut short by cancellation.")
    metadata: PipelineMetadata
