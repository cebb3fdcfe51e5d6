from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .deck import ChartSpec, Confidence, DeckOutline, ResearchSnippet, Slide, WidgetSpec


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"


class AgentMetadata(BaseModel):
    name: str
    description: str


class QualityFinding(BaseModel):
    source: str = Field("", description="Task node that produced the finding.")
    severity: Severity = Severity.INFO
    category: str = "general"
    message: str = Field(..., min_length=1)
    slide_id: str | None = None
    suggestion: str | None = None


# ──────────────────────────────────────────────────────────────────────────────
# Core generation chain
# ──────────────────────────────────────────────────────────────────────────────


class ResearchInput(BaseModel):
    topic: str = Field(..., min_length=3)
    audience: str
    tone: str
    sources: list[str] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    max_snippets: int = Field(20, ge=1)
    min_confidence: Confidence = 0.6


class ResearchOutput(BaseModel):
    subtopics: list[str] = Field(default_factory=list)
    snippets: list[ResearchSnippet] = Field(..., min_length=1)


class StructureInput(BaseModel):
    topic: str = Field(..., min_length=3)
    audience: str
    tone: str
    theme: str
    desired_slide_count: int = Field(..., ge=1)
    duration_minutes: int | None = None
    subtopics: list[str] = Field(default_factory=list)
    snippets: list[ResearchSnippet] = Field(..., min_length=1)


class StructureOutput(BaseModel):
    outline: DeckOutline


class SlidewriterInput(BaseModel):
    outline: DeckOutline
    snippets: list[ResearchSnippet] = Field(default_factory=list)
    audience: str
    tone: str


class SlidewriterOutput(BaseModel):
    slides: list[Slide] = Field(..., min_length=1)


# ──────────────────────────────────────────────────────────────────────────────
# Quality assurance fan-out
# ──────────────────────────────────────────────────────────────────────────────


class ReviewInput(BaseModel):
    topic: str
    audience: str
    tone: str
    slides: list[Slide] = Field(..., min_length=1)
    snippets: list[ResearchSnippet] = Field(default_factory=list)
    strict: bool = False


class QAOutput(BaseModel):
    findings: list[QualityFinding] = Field(default_factory=list)
    score: Confidence | None = None


class ChartSuggestion(BaseModel):
    slide_id: str
    chart: ChartSpec


class ChartPlanOutput(QAOutput):
    charts: list[ChartSuggestion] = Field(default_factory=list)


class MediaSuggestion(BaseModel):
    slide_id: str
    query: str = Field(..., min_length=1)
    alt: str = Field(..., min_length=1)
    caption: str | None = None
    src: str | None = None


class MediaPlanOutput(QAOutput):
    media: list[MediaSuggestion] = Field(default_factory=list)


class SlideNote(BaseModel):
    slide_id: str
    notes: str = Field(..., min_length=1)


class SpeakerNotesOutput(QAOutput):
    notes: list[SlideNote] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Enhancement and finalization
# ──────────────────────────────────────────────────────────────────────────────


class LiveWidgetInput(BaseModel):
    topic: str
    audience: str
    outline: DeckOutline


class WidgetPlacement(BaseModel):
    section_id: str
    widget: WidgetSpec


class LiveWidgetOutput(BaseModel):
    widgets: list[WidgetPlacement] = Field(default_factory=list)


class FinalizationInput(BaseModel):
    topic: str
    audience: str
    tone: str
    slides: list[Slide] = Field(..., min_length=1)
    outline: DeckOutline | None = None
    snippets: list[ResearchSnippet] = Field(default_factory=list)
    target_audience: str | None = None
    target_duration_minutes: int | None = None


class ExecutiveSummaryOutput(BaseModel):
    headline: str = Field(..., min_length=1)
    key_points: list[str] = Field(..., min_length=1)
    recommendation: str | None = None
    risks: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)


class AudienceAdaptationOutput(BaseModel):
    target_audience: str
    slides: list[Slide] = Field(..., min_length=1)
    changes: list[str] = Field(default_factory=list)


class AdaptationInput(FinalizationInput):
    target_audience: str = Field(..., min_length=1)
