from __future__ import annotations

from dataclasses import dataclass
from typing import Any, get_args

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..orchestration.context import ContextSnapshot
from ..orchestration.graph import DATA_VIZ_PLANNER, LIVE_WIDGET_PLANNER, MEDIA_FINDER, SPEAKER_NOTES, STRUCTURER
from ..schemas.agents import (
    ChartPlanOutput,
    ChartSuggestion,
    LiveWidgetInput,
    LiveWidgetOutput,
    MediaPlanOutput,
    MediaSuggestion,
    ReviewInput,
    Severity,
    SlideNote,
    SpeakerNotesOutput,
    StructureOutput,
    WidgetPlacement,
)
from ..schemas.deck import ChartKind, ChartSpec, WidgetKind, WidgetSpec
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext, upstream
from .validators import ReviewAgent, slides_digest

logger = get_logger(name=__name__)

CHART_KINDS = frozenset(get_args(ChartKind))
WIDGET_KINDS = frozenset(get_args(WidgetKind))


class _ChartDraft(BaseModel):
    slide_id: str
    kind: str = "bar"
    x: str = ""
    y: str = ""
    rationale: str = ""
    title: str | None = None


class _ChartPlanDraft(BaseModel):
    charts: list[_ChartDraft] = Field(default_factory=list)


@dataclass
class DataVizPlannerAgent(ReviewAgent):
    name: str = DATA_VIZ_PLANNER
    description: str = "Suggests charts for slides that carry quantitative content."
    category: str = "data-viz"
    output_model: type[BaseModel] = ChartPlanOutput

    async def handle(self, payload: ReviewInput, *, context: AgentContext) -> ChartPlanOutput:
        prompt = (
            "Suggest charts for slides whose content is quantitative. "
            f"Chart kinds: {', '.join(sorted(CHART_KINDS))}.\n"
            f"{slides_digest(payload.slides)}\n"
            'Return JSON: {"charts": [{"slide_id": "...", "kind": "bar", "x": "...", "y": "...", '
            '"rationale": "...", "title": "..."}]}'
        )
        draft = await context.generate_structured(prompt, _ChartPlanDraft)
        known = {slide.id for slide in payload.slides}
        charts: list[ChartSuggestion] = []
        findings = []
        for item in draft.charts:
            if item.slide_id not in known:
                continue
            kind = item.kind if item.kind in CHART_KINDS else "bar"
            charts.append(
                ChartSuggestion(
                    slide_id=item.slide_id,
                    chart=ChartSpec(kind=kind, x=item.x, y=item.y, rationale=item.rationale, title=item.title),
                )
            )
            findings.append(
                self._finding(
                    f"A {kind} chart would support this slide",
                    severity=Severity.INFO,
                    slide_id=item.slide_id,
                    suggestion=item.rationale or None,
                )
            )
        return ChartPlanOutput(charts=charts, findings=findings)


class _MediaDraft(BaseModel):
    slide_id: str
    query: str = ""
    alt: str = ""
    caption: str | None = None


class _MediaPlanDraft(BaseModel):
    media: list[_MediaDraft] = Field(default_factory=list)


@dataclass
class MediaFinderAgent(ReviewAgent):
    name: str = MEDIA_FINDER
    description: str = "Proposes imagery with search queries and alt text for slides."
    category: str = "media"
    output_model: type[BaseModel] = MediaPlanOutput

    async def handle(self, payload: ReviewInput, *, context: AgentContext) -> MediaPlanOutput:
        prompt = (
            "Propose at most one image per slide where imagery helps. Give a stock-photo search query "
            "and descriptive alt text.\n"
            f"{slides_digest(payload.slides)}\n"
            'Return JSON: {"media": [{"slide_id": "...", "query": "...", "alt": "...", "caption": null}]}'
        )
        draft = await context.generate_structured(prompt, _MediaPlanDraft)
        known = {slide.id for slide in payload.slides}
        media: list[MediaSuggestion] = []
        findings = []
        seen: set[str] = set()
        for item in draft.media:
            if item.slide_id not in known or item.slide_id in seen or not item.query.strip():
                continue
            seen.add(item.slide_id)
            if not item.alt.strip():
                findings.append(
                    self._finding(
                        "Suggested image has no alt text",
                        severity=Severity.WARNING,
                        slide_id=item.slide_id,
                        category="accessibility",
                    )
                )
                continue
            media.append(
                MediaSuggestion(
                    slide_id=item.slide_id,
                    query=item.query.strip(),
                    alt=item.alt.strip(),
                    caption=item.caption,
                )
            )
        return MediaPlanOutput(media=media, findings=findings)


class _NoteDraft(BaseModel):
    slide_id: str
    notes: str = ""


class _NotesDraft(BaseModel):
    notes: list[_NoteDraft] = Field(default_factory=list)


@dataclass
class SpeakerNotesAgent(ReviewAgent):
    name: str = SPEAKER_NOTES
    description: str = "Writes presenter notes for every slide."
    category: str = "speaker-notes"
    output_model: type[BaseModel] = SpeakerNotesOutput

    async def handle(self, payload: ReviewInput, *, context: AgentContext) -> SpeakerNotesOutput:
        prompt = (
            f"Write 2-4 sentences of speaker notes per slide for {payload.audience}, tone {payload.tone}.\n"
            f"{slides_digest(payload.slides)}\n"
            'Return JSON: {"notes": [{"slide_id": "...", "notes": "..."}]}'
        )
        draft = await context.generate_structured(prompt, _NotesDraft)
        by_slide = {item.slide_id: item.notes.strip() for item in draft.notes if item.notes.strip()}
        notes = [SlideNote(slide_id=slide.id, notes=by_slide[slide.id]) for slide in payload.slides if slide.id in by_slide]
        findings = [
            self._finding("No speaker notes were produced for this slide", severity=Severity.INFO, slide_id=slide.id)
            for slide in payload.slides
            if slide.id not in by_slide
        ]
        return SpeakerNotesOutput(notes=notes, findings=findings)


class _WidgetDraft(BaseModel):
    section_id: str
    kind: str
    config: dict[str, Any] = Field(default_factory=dict)
    refresh_seconds: int | None = None
    endpoint: str | None = None
    description: str | None = None


class _WidgetPlanDraft(BaseModel):
    widgets: list[_WidgetDraft] = Field(default_factory=list)


@dataclass
class LiveWidgetPlannerAgent:
    name: str = LIVE_WIDGET_PLANNER
    description: str = "Plans live data widgets for sections that benefit from real-time content."
    input_model: type[BaseModel] = LiveWidgetInput
    output_model: type[BaseModel] = LiveWidgetOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        structure = upstream(snapshot, STRUCTURER, StructureOutput)
        return {
            "topic": request.topic,
            "audience": request.audience,
            "outline": structure.outline.model_dump(),
        }

    async def handle(self, payload: LiveWidgetInput, *, context: AgentContext) -> LiveWidgetOutput:
        candidates = [section for section in payload.outline.sections if section.live_widget_suggested]
        if not candidates:
            candidates = list(payload.outline.sections)
        listing = "\n".join(f"[{section.id}] {section.title}: {section.goal}" for section in candidates)
        prompt = (
            f'Plan live widgets for a presentation on "{payload.topic}" for {payload.audience}.\n'
            f"Widget kinds: {', '.join(sorted(WIDGET_KINDS))}.\n"
            f"Sections:\n{listing}\n"
            'Return JSON: {"widgets": [{"section_id": "...", "kind": "ticker", "config": {}, '
            '"refresh_seconds": 60, "endpoint": null, "description": "..."}]}'
        )
        draft = await context.generate_structured(prompt, _WidgetPlanDraft)
        known = {section.id for section in candidates}
        placements = []
        for item in draft.widgets:
            if item.section_id not in known or item.kind not in WIDGET_KINDS:
                logger.info("widget_suggestion_dropped", section=item.section_id, kind=item.kind)
                continue
            placements.append(
                WidgetPlacement(
                    section_id=item.section_id,
                    widget=WidgetSpec(
                        kind=item.kind,
                        config=item.config,
                        refresh_seconds=item.refresh_seconds if item.refresh_seconds and item.refresh_seconds > 0 else None,
                        endpoint=item.endpoint,
                        description=item.description,
                    ),
                )
            )
        return LiveWidgetOutput(widgets=placements)
