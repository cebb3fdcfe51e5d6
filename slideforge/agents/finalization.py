from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.context import ContextSnapshot
from ..orchestration.graph import AUDIENCE_ADAPTER, EXECUTIVE_SUMMARY, RESEARCHER, SLIDEWRITER, STRUCTURER
from ..schemas.agents import (
    AdaptationInput,
    AudienceAdaptationOutput,
    ExecutiveSummaryOutput,
    FinalizationInput,
    ResearchOutput,
    SlidewriterOutput,
    StructureOutput,
)
from ..schemas.deck import BulletsBlock, HeadingBlock, Slide
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext, clip_words, optional_upstream, upstream
from .slidewriter import WordBudget
from .validators import slides_digest

MINUTES_PER_SLIDE = 2.5


def _finalization_payload(request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
    written = upstream(snapshot, SLIDEWRITER, SlidewriterOutput)
    structure = optional_upstream(snapshot, STRUCTURER, StructureOutput)
    research = optional_upstream(snapshot, RESEARCHER, ResearchOutput)
    return {
        "topic": request.topic,
        "audience": request.audience,
        "tone": request.tone,
        "slides": [slide.model_dump() for slide in written.slides],
        "outline": structure.outline.model_dump() if structure else None,
        "snippets": [snippet.model_dump() for snippet in research.snippets] if research else [],
        "target_audience": request.audience_adaptation_target,
        "target_duration_minutes": request.target_duration_minutes,
    }


@dataclass
class ExecutiveSummaryAgent:
    name: str = EXECUTIVE_SUMMARY
    description: str = "Condenses the deck into a headline, key points and a recommendation for executives."
    input_model: type[BaseModel] = FinalizationInput
    output_model: type[BaseModel] = ExecutiveSummaryOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        return _finalization_payload(request, snapshot)

    async def handle(self, payload: FinalizationInput, *, context: AgentContext) -> ExecutiveSummaryOutput:
        evidence = "\n".join(f"- {snippet.text}" for snippet in payload.snippets[:5])
        prompt = (
            f'Write an executive summary of the presentation "{payload.topic}" for {payload.audience}.\n'
            f"{slides_digest(payload.slides)}\n"
            f"Key evidence:\n{evidence or '- none'}\n"
            "Give a one-line headline, 3-5 key points, a recommendation, the main risks, and any headline metrics.\n"
            'Return JSON: {"headline": "...", "key_points": ["..."], "recommendation": "...", '
            '"risks": ["..."], "metrics": {}}'
        )
        summary = await context.generate_structured(prompt, ExecutiveSummaryOutput)
        return summary.model_copy(update={"key_points": summary.key_points[:5]})


class _AdaptedSlide(BaseModel):
    id: str
    title: str | None = None
    bullets: list[str] | None = None
    notes: str | None = None


class _AdaptationDraft(BaseModel):
    slides: list[_AdaptedSlide] = Field(default_factory=list)
    changes: list[str] = Field(default_factory=list)


def _rewrite(slide: Slide, adapted: _AdaptedSlide, budget: WordBudget) -> Slide:
    blocks = []
    for block in slide.blocks:
        if isinstance(block, HeadingBlock) and adapted.title:
            blocks.append(block.model_copy(update={"text": clip_words(adapted.title, budget.title_max)}))
        elif isinstance(block, BulletsBlock) and adapted.bullets is not None:
            items = [clip_words(item, budget.bullet_max) for item in adapted.bullets if item.strip()]
            blocks.append(BulletsBlock(items=items[: budget.bullets_per_slide]))
        else:
            blocks.append(block)
    return slide.model_copy(update={"blocks": blocks, "notes": adapted.notes or slide.notes})


@dataclass
class AudienceAdapterAgent:
    name: str = AUDIENCE_ADAPTER
    description: str = "Rewrites the deck for a different audience and, optionally, a shorter slot."
    input_model: type[BaseModel] = AdaptationInput
    output_model: type[BaseModel] = AudienceAdaptationOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        return _finalization_payload(request, snapshot)

    async def handle(self, payload: AdaptationInput, *, context: AgentContext) -> AudienceAdaptationOutput:
        slides = list(payload.slides)
        changes: list[str] = []
        if payload.target_duration_minutes:
            limit = max(1, math.floor(payload.target_duration_minutes / MINUTES_PER_SLIDE))
            if len(slides) > limit:
                changes.append(f"Trimmed from {len(slides)} to {limit} slides for {payload.target_duration_minutes} minutes")
                slides = slides[:limit]

        prompt = (
            f"Adapt these slides from {payload.audience} to {payload.target_audience}. "
            "Adjust tone, vocabulary, examples and technical depth; keep slide ids.\n"
            f"{slides_digest(slides)}\n"
            'Return JSON: {"slides": [{"id": "...", "title": "...", "bullets": ["..."], "notes": "..."}], '
            '"changes": ["..."]}'
        )
        draft = await context.generate_structured(prompt, _AdaptationDraft)
        adapted = {item.id: item for item in draft.slides}
        budget = WordBudget()
        rewritten = [_rewrite(slide, adapted[slide.id], budget) if slide.id in adapted else slide for slide in slides]
        changes.extend(change.strip() for change in draft.changes if change.strip())
        return AudienceAdaptationOutput(target_audience=payload.target_audience, slides=rewritten, changes=changes)
