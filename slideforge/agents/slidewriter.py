from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, get_args

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..orchestration.context import ContextSnapshot
from ..orchestration.errors import MalformedOutputError
from ..orchestration.graph import RESEARCHER, SLIDEWRITER, STRUCTURER
from ..schemas.agents import ResearchOutput, SlidewriterInput, SlidewriterOutput, StructureOutput
from ..schemas.deck import (
    BulletsBlock,
    DeckOutline,
    HeadingBlock,
    OutlineSection,
    ResearchSnippet,
    Slide,
    SlideLayout,
    SubheadingBlock,
)
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext, clip_words, keywords, upstream

logger = get_logger(name=__name__)

LAYOUTS = frozenset(get_args(SlideLayout))
RELEVANT_SNIPPET_LIMIT = 5
RELEVANT_SNIPPET_CONFIDENCE = 0.6


@dataclass(frozen=True, slots=True)
class WordBudget:
    title_max: int = 8
    bullet_max: int = 12
    bullets_per_slide: int = 6


class _SlideDraft(BaseModel):
    title: str = ""
    subtitle: str | None = None
    bullets: list[str] = Field(default_factory=list)
    layout: str | None = None
    cites: list[str] = Field(default_factory=list)
    notes: str | None = None


class _SectionSlides(BaseModel):
    slides: list[_SlideDraft] = Field(default_factory=list)


def relevant_snippets(section: OutlineSection, snippets: list[ResearchSnippet]) -> list[ResearchSnippet]:
    terms = keywords(" ".join([section.title, section.goal, *section.key_points]))
    scored: list[tuple[int, ResearchSnippet]] = []
    for snippet in snippets:
        if snippet.confidence < RELEVANT_SNIPPET_CONFIDENCE:
            continue
        overlap = len(terms & (keywords(snippet.text) | {tag.lower() for tag in snippet.tags}))
        if overlap:
            scored.append((overlap, snippet))
    scored.sort(key=lambda item: (item[0], item[1].confidence), reverse=True)
    return [snippet for _, snippet in scored[:RELEVANT_SNIPPET_LIMIT]]


def build_slide(
    draft: _SlideDraft,
    *,
    slide_id: str,
    section: OutlineSection,
    relevant: list[ResearchSnippet],
    budget: WordBudget,
) -> Slide:
    title = clip_words(draft.title or section.title, budget.title_max)
    bullets = [clip_words(item, budget.bullet_max) for item in draft.bullets if item.strip()]
    bullets = bullets[: budget.bullets_per_slide]
    blocks: list[Any] = [HeadingBlock(text=title)]
    if draft.subtitle:
        blocks.append(SubheadingBlock(text=draft.subtitle.strip()))
    if bullets:
        blocks.append(BulletsBlock(items=bullets))

    if draft.layout in LAYOUTS:
        layout = draft.layout
    else:
        layout = "title+bullets" if bullets else "title"

    known = {snippet.id for snippet in relevant}
    cites = [cite for cite in draft.cites if cite in known]
    if not cites:
        cites = [snippet.id for snippet in relevant[:2]]

    return Slide(
        id=slide_id,
        layout=layout,
        blocks=blocks,
        notes=draft.notes,
        cites=cites,
        section_id=section.id,
        estimated_seconds=30 + 10 * len(bullets),
    )


@dataclass
class SlidewriterAgent:
    name: str = SLIDEWRITER
    description: str = "Writes slide content for every outline section within word budgets."
    input_model: type[BaseModel] = SlidewriterInput
    output_model: type[BaseModel] = SlidewriterOutput
    budget: WordBudget = field(default_factory=WordBudget)

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        structure = upstream(snapshot, STRUCTURER, StructureOutput)
        research = upstream(snapshot, RESEARCHER, ResearchOutput)
        return {
            "outline": structure.outline.model_dump(),
            "snippets": [snippet.model_dump() for snippet in research.snippets],
            "audience": request.audience,
            "tone": request.tone,
        }

    def _build_prompt(
        self,
        payload: SlidewriterInput,
        section: OutlineSection,
        relevant: list[ResearchSnippet],
    ) -> str:
        evidence = "\n".join(f"[{snippet.id}] {snippet.text}" for snippet in relevant) or "(no direct evidence)"
        points = "\n".join(f"- {point}" for point in section.key_points)
        return (
            f'Write {section.est_slides} slide(s) for the section "{section.title}" of a deck titled '
            f'"{payload.outline.title}" for {payload.audience} in a {payload.tone} tone.\n'
            f"Section goal: {section.goal}\nKey points:\n{points}\n"
            f"Evidence (cite by id):\n{evidence}\n"
            f"Titles at most {self.budget.title_max} words, bullets at most {self.budget.bullet_max} words, "
            f"no more than {self.budget.bullets_per_slide} bullets per slide.\n"
            'Return JSON: {"slides": [{"title": "...", "subtitle": null, "bullets": ["..."], '
            '"layout": "title+bullets", "cites": ["snippet-1"]}]}'
        )

    async def _write_section(
        self,
        payload: SlidewriterInput,
        section: OutlineSection,
        context: AgentContext,
        semaphore: asyncio.Semaphore,
    ) -> list[Slide]:
        relevant = relevant_snippets(section, payload.snippets)
        async with semaphore:
            drafts = await context.generate_structured(
                self._build_prompt(payload, section, relevant),
                _SectionSlides,
                task=f"{self.name}:{section.id}",
            )
        if not drafts.slides:
            raise MalformedOutputError(f"No slides returned for {section.id}")
        return [
            build_slide(
                draft,
                slide_id=f"{section.id}-slide-{index + 1}",
                section=section,
                relevant=relevant,
                budget=self.budget,
            )
            for index, draft in enumerate(drafts.slides[: section.est_slides])
        ]

    async def handle(self, payload: SlidewriterInput, *, context: AgentContext) -> SlidewriterOutput:
        outline: DeckOutline = payload.outline
        semaphore = asyncio.Semaphore(max(1, context.slide_concurrency))
        results = await asyncio.gather(
            *(self._write_section(payload, section, context, semaphore) for section in outline.sections),
            return_exceptions=True,
        )
        slides: list[Slide] = []
        for section, result in zip(outline.sections, results):
            if isinstance(result, BaseException):
                logger.warning("section_write_failed", section=section.id, error=str(result))
                raise result
            slides.extend(result)
        for order, slide in enumerate(slides, start=1):
            slide.order = order
        return SlidewriterOutput(slides=slides)
