from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..orchestration.context import ContextSnapshot
from ..orchestration.graph import RESEARCHER, STRUCTURER
from ..schemas.agents import ResearchOutput, StructureInput, StructureOutput
from ..schemas.deck import DeckOutline, OutlineSection, ResearchSnippet
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext, clip_words, upstream

MAX_REFERENCES = 5
MINUTES_PER_SLIDE = 2.5
WORDS_PER_SLIDE = 75
LIVE_DATA_KEYWORDS = ("data", "statistics", "trends", "real-time", "live", "current")


class _SectionDraft(BaseModel):
    title: str
    goal: str = ""
    key_points: list[str] = Field(default_factory=list)
    chart_suggested: bool = False


class _OutlineDraft(BaseModel):
    title: str
    subtitle: str | None = None
    sections: list[_SectionDraft] = Field(..., min_length=1)
    conclusion: str = ""


def split_slide_budget(total: int, sections: int) -> list[int]:
    """Spread ``total`` slides evenly, giving the remainder to the first sections."""
    base, remainder = divmod(total, sections)
    return [base + (1 if index < remainder else 0) for index in range(sections)]


def extract_references(snippets: list[ResearchSnippet]) -> list[str]:
    references: list[str] = []
    for snippet in snippets:
        if snippet.source not in references:
            references.append(snippet.source)
    return references[:MAX_REFERENCES]


def suggests_live_widget(section: _SectionDraft) -> bool:
    haystack = f"{section.title} {section.goal}".lower()
    return any(keyword in haystack for keyword in LIVE_DATA_KEYWORDS)


@dataclass
class StructurerAgent:
    name: str = STRUCTURER
    description: str = "Turns the topic and research into a paced deck outline."
    input_model: type[BaseModel] = StructureInput
    output_model: type[BaseModel] = StructureOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        research = upstream(snapshot, RESEARCHER, ResearchOutput)
        return {
            "topic": request.topic,
            "audience": request.audience,
            "tone": request.tone,
            "theme": request.theme,
            "desired_slide_count": request.desired_slide_count,
            "duration_minutes": request.duration_minutes,
            "subtopics": research.subtopics,
            "snippets": [snippet.model_dump() for snippet in research.snippets],
        }

    def _build_prompt(self, payload: StructureInput) -> str:
        evidence = "\n".join(f"- {snippet.text}" for snippet in payload.snippets[:10])
        subtopics = ", ".join(payload.subtopics) or "derive them from the evidence"
        return (
            f'Plan a presentation on "{payload.topic}" for {payload.audience} in a {payload.tone} tone.\n'
            f"Target about {payload.desired_slide_count} content slides.\n"
            f"Subtopics: {subtopics}\n"
            f"Evidence:\n{evidence}\n"
            "Give a title, optional subtitle, 3-6 sections (title of at most 8 words, goal, 3-6 key points, "
            "whether a chart would help) and a one or two sentence conclusion.\n"
            'Return JSON: {"title": "...", "subtitle": "...", "sections": [{"title": "...", "goal": "...", '
            '"key_points": ["..."], "chart_suggested": false}], "conclusion": "..."}'
        )

    async def handle(self, payload: StructureInput, *, context: AgentContext) -> StructureOutput:
        draft = await context.generate_structured(self._build_prompt(payload), _OutlineDraft)
        drafts = draft.sections[: payload.desired_slide_count]
        budget = split_slide_budget(payload.desired_slide_count, len(drafts))
        sections = [
            OutlineSection(
                id=f"section-{index + 1}",
                title=clip_words(section.title, 8),
                goal=section.goal,
                est_slides=budget[index],
                key_points=[point for point in section.key_points if point.strip()],
                order=index + 1,
                chart_suggested=section.chart_suggested,
                live_widget_suggested=suggests_live_widget(section),
            )
            for index, section in enumerate(drafts)
        ]
        total_slides = sum(section.est_slides for section in sections)
        outline = DeckOutline(
            id=f"outline-{uuid4().hex[:8]}",
            title=draft.title.strip(),
            subtitle=draft.subtitle or f"A {payload.tone} briefing for {payload.audience}",
            audience=payload.audience,
            tone=payload.tone,
            theme=payload.theme,
            sections=sections,
            conclusion=draft.conclusion.strip(),
            references=extract_references(payload.snippets),
            estimated_duration=payload.duration_minutes or math.ceil(total_slides * MINUTES_PER_SLIDE),
            word_count=total_slides * WORDS_PER_SLIDE,
        )
        return StructureOutput(outline=outline)
