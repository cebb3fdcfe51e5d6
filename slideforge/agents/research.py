from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..orchestration.context import ContextSnapshot
from ..orchestration.graph import RESEARCHER
from ..schemas.agents import ResearchInput, ResearchOutput
from ..schemas.deck import ResearchSnippet
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext

logger = get_logger(name=__name__)

MAX_SOURCE_CHARS = 1500


class _SnippetDraft(BaseModel):
    source: str = "model knowledge"
    url: str | None = None
    text: str = ""
    tags: list[str] = Field(default_factory=list)
    confidence: float = 0.5
    title: str | None = None


class _ResearchDraft(BaseModel):
    subtopics: list[str] = Field(default_factory=list)
    snippets: list[_SnippetDraft] = Field(default_factory=list)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def curate_snippets(
    drafts: list[_SnippetDraft],
    *,
    min_confidence: float,
    max_snippets: int,
) -> list[ResearchSnippet]:
    """Dedupe, clamp, filter, rank and cap raw snippets."""
    seen: set[str] = set()
    unique: list[_SnippetDraft] = []
    for draft in drafts:
        text = re.sub(r"\s+", " ", draft.text).strip()
        key = _normalize(text)
        if not key or key in seen:
            continue
        seen.add(key)
        confidence = max(0.0, min(1.0, draft.confidence))
        unique.append(draft.model_copy(update={"text": text, "confidence": confidence}))

    kept = [draft for draft in unique if draft.confidence >= min_confidence]
    kept.sort(key=lambda draft: draft.confidence, reverse=True)
    return [
        ResearchSnippet(
            id=f"snippet-{index + 1}",
            source=draft.source or "model knowledge",
            url=draft.url,
            text=draft.text,
            tags=[tag.strip().lower() for tag in draft.tags if tag.strip()],
            confidence=draft.confidence,
            title=draft.title,
        )
        for index, draft in enumerate(kept[:max_snippets])
    ]


@dataclass
class ResearcherAgent:
    name: str = RESEARCHER
    description: str = "Extracts subtopics and gathers evidence snippets with sources and confidence."
    input_model: type[BaseModel] = ResearchInput
    output_model: type[BaseModel] = ResearchOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        return {
            "topic": request.topic,
            "audience": request.audience,
            "tone": request.tone,
            "sources": request.sources,
            "urls": request.urls,
        }

    def _build_prompt(self, payload: ResearchInput) -> str:
        lines = [
            f'Research the presentation topic "{payload.topic}" for {payload.audience}.',
            "List 4-6 subtopics, then for each give 2-3 factual snippets of 1-3 sentences.",
            "Each snippet needs a source, optional url, tags, and a confidence between 0 and 1.",
        ]
        if payload.sources:
            lines.append("Prefer facts from these provided documents:")
            for index, source in enumerate(payload.sources, start=1):
                lines.append(f"[doc {index}] {source[:MAX_SOURCE_CHARS]}")
        if payload.urls:
            lines.append("Reference URLs: " + ", ".join(payload.urls))
        lines.append(
            'Return JSON: {"subtopics": ["..."], "snippets": [{"source": "...", "url": null, '
            '"text": "...", "tags": ["..."], "confidence": 0.8, "title": "..."}]}'
        )
        return "\n".join(lines)

    async def handle(self, payload: ResearchInput, *, context: AgentContext) -> ResearchOutput:
        draft = await context.generate_structured(self._build_prompt(payload), _ResearchDraft)
        snippets = curate_snippets(
            draft.snippets,
            min_confidence=payload.min_confidence,
            max_snippets=payload.max_snippets,
        )
        subtopics = [topic.strip() for topic in draft.subtopics if topic.strip()]
        logger.info(
            "research_completed",
            raw_snippets=len(draft.snippets),
            kept_snippets=len(snippets),
            subtopics=len(subtopics),
        )
        # an empty snippet list fails the output contract and is retried
        return ResearchOutput.model_construct(subtopics=subtopics, snippets=snippets)
