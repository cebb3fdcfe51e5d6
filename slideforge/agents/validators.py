"""Quality validators run side by side once slide content exists.

Every validator reads the same slides and returns its own ordered findings.
Deterministic checks come first, followed by whatever the backend review
adds, so a validator's output order is stable for a given backend answer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.context import ContextSnapshot
from ..orchestration.graph import (
    ACCESSIBILITY_LINTER,
    COPY_TIGHTENER,
    FACT_CHECKER,
    READABILITY_ANALYZER,
    RESEARCHER,
    SLIDEWRITER,
)
from ..schemas.agents import QAOutput, QualityFinding, ResearchOutput, ReviewInput, Severity, SlidewriterOutput
from ..schemas.deck import BulletsBlock, ImageBlock, ResearchSnippet, Slide
from ..schemas.pipeline import PipelineRequest
from .base import AgentContext, keywords, optional_upstream, upstream, word_count

_SEVERITY_ALIASES = {
    "critical": Severity.HIGH,
    "high": Severity.HIGH,
    "error": Severity.HIGH,
    "warning": Severity.WARNING,
    "medium": Severity.WARNING,
    "info": Severity.INFO,
    "low": Severity.INFO,
}


def coerce_severity(value: str | None) -> Severity:
    return _SEVERITY_ALIASES.get((value or "").strip().lower(), Severity.WARNING)


class _FindingDraft(BaseModel):
    severity: str | None = None
    category: str = "general"
    message: str = ""
    slide_id: str | None = None
    suggestion: str | None = None


class _ReviewDraft(BaseModel):
    findings: list[_FindingDraft] = Field(default_factory=list)
    score: float | None = None


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def slides_digest(slides: list[Slide]) -> str:
    lines = []
    for slide in slides:
        lines.append(f"[{slide.id}] " + " | ".join(slide.text_fragments()))
    return "\n".join(lines)


@dataclass
class ReviewAgent:
    name: str = ""
    description: str = ""
    category: str = "general"
    focus: str = ""
    input_model: type[BaseModel] = ReviewInput
    output_model: type[BaseModel] = QAOutput

    def prepare(self, request: PipelineRequest, snapshot: ContextSnapshot) -> dict[str, Any]:
        written = upstream(snapshot, SLIDEWRITER, SlidewriterOutput)
        research = optional_upstream(snapshot, RESEARCHER, ResearchOutput)
        return {
            "topic": request.topic,
            "audience": request.audience,
            "tone": request.tone,
            "slides": [slide.model_dump() for slide in written.slides],
            "snippets": [snippet.model_dump() for snippet in research.snippets] if research else [],
            "strict": request.strict_fact_check,
        }

    def _finding(
        self,
        message: str,
        *,
        severity: Severity,
        slide_id: str | None = None,
        suggestion: str | None = None,
        category: str | None = None,
    ) -> QualityFinding:
        return QualityFinding(
            source=self.name,
            severity=severity,
            category=category or self.category,
            message=message,
            slide_id=slide_id,
            suggestion=suggestion,
        )

    def check(self, payload: ReviewInput) -> list[QualityFinding]:
        return []

    async def review(self, payload: ReviewInput, context: AgentContext) -> _ReviewDraft:
        prompt = (
            f"Review these slides for {self.focus}. Audience: {payload.audience}. Tone: {payload.tone}.\n"
            f"{slides_digest(payload.slides)}\n"
            "Report only real problems. Severity is one of info, warning, high.\n"
            'Return JSON: {"findings": [{"severity": "warning", "category": "...", "message": "...", '
            '"slide_id": "...", "suggestion": "..."}], "score": 0.8}'
        )
        return await context.generate_structured(prompt, _ReviewDraft)

    def score(self, findings: list[QualityFinding], reviewed: float | None) -> float:
        if reviewed is not None:
            return _clamp(reviewed)
        penalty = sum(
            0.2 if finding.severity is Severity.HIGH else 0.05 if finding.severity is Severity.WARNING else 0.0
            for finding in findings
        )
        return _clamp(1.0 - penalty)

    async def handle(self, payload: ReviewInput, *, context: AgentContext) -> QAOutput:
        findings = self.check(payload)
        draft = await self.review(payload, context)
        known_slides = {slide.id for slide in payload.slides}
        for item in draft.findings:
            if not item.message.strip():
                continue
            findings.append(
                self._finding(
                    item.message.strip(),
                    severity=coerce_severity(item.severity),
                    slide_id=item.slide_id if item.slide_id in known_slides else None,
                    suggestion=item.suggestion,
                    category=item.category or self.category,
                )
            )
        return QAOutput(findings=findings, score=self.score(findings, draft.score))


@dataclass
class AccessibilityLinterAgent(ReviewAgent):
    name: str = ACCESSIBILITY_LINTER
    description: str = "Checks slide structure, text density and alt text for accessibility."
    category: str = "accessibility"
    focus: str = "accessibility: contrast-sensitive wording, jargon, reading order and alt text"
    max_bullets: int = 6
    title_max_words: int = 8
    bullet_max_words: int = 12

    def check(self, payload: ReviewInput) -> list[QualityFinding]:
        findings: list[QualityFinding] = []
        for slide in payload.slides:
            if not slide.title:
                findings.append(
                    self._finding(
                        "Slide has no heading; screen readers cannot announce it",
                        severity=Severity.HIGH,
                        slide_id=slide.id,
                        suggestion="Add a short heading block",
                    )
                )
            elif word_count(slide.title) > self.title_max_words:
                findings.append(
                    self._finding(
                        f"Title exceeds {self.title_max_words} words",
                        severity=Severity.WARNING,
                        slide_id=slide.id,
                    )
                )
            for block in slide.blocks:
                if isinstance(block, ImageBlock) and not block.alt.strip():
                    findings.append(
                        self._finding("Image is missing alt text", severity=Severity.HIGH, slide_id=slide.id)
                    )
                if isinstance(block, BulletsBlock):
                    if len(block.items) > self.max_bullets:
                        findings.append(
                            self._finding(
                                f"Slide carries {len(block.items)} bullets (max {self.max_bullets})",
                                severity=Severity.WARNING,
                                slide_id=slide.id,
                                suggestion="Split the slide or merge related bullets",
                            )
                        )
                    long_items = [item for item in block.items if word_count(item) > self.bullet_max_words]
                    if long_items:
                        findings.append(
                            self._finding(
                                f"{len(long_items)} bullet(s) exceed {self.bullet_max_words} words",
                                severity=Severity.INFO,
                                slide_id=slide.id,
                            )
                        )
        return findings


_SENTENCE_SPLIT = re.compile(r"[.!?]+\s+")


def _syllables(word: str) -> int:
    groups = re.findall(r"[aeiouy]+", word.lower())
    count = len(groups)
    if word.lower().endswith("e") and count > 1:
        count -= 1
    return max(1, count)


def reading_ease(text: str) -> float:
    """Flesch reading ease for ``text``; higher is easier."""
    words = re.findall(r"[A-Za-z']+", text)
    if not words:
        return 100.0
    sentences = max(1, len([part for part in _SENTENCE_SPLIT.split(text) if part.strip()]))
    syllables = sum(_syllables(word) for word in words)
    return 206.835 - 1.015 * (len(words) / sentences) - 84.6 * (syllables / len(words))


@dataclass
class ReadabilityAnalyzerAgent(ReviewAgent):
    name: str = READABILITY_ANALYZER
    description: str = "Scores slide readability and flags dense or complex wording."
    category: str = "readability"
    focus: str = "readability: sentence complexity, jargon and clarity for the audience"
    minimum_ease: float = 30.0

    def check(self, payload: ReviewInput) -> list[QualityFinding]:
        findings: list[QualityFinding] = []
        for slide in payload.slides:
            text = ". ".join(slide.text_fragments())
            if not text:
                continue
            ease = reading_ease(text)
            if ease < self.minimum_ease:
                findings.append(
                    self._finding(
                        f"Text is hard to read (reading ease {ease:.0f})",
                        severity=Severity.WARNING,
                        slide_id=slide.id,
                        suggestion="Use shorter words and sentences",
                    )
                )
        return findings


@dataclass
class CopyTightenerAgent(ReviewAgent):
    name: str = COPY_TIGHTENER
    description: str = "Suggests tighter, tone-consistent copy without editing the slides."
    category: str = "tone"
    focus: str = "concision and tone consistency; suggest tighter rewrites"
    filler_words: tuple[str, ...] = ("very", "really", "basically", "actually", "just", "in order to")

    def check(self, payload: ReviewInput) -> list[QualityFinding]:
        findings: list[QualityFinding] = []
        for slide in payload.slides:
            lowered = " ".join(slide.text_fragments()).lower()
            hits = [word for word in self.filler_words if re.search(rf"\b{re.escape(word)}\b", lowered)]
            if hits:
                findings.append(
                    self._finding(
                        "Filler wording: " + ", ".join(hits),
                        severity=Severity.INFO,
                        slide_id=slide.id,
                        suggestion="Remove filler words",
                    )
                )
        return findings


STATISTICAL_PATTERN = re.compile(
    r"\b\d+%|\b\d+\.\d+%|\b\d+\s*(?:million|billion|thousand)|\b\d+\s*(?:times|fold)\b",
    re.IGNORECASE,
)
FACTUAL_PATTERN = re.compile(
    r"\b(?:is|are|was|were|will be|has been|have been)\b.*\b(?:always|never|all|every|none|no)\b",
    re.IGNORECASE,
)
CAUSAL_PATTERN = re.compile(r"\b(?:leads to|causes|results in|increases|decreases|improves|reduces)\b", re.IGNORECASE)
OPINION_PATTERN = re.compile(r"\b(?:believe|think|feel|suggest|recommend|should|must)\b", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Claim:
    slide_id: str
    text: str
    kind: str


def classify_claim(text: str) -> str | None:
    if STATISTICAL_PATTERN.search(text):
        return "statistical"
    if FACTUAL_PATTERN.search(text):
        return "factual"
    if CAUSAL_PATTERN.search(text):
        return "causal"
    if OPINION_PATTERN.search(text):
        return "opinion"
    return None


def extract_claims(slides: list[Slide]) -> list[Claim]:
    claims: list[Claim] = []
    for slide in slides:
        for fragment in slide.text_fragments():
            kind = classify_claim(fragment)
            if kind is not None:
                claims.append(Claim(slide_id=slide.id, text=fragment, kind=kind))
    return claims


def supporting_snippets(claim: str, snippets: list[ResearchSnippet], *, limit: int = 3) -> list[ResearchSnippet]:
    terms = keywords(claim)
    matches = []
    for snippet in snippets:
        if snippet.confidence < 0.7:
            continue
        haystack = keywords(snippet.text) | {tag.lower() for tag in snippet.tags}
        if terms & haystack:
            matches.append(snippet)
    return matches[:limit]


class _SupportScore(BaseModel):
    index: int
    support_score: float = 0.0


class _SupportDraft(BaseModel):
    scores: list[_SupportScore] = Field(default_factory=list)


@dataclass
class FactCheckerAgent(ReviewAgent):
    name: str = FACT_CHECKER
    description: str = "Extracts claims from slides and verifies them against the research snippets."
    category: str = "fact-check"
    weak_support: float = 0.6
    no_support: float = 0.3

    async def handle(self, payload: ReviewInput, *, context: AgentContext) -> QAOutput:
        claims = [claim for claim in extract_claims(payload.slides) if claim.kind != "opinion"]
        findings: list[QualityFinding] = []
        checkable: list[tuple[Claim, list[ResearchSnippet]]] = []
        for claim in claims:
            support = supporting_snippets(claim.text, payload.snippets)
            if not support:
                findings.append(
                    self._finding(
                        f'Unsupported {claim.kind} claim: "{claim.text}"',
                        severity=Severity.HIGH if payload.strict else Severity.WARNING,
                        slide_id=claim.slide_id,
                        suggestion="Add supporting evidence or remove the claim",
                    )
                )
            else:
                checkable.append((claim, support))

        supported = 0
        if checkable:
            scores = await self._score_support(checkable, context)
            for index, (claim, _) in enumerate(checkable):
                score = _clamp(scores.get(index, 0.0))
                if score >= self.weak_support:
                    supported += 1
                    continue
                findings.append(
                    self._finding(
                        f'Weakly supported claim: "{claim.text}"',
                        severity=Severity.HIGH if score < self.no_support else Severity.WARNING,
                        slide_id=claim.slide_id,
                        suggestion="Strengthen evidence or qualify the statement",
                    )
                )

        high = sum(1 for finding in findings if finding.severity is Severity.HIGH)
        ratio = supported / len(claims) if claims else 1.0
        return QAOutput(findings=findings, score=_clamp(ratio - 0.2 * high))

    async def _score_support(
        self,
        checkable: list[tuple[Claim, list[ResearchSnippet]]],
        context: AgentContext,
    ) -> dict[int, float]:
        blocks = []
        for index, (claim, support) in enumerate(checkable):
            evidence = "\n".join(f"  - {snippet.text} (confidence {snippet.confidence:.2f})" for snippet in support)
            blocks.append(f'{index}. Claim: "{claim.text}"\n{evidence}')
        prompt = (
            "Rate from 0 to 1 how well the evidence supports each claim.\n"
            + "\n".join(blocks)
            + '\nReturn JSON: {"scores": [{"index": 0, "support_score": 0.8}]}'
        )
        draft = await context.generate_structured(prompt, _SupportDraft)
        return {item.index: item.support_score for item in draft.scores}
