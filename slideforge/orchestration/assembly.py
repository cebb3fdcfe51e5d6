from __future__ import annotations

from datetime import datetime, timezone

from ..schemas.agents import SpeakerNotesOutput
from ..schemas.deck import (
    BulletsBlock,
    Deck,
    DeckMeta,
    DeckOutline,
    HeadingBlock,
    MarkdownBlock,
    ResearchSnippet,
    Slide,
    SubheadingBlock,
)
from ..schemas.pipeline import PipelineRequest


def _title_slide(outline: DeckOutline) -> Slide:
    blocks: list = [HeadingBlock(text=outline.title)]
    if outline.subtitle:
        blocks.append(SubheadingBlock(text=outline.subtitle))
    return Slide(id="title", layout="title", blocks=blocks, estimated_seconds=30)


def _agenda_slide(outline: DeckOutline) -> Slide:
    return Slide(
        id="agenda",
        layout="title+bullets",
        blocks=[HeadingBlock(text="Agenda"), BulletsBlock(items=[section.title for section in outline.sections])],
        estimated_seconds=45,
    )


def _conclusion_slide(outline: DeckOutline) -> Slide:
    blocks: list = [HeadingBlock(text="Conclusion")]
    if outline.conclusion:
        blocks.append(MarkdownBlock(md=outline.conclusion))
    return Slide(id="conclusion", layout="title", blocks=blocks, estimated_seconds=60)


def _references_slide(outline: DeckOutline) -> Slide:
    return Slide(
        id="references",
        layout="title+bullets",
        blocks=[HeadingBlock(text="References"), BulletsBlock(items=list(outline.references))],
        estimated_seconds=20,
    )


def assemble_deck(
    request: PipelineRequest,
    *,
    outline: DeckOutline,
    slides: list[Slide],
    snippets: list[ResearchSnippet],
    speaker_notes: SpeakerNotesOutput | None = None,
) -> Deck:
    """Wrap generated slides with title, agenda, conclusion and references slides."""
    notes = {note.slide_id: note.notes for note in speaker_notes.notes} if speaker_notes else {}
    ordered = [_title_slide(outline), _agenda_slide(outline)]
    ordered.extend(slide.model_copy(deep=True) for slide in slides)
    ordered.append(_conclusion_slide(outline))
    if outline.references:
        ordered.append(_references_slide(outline))

    for order, slide in enumerate(ordered, start=1):
        slide.order = order
        if slide.id in notes:
            slide.notes = notes[slide.id]

    return Deck(
        id=f"deck-{request.request_id}",
        meta=DeckMeta(
            title=outline.title,
            subtitle=outline.subtitle,
            date=datetime.now(timezone.utc).date().isoformat(),
            audience=request.audience,
            tone=request.tone,
            theme=request.theme,
            duration_minutes=request.duration_minutes or outline.estimated_duration,
            word_count=sum(len(fragment.split()) for slide in ordered for fragment in slide.text_fragments()),
        ),
        slides=ordered,
        research_snippets=list(snippets),
    )
