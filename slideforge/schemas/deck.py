from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]
ChartKind = Literal["line", "bar", "area", "pie", "scatter", "table"]
WidgetKind = Literal["live_chart", "ticker", "map", "countdown", "iframe"]


class ResearchSnippet(BaseModel):
    id: str
    source: str
    url: str | None = None
    text: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)
    confidence: Confidence = 0.5
    title: str | None = None


class OutlineSection(BaseModel):
    id: str
    title: str = Field(..., min_length=1)
    goal: str = ""
    est_slides: int = Field(1, ge=1, le=50)
    key_points: list[str] = Field(default_factory=list)
    order: int = 0
    chart_suggested: bool = False
    live_widget_suggested: bool = False


class DeckOutline(BaseModel):
    id: str
    title: str = Field(..., min_length=1)
    subtitle: str | None = None
    audience: str
    tone: str
    theme: str
    sections: list[OutlineSection] = Field(..., min_length=1)
    conclusion: str = ""
    references: list[str] = Field(default_factory=list)
    estimated_duration: int | None = Field(default=None, description="Minutes.")
    word_count: int | None = None


class HeadingBlock(BaseModel):
    type: Literal["heading"] = "heading"
    text: str
    level: int = Field(1, ge=1, le=3)


class SubheadingBlock(BaseModel):
    type: Literal["subheading"] = "subheading"
    text: str


class BulletsBlock(BaseModel):
    type: Literal["bullets"] = "bullets"
    items: list[str] = Field(default_factory=list)


class MarkdownBlock(BaseModel):
    type: Literal["markdown"] = "markdown"
    md: str


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    src: str
    alt: str
    caption: str | None = None


class ChartSpec(BaseModel):
    kind: ChartKind = "bar"
    x: str = ""
    y: str = ""
    rationale: str = ""
    title: str | None = None
    data_example: Any | None = None


class ChartBlock(BaseModel):
    type: Literal["chart"] = "chart"
    chart: ChartSpec


class WidgetSpec(BaseModel):
    kind: WidgetKind
    config: dict[str, Any] = Field(default_factory=dict)
    refresh_seconds: int | None = Field(default=None, ge=1)
    endpoint: str | None = None
    description: str | None = None


class LiveBlock(BaseModel):
    type: Literal["live"] = "live"
    widget: WidgetSpec


class QuoteBlock(BaseModel):
    type: Literal["quote"] = "quote"
    text: str
    author: str | None = None
    source: str | None = None


SlideBlock = Annotated[
    Union[
        HeadingBlock,
        SubheadingBlock,
        BulletsBlock,
        MarkdownBlock,
        ImageBlock,
        ChartBlock,
        LiveBlock,
        QuoteBlock,
    ],
    Field(discriminator="type"),
]

SlideLayout = Literal[
    "title",
    "title+bullets",
    "two-column",
    "comparison",
    "kpi",
    "timeline",
    "quote",
    "diagram",
]


class Slide(BaseModel):
    id: str
    layout: SlideLayout = "title+bullets"
    blocks: list[SlideBlock] = Field(default_factory=list)
    notes: str | None = None
    cites: list[str] = Field(default_factory=list, description="Research snippet ids backing this slide.")
    order: int = 0
    section_id: str | None = None
    estimated_seconds: int | None = None

    def text_fragments(self) -> list[str]:
        fragments: list[str] = []
        for block in self.blocks:
            if isinstance(block, (HeadingBlock, SubheadingBlock, QuoteBlock)):
                fragments.append(block.text)
            elif isinstance(block, BulletsBlock):
                fragments.extend(block.items)
            elif isinstance(block, MarkdownBlock):
                fragments.append(block.md)
        return fragments

    @property
    def title(self) -> str:
        for block in self.blocks:
            if isinstance(block, HeadingBlock):
                return block.text
        return ""


class DeckMeta(BaseModel):
    title: str
    subtitle: str | None = None
    author: str = "slideforge"
    date: str
    audience: str
    tone: str
    theme: str
    duration_minutes: int | None = None
    word_count: int | None = None


class Deck(BaseModel):
    id: str
    meta: DeckMeta
    slides: list[Slide] = Field(default_factory=list)
    research_snippets: list[ResearchSnippet] = Field(default_factory=list)
