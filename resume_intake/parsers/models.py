"""Shared data models for the extraction pipeline."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

FormatTag = Literal["pdf", "container", "image", "unknown"]

StrategyName = Literal[
    "text_layer",
    "container_text",
    "page_reconstruction",
    "hybrid",
    "optical",
]

AttemptOutcome = Literal["accepted", "failed", "rejected", "timed_out", "cancelled"]

PAGE_BREAK = "\n\n--- PAGE BREAK ---\n\n"


class PageFailureRecord(BaseModel):
    """One page that a strategy could not read."""

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    reason: str


class StrategyOutput(BaseModel):
    """Raw (unsanitized) result of a single successful strategy attempt."""

    text: str
    page_count: int = Field(ge=0)
    pages: list[str] = Field(default_factory=list)
    page_failures: list[PageFailureRecord] = Field(default_factory=list)
    ocr_confidence: dict[int, float] = Field(
        default_factory=dict, description="Page number → recognition confidence (0-1)"
    )

    @property
    def mean_confidence(self) -> Optional[float]:
        if not self.ocr_confidence:
            return None
        return sum(self.ocr_confidence.values()) / len(self.ocr_confidence)


class AttemptRecord(BaseModel):
    """Diagnostics entry for one strategy attempt."""

    model_config = ConfigDict(frozen=True)

    strategy: StrategyName
    outcome: AttemptOutcome
    failure_reason: Optional[str] = None
    text_length: int = 0
    pages_extracted: int = 0
    page_failures: tuple[PageFailureRecord, ...] = ()
    ocr_confidence: Optional[float] = None
    duration_seconds: float = 0.0


class ParsedDocument(BaseModel):
    """Accepted result of the extraction pipeline. Immutable."""

    model_config = ConfigDict(frozen=True)

    text: str
    page_count: int = Field(ge=0)
    strategy_used: StrategyName
    format: FormatTag
    diagnostics: tuple[AttemptRecord, ...]
    pages: tuple[str, ...] = Field(
        default=(), description="Sanitized per-page text, only when merge_pages is off"
    )

    @field_validator("text")
    @classmethod
    def text_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("ParsedDocument.text must not be empty")
        return v
