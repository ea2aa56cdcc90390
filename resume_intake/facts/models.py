"""Data models for facts derived from extracted resume text."""

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

SourceNote = Literal["dates-parsed", "fallback-text-mention", "none"]


def month_index(d: date) -> int:
    """Absolute month number, so that consecutive months differ by one."""
    return d.year * 12 + d.month - 1


class DateRange(BaseModel):
    """One employment range as written in the text, resolved to calendar dates."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    open_ended: bool = False
    raw: str = ""

    @model_validator(mode="after")
    def start_not_after_end(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"range starts after it ends: {self.start} > {self.end}")
        return self

    @property
    def start_idx(self) -> int:
        return month_index(self.start)

    @property
    def end_idx(self) -> int:
        return month_index(self.end)

    @property
    def months(self) -> int:
        """Inclusive month count: Jan–Jan is one month."""
        return self.end_idx - self.start_idx + 1


class MergedInterval(BaseModel):
    """A maximal run of overlapping or month-adjacent ranges."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    range_count: int = Field(default=1, ge=1)

    @property
    def months(self) -> int:
        return month_index(self.end) - month_index(self.start) + 1


class ExperienceSummary(BaseModel):
    """Total experience derived from resume text. Never carries double-counted overlap."""

    total_months: int = Field(default=0, ge=0)
    total_years: float = Field(default=0.0, ge=0)
    career_span_years: float = Field(default=0.0, ge=0)
    role_count: int = Field(default=0, ge=0)
    source_note: SourceNote = "none"
    intervals: list[MergedInterval] = Field(default_factory=list)

    def details(self) -> str:
        """Short human-readable summary, e.g. ``4.0 yoe (span 4.0y, 2 roles)``."""
        if self.source_note == "fallback-text-mention":
            return f"{self.total_years} yoe (from text mention)"
        if self.source_note == "none":
            return "0 yoe (no dates found)"
        return f"{self.total_years} yoe (span {self.career_span_years}y, {self.role_count} roles)"

    def prompt_hint(self) -> str:
        """The whole-year figure handed to downstream generation, e.g. ``~4 years``."""
        return f"~{round(self.total_months / 12)} years"
