"""Pipeline settings: YAML loader and Pydantic models for extraction tuning."""

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Process-level Settings ───────────────────────────────────────────


class PipelineSettings(BaseModel):
    """Tuning knobs shared by every ingestion request in the process."""

    model_config = ConfigDict(frozen=True)

    min_text_length: int = Field(
        default=150, ge=1, description="Quality gate: sanitized text must be longer than this"
    )
    min_page_chars: int = Field(
        default=20, ge=0, description="Reconstructed pages shorter than this contribute nothing"
    )
    hybrid_page_threshold: int = Field(
        default=50, ge=0, description="Per-page structural yield below which OCR is used"
    )
    line_bucket_size: float = Field(
        default=2.0, gt=0, description="Vertical clustering bucket (PDF points)"
    )
    pdf_container_engine: Literal["pymupdf", "docling"] = Field(
        default="pymupdf", description="Structural container parse for PDFs; docling runs with OCR off"
    )
    render_dpi: int = Field(default=200, ge=72, le=600)
    ocr_engine: Literal["tesseract", "vision"] = "tesseract"
    vision_model: str = "minicpm-v"
    ocr_workers: int = Field(default=1, ge=1, le=16)
    strategy_timeout_seconds: Optional[float] = Field(default=60.0, gt=0)
    max_strategy_attempts: int = Field(default=5, ge=1)
    max_payload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)


# ── Per-request Options ──────────────────────────────────────────────


class ExtractionOptions(BaseModel):
    """Options supplied by the caller for a single ingestion request."""

    allow_optical_recognition: bool = True
    recognition_language: str = Field(
        default="eng", description="Tesseract-style language code, e.g. 'eng', 'deu', 'eng+fra'"
    )
    max_pages: int = Field(default=50, ge=1, description="Page cap for structural strategies")
    max_optical_pages: int = Field(default=20, ge=1, description="Page cap for optical recognition")
    merge_pages: bool = True
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Caller deadline, relative to the start of extraction"
    )

    @field_validator("recognition_language")
    @classmethod
    def non_blank_language(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("recognition_language must not be blank")
        return v

    @property
    def optical_page_cap(self) -> int:
        return min(self.max_pages, self.max_optical_pages)


# ── Loader ───────────────────────────────────────────────────────────


def load_settings(path: str | Path) -> PipelineSettings:
    """Load pipeline settings from a YAML file and return a validated model.

    An empty file yields the defaults.
    """
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return PipelineSettings.model_validate(raw)
