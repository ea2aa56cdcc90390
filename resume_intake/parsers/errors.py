"""Exceptions raised inside the extraction pipeline.

Only ``AggregateExtractionError`` (and ``PayloadTooLargeError`` for input
validation) ever reaches the caller. Strategy-, page- and gate-level failures
are recovered inside the cascade and recorded in the diagnostics.
"""

from typing import Any, Optional


class ExtractionError(Exception):
    """Base exception for all extraction errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ── Strategy Level ───────────────────────────────────────────────────


class StrategyFailure(ExtractionError):
    """A strategy could not produce any usable text."""


class AttemptTimeout(StrategyFailure):
    """A strategy attempt ran past its per-attempt budget."""


class QualityGateRejection(StrategyFailure):
    """A strategy produced text, but below the minimum length."""

    def __init__(self, text_length: int, threshold: int) -> None:
        super().__init__(
            f"extracted text too short ({text_length} <= {threshold} chars)",
            {"text_length": text_length, "threshold": threshold},
        )
        self.text_length = text_length


# ── Page Level ───────────────────────────────────────────────────────


class PageFailure(ExtractionError):
    """A single page could not be read."""

    def __init__(self, page_number: int, reason: str) -> None:
        super().__init__(f"page {page_number}: {reason}", {"page_number": page_number})
        self.page_number = page_number
        self.reason = reason


class OcrError(ExtractionError):
    """The recognition engine failed on an image."""


# ── Request Level ────────────────────────────────────────────────────


class ExtractionCancelled(ExtractionError):
    """The caller's deadline passed or cancellation was requested."""


class PayloadTooLargeError(ExtractionError):
    """Payload exceeds the configured maximum size."""

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            f"payload size ({size} bytes) exceeds maximum ({max_size} bytes)",
            {"size": size, "max_size": max_size},
        )


class AggregateExtractionError(ExtractionError):
    """Every applicable strategy failed, was gated, or the request was cancelled."""

    def __init__(
        self,
        message: str,
        format: str,
        diagnostics: list,
        cancelled: bool = False,
    ) -> None:
        super().__init__(
            message,
            {"format": format, "attempts": len(diagnostics), "cancelled": cancelled},
        )
        self.format = format
        self.diagnostics = diagnostics
        self.cancelled = cancelled

    @property
    def user_message(self) -> str:
        """Short explanation suitable for showing to the uploader."""
        if self.cancelled:
            return "Extraction was cancelled before the document could be read."
        if self.format == "unknown":
            return "Unsupported file format. Please upload a PDF, DOCX or image."
        return "The document appears to be empty or unreadable."
