"""Strategy cascade: try extraction strategies in cost order, first acceptable output wins."""

import logging
import threading
import time
from typing import Optional

from resume_intake.core.settings import ExtractionOptions, PipelineSettings
from resume_intake.parsers.errors import (
    AggregateExtractionError,
    AttemptTimeout,
    ExtractionCancelled,
    PayloadTooLargeError,
    QualityGateRejection,
    StrategyFailure,
)
from resume_intake.parsers.format_detector import describe_format, detect_format
from resume_intake.parsers.models import (
    AttemptRecord,
    FormatTag,
    ParsedDocument,
    StrategyName,
    StrategyOutput,
)
from resume_intake.parsers.ocr import OcrEnginePool
from resume_intake.parsers.sanitizer import sanitize
from resume_intake.parsers.strategies import (
    Budget,
    ExtractionContext,
    ExtractionStrategy,
    default_strategies,
)

logger = logging.getLogger(__name__)

# Cheapest and most reliable first; optical recognition always last
STRATEGY_PLANS: dict[FormatTag, tuple[StrategyName, ...]] = {
    "pdf": ("text_layer", "container_text", "page_reconstruction", "hybrid", "optical"),
    "container": ("container_text",),
    "image": ("optical",),
    "unknown": (),
}

_OPTICAL_STRATEGIES = frozenset({"hybrid", "optical"})


class ExtractionCascade:
    """Runs the ordered strategy plan for a format, strictly one attempt at a time."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        strategies: Optional[dict[StrategyName, ExtractionStrategy]] = None,
        ocr_pool: Optional[OcrEnginePool] = None,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.strategies = strategies or default_strategies()
        self.ocr_pool = ocr_pool or OcrEnginePool(self.settings)

    # ── Planning ─────────────────────────────────────────────────

    def plan(self, format: FormatTag, options: ExtractionOptions) -> list[StrategyName]:
        names = [
            name
            for name in STRATEGY_PLANS.get(format, ())
            if options.allow_optical_recognition or name not in _OPTICAL_STRATEGIES
        ]
        return names[: self.settings.max_strategy_attempts]

    # ── Extraction ───────────────────────────────────────────────

    def extract(
        self,
        payload: bytes,
        format: FormatTag,
        options: Optional[ExtractionOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ParsedDocument:
        """Return the first strategy output that passes the quality gate.

        Raises AggregateExtractionError when the plan is exhausted, empty,
        or the request is cancelled.
        """
        options = options or ExtractionOptions()
        started = time.monotonic()
        request_deadline = started + options.timeout_seconds if options.timeout_seconds else None

        plan = self.plan(format, options)
        diagnostics: list[AttemptRecord] = []

        if not plan:
            logger.warning("No extraction strategy applies to %s", describe_format(format))
            raise AggregateExtractionError(
                f"no extraction strategy for format '{format}'", format, diagnostics
            )

        logger.info("Extracting %s (%d bytes), plan: %s", format, len(payload), " → ".join(plan))

        for name in plan:
            strategy = self.strategies[name]
            budget = self._attempt_budget(request_deadline, cancel_event)
            context = ExtractionContext(
                format=format,
                options=options,
                settings=self.settings,
                ocr_pool=self.ocr_pool,
                budget=budget,
            )

            t0 = time.monotonic()
            output: Optional[StrategyOutput] = None
            logger.info("Trying strategy: %s", name)
            try:
                budget.check()
                output = strategy.try_extract(payload, context)
                budget.check(include_attempt=False)
                text = sanitize(output.text)
                if len(text) <= self.settings.min_text_length:
                    raise QualityGateRejection(len(text), self.settings.min_text_length)
            except ExtractionCancelled as exc:
                diagnostics.append(_record(name, "cancelled", t0, reason=exc.message))
                logger.warning("Extraction cancelled during %s: %s", name, exc.message)
                raise AggregateExtractionError(
                    f"extraction cancelled: {exc.message}", format, diagnostics, cancelled=True
                ) from exc
            except AttemptTimeout as exc:
                diagnostics.append(_record(name, "timed_out", t0, reason=exc.message))
                logger.warning("Strategy %s timed out", name)
                continue
            except QualityGateRejection as exc:
                diagnostics.append(
                    _record(name, "rejected", t0, output=output, reason=exc.message, text_length=exc.text_length)
                )
                logger.warning("Strategy %s rejected: %s", name, exc.message)
                continue
            except StrategyFailure as exc:
                diagnostics.append(_record(name, "failed", t0, reason=exc.message))
                logger.info("Strategy %s failed: %s", name, exc.message)
                continue
            except Exception as exc:
                diagnostics.append(_record(name, "failed", t0, reason=f"{type(exc).__name__}: {exc}"))
                logger.warning("Strategy %s raised unexpectedly: %s", name, exc)
                continue

            diagnostics.append(_record(name, "accepted", t0, output=output, text_length=len(text)))
            logger.info(
                "Accepted %s: %d chars, %d pages (%d attempts, %.2fs)",
                name,
                len(text),
                output.page_count,
                len(diagnostics),
                time.monotonic() - started,
            )
            return ParsedDocument(
                text=text,
                page_count=output.page_count,
                strategy_used=name,
                format=format,
                diagnostics=tuple(diagnostics),
                pages=() if options.merge_pages else _sanitized_pages(output),
            )

        logger.error("All %d strategies failed for %s", len(diagnostics), describe_format(format))
        raise AggregateExtractionError(
            "all extraction strategies failed to produce meaningful text", format, diagnostics
        )

    def _attempt_budget(
        self,
        request_deadline: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> Budget:
        attempt_deadline = None
        if self.settings.strategy_timeout_seconds is not None:
            attempt_deadline = time.monotonic() + self.settings.strategy_timeout_seconds
        return Budget(
            attempt_deadline=attempt_deadline,
            request_deadline=request_deadline,
            cancel_event=cancel_event,
        )


def _record(
    name: StrategyName,
    outcome: str,
    t0: float,
    output: Optional[StrategyOutput] = None,
    reason: Optional[str] = None,
    text_length: int = 0,
) -> AttemptRecord:
    return AttemptRecord(
        strategy=name,
        outcome=outcome,
        failure_reason=reason,
        text_length=text_length,
        pages_extracted=len(output.pages) if output else 0,
        page_failures=tuple(output.page_failures) if output else (),
        ocr_confidence=output.mean_confidence if output else None,
        duration_seconds=round(time.monotonic() - t0, 4),
    )


def _sanitized_pages(output: StrategyOutput) -> tuple[str, ...]:
    return tuple(page for page in (sanitize(p) for p in output.pages) if page)


# ── Module-level Entry Point ─────────────────────────────────────────

_cascades: dict[PipelineSettings, ExtractionCascade] = {}
_cascades_lock = threading.Lock()


def get_cascade(settings: Optional[PipelineSettings] = None) -> ExtractionCascade:
    """Process-wide cascade (and OCR engine pool) for the given settings."""
    settings = settings or PipelineSettings()
    with _cascades_lock:
        if settings not in _cascades:
            _cascades[settings] = ExtractionCascade(settings)
        return _cascades[settings]


def extract_document(
    payload: bytes,
    options: Optional[ExtractionOptions] = None,
    settings: Optional[PipelineSettings] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ParsedDocument:
    """Detect the payload's format and run the cascade over it."""
    cascade = get_cascade(settings)
    if len(payload) > cascade.settings.max_payload_bytes:
        raise PayloadTooLargeError(len(payload), cascade.settings.max_payload_bytes)

    fmt = detect_format(payload)
    logger.info("Detected format: %s", describe_format(fmt))
    return cascade.extract(payload, fmt, options, cancel_event=cancel_event)
