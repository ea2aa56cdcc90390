"""Extraction strategies: five ways of turning an uploaded payload into text.

Every strategy isolates page-level failures. A strategy only fails at the
document level when no page yields usable text.
"""

import functools
import io
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, NamedTuple, Optional

import fitz  # PyMuPDF
from docx import Document
from docx.oxml.ns import qn
from docx.parts.hdrftr import FooterPart, HeaderPart

from resume_intake.core.settings import ExtractionOptions, PipelineSettings
from resume_intake.parsers.errors import (
    AttemptTimeout,
    ExtractionCancelled,
    OcrError,
    PageFailure,
    StrategyFailure,
)
from resume_intake.parsers.models import (
    PAGE_BREAK,
    FormatTag,
    PageFailureRecord,
    StrategyName,
    StrategyOutput,
)
from resume_intake.parsers.ocr import OcrEnginePool, OcrResult

logger = logging.getLogger(__name__)

_CHARS_PER_PAGE = 3000  # page estimate for unpaginated containers


# ── Budget & Context ─────────────────────────────────────────────────


class Budget:
    """Deadlines for one strategy attempt, checked cooperatively between pages.

    Checks only happen at page boundaries and between OCR futures. A single
    blocking call (one docling conversion, one Tesseract or Ollama request)
    cannot be interrupted and runs to completion before a passed deadline or a
    cancel is noticed. The cascade discards a result that returns after the
    caller deadline or a cancel. A finished attempt that merely overran its own
    budget is kept.
    """

    def __init__(
        self,
        attempt_deadline: Optional[float] = None,
        request_deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.attempt_deadline = attempt_deadline
        self.request_deadline = request_deadline
        self.cancel_event = cancel_event

    def check(self, include_attempt: bool = True) -> None:
        """Raise if the request was cancelled or a deadline has passed."""
        now = time.monotonic()
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ExtractionCancelled("cancellation requested by caller")
        if self.request_deadline is not None and now >= self.request_deadline:
            raise ExtractionCancelled("caller deadline exceeded")
        if include_attempt and self.attempt_deadline is not None and now >= self.attempt_deadline:
            raise AttemptTimeout("strategy attempt exceeded its time budget")

    def remaining(self) -> Optional[float]:
        """Seconds until the nearest deadline, or None when unbounded."""
        deadlines = [d for d in (self.attempt_deadline, self.request_deadline) if d is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())


@dataclass
class ExtractionContext:
    """Everything a strategy needs besides the payload itself."""

    format: FormatTag
    options: ExtractionOptions
    settings: PipelineSettings
    ocr_pool: OcrEnginePool
    budget: Budget


# ── Strategy Contract ────────────────────────────────────────────────


class ExtractionStrategy(ABC):
    """Common capability: turn a payload into text or raise StrategyFailure."""

    name: StrategyName

    @abstractmethod
    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class TextLayerStrategy(ExtractionStrategy):
    """Read the embedded PDF text layer directly. Fastest path."""

    name = "text_layer"

    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        with open_pdf(payload) as doc:
            pages, failures = walk_pages(
                doc,
                limit=context.options.max_pages,
                budget=context.budget,
                read_page=lambda page, _num: page.get_text(),
                min_chars=0,
            )
            page_count = doc.page_count

        if not pages:
            raise StrategyFailure(
                "no embedded text layer",
                {"page_failures": len(failures)},
            )
        return _pages_output(pages, page_count, failures)


class ContainerTextStrategy(ExtractionStrategy):
    """Structural parse of the container without rendering.

    DOCX: raw ``w:t`` text runs via python-docx. PDF: raw text blocks via
    PyMuPDF, or docling layout conversion (OCR off) when configured.
    """

    name = "container_text"

    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        context.budget.check()
        if context.format != "pdf":
            text = extract_docx_text(payload)
        elif context.settings.pdf_container_engine == "docling":
            text = convert_with_docling(payload, max_pages=context.options.max_pages)
        else:
            return self._pdf_blocks(payload, context)

        if not text.strip():
            raise StrategyFailure("container holds no text")
        return StrategyOutput(
            text=text,
            page_count=estimate_page_count(text),
            pages=[text],
        )

    def _pdf_blocks(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        with open_pdf(payload) as doc:
            pages, failures = walk_pages(
                doc,
                limit=context.options.max_pages,
                budget=context.budget,
                read_page=lambda page, _num: raw_block_text(page),
                min_chars=0,
            )
            page_count = doc.page_count

        if not pages:
            raise StrategyFailure(
                "no text blocks in PDF content streams",
                {"page_failures": len(failures)},
            )
        return _pages_output(pages, page_count, failures)


class PageReconstructionStrategy(ExtractionStrategy):
    """Rebuild reading-order lines from positioned word fragments, page by page."""

    name = "page_reconstruction"

    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        bucket = context.settings.line_bucket_size
        with open_pdf(payload) as doc:
            pages, failures = walk_pages(
                doc,
                limit=context.options.max_pages,
                budget=context.budget,
                read_page=lambda page, _num: reconstruct_lines(page_fragments(page), bucket),
                min_chars=context.settings.min_page_chars,
            )
            page_count = doc.page_count

        if not pages:
            raise StrategyFailure(
                f"no usable text on any of {min(page_count, context.options.max_pages)} pages",
                {"page_failures": len(failures)},
            )
        logger.info(
            "Page reconstruction: %d pages extracted (%d failed)", len(pages), len(failures)
        )
        return _pages_output(pages, page_count, failures)


class HybridStrategy(ExtractionStrategy):
    """Structural text where a page has it, OCR only for the pages that do not."""

    name = "hybrid"

    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        settings = context.settings
        ocr_cap = context.options.optical_page_cap
        confidence: dict[int, float] = {}
        ocr_pages: list[int] = []

        with open_pdf(payload) as doc, context.ocr_pool.lease(
            context.options.recognition_language
        ) as engine:

            def read_page(page: fitz.Page, page_number: int) -> str:
                structural = ""
                try:
                    structural = reconstruct_lines(page_fragments(page), settings.line_bucket_size)
                except Exception as exc:
                    logger.info("Page %d: text extraction failed (%s), using OCR", page_number, exc)

                if len(structural) >= settings.hybrid_page_threshold:
                    return structural

                if len(ocr_pages) >= ocr_cap:
                    if structural.strip():
                        return structural
                    raise PageFailure(page_number, f"optical page cap ({ocr_cap}) reached")

                logger.info(
                    "Page %d: insufficient text (%d chars), using OCR", page_number, len(structural)
                )
                ocr_pages.append(page_number)
                try:
                    result = engine.recognize(render_page(page, settings.render_dpi))
                except OcrError as exc:
                    if structural.strip():
                        return structural
                    raise PageFailure(page_number, str(exc)) from exc

                if result.confidence is not None:
                    confidence[page_number] = result.confidence
                return result.text if result.text.strip() else structural

            pages, failures = walk_pages(
                doc,
                limit=context.options.max_pages,
                budget=context.budget,
                read_page=read_page,
                min_chars=settings.min_page_chars,
            )
            page_count = doc.page_count

        if not pages:
            raise StrategyFailure(
                "hybrid extraction found no text on any page",
                {"page_failures": len(failures)},
            )
        output = _pages_output(pages, page_count, failures)
        output.ocr_confidence = confidence
        return output


class OpticalStrategy(ExtractionStrategy):
    """Render every page to an image and run optical recognition over it."""

    name = "optical"

    def try_extract(self, payload: bytes, context: ExtractionContext) -> StrategyOutput:
        failures: list[PageFailureRecord] = []

        if context.format == "image":
            images = [(1, payload)]
            page_count = 1
        else:
            images = []
            with open_pdf(payload) as doc:
                page_count = doc.page_count
                for index in range(min(page_count, context.options.optical_page_cap)):
                    context.budget.check()
                    page_number = index + 1
                    try:
                        page = doc.load_page(index)
                        images.append((page_number, render_page(page, context.settings.render_dpi)))
                    except Exception as exc:
                        logger.warning("Page %d: rendering failed: %s", page_number, exc)
                        failures.append(PageFailureRecord(page_number=page_number, reason=str(exc)))

        if not images:
            raise StrategyFailure("no page could be rendered for OCR")

        results = recognize_pages(images, context, failures)

        pages: list[tuple[int, str]] = []
        confidence: dict[int, float] = {}
        for page_number in sorted(results):
            result = results[page_number]
            if result.confidence is not None:
                confidence[page_number] = result.confidence
                logger.info("Page %d OCR confidence: %.2f", page_number, result.confidence)
            if result.text.strip():
                pages.append((page_number, result.text))

        if not pages:
            raise StrategyFailure(
                "OCR failed to extract text from any page",
                {"page_failures": len(failures)},
            )
        output = _pages_output(pages, page_count, failures)
        output.ocr_confidence = confidence
        return output


STRATEGY_TYPES: dict[StrategyName, type[ExtractionStrategy]] = {
    "text_layer": TextLayerStrategy,
    "container_text": ContainerTextStrategy,
    "page_reconstruction": PageReconstructionStrategy,
    "hybrid": HybridStrategy,
    "optical": OpticalStrategy,
}


def default_strategies() -> dict[StrategyName, ExtractionStrategy]:
    return {name: cls() for name, cls in STRATEGY_TYPES.items()}


# ── PDF Helpers ──────────────────────────────────────────────────────


@contextmanager
def open_pdf(payload: bytes) -> Iterator[fitz.Document]:
    """Open a PDF from memory, turning open errors into StrategyFailure."""
    try:
        doc = fitz.open(stream=payload, filetype="pdf")
    except Exception as exc:
        raise StrategyFailure(f"cannot open PDF: {exc}") from exc
    try:
        if doc.needs_pass:
            raise StrategyFailure("PDF is password-protected")
        if doc.page_count == 0:
            raise StrategyFailure("PDF has no pages")
        yield doc
    finally:
        doc.close()


def walk_pages(
    doc: fitz.Document,
    limit: int,
    budget: Budget,
    read_page: Callable[[fitz.Page, int], str],
    min_chars: int,
) -> tuple[list[tuple[int, str]], list[PageFailureRecord]]:
    """Apply ``read_page`` to each page, isolating per-page failures.

    Pages whose text is not longer than ``min_chars`` are skipped silently
    (blank pages); pages that raise are recorded as failures.
    """
    pages: list[tuple[int, str]] = []
    failures: list[PageFailureRecord] = []

    for index in range(min(doc.page_count, limit)):
        budget.check()
        page_number = index + 1
        try:
            page = doc.load_page(index)
            text = read_page(page, page_number)
        except (ExtractionCancelled, AttemptTimeout):
            raise
        except PageFailure as exc:
            logger.warning("Page %d extraction failed: %s", page_number, exc.reason)
            failures.append(PageFailureRecord(page_number=page_number, reason=exc.reason))
            continue
        except Exception as exc:
            logger.warning("Page %d extraction failed: %s", page_number, exc)
            failures.append(PageFailureRecord(page_number=page_number, reason=str(exc)))
            continue

        text = text.strip()
        if text and len(text) > min_chars:
            pages.append((page_number, text))

    return pages, failures


class TextFragment(NamedTuple):
    x: float
    y: float  # vertical midpoint
    text: str


def page_fragments(page: fitz.Page) -> list[TextFragment]:
    """Positioned words of a page: ``(x0, y0, x1, y1, word, block, line, word_no)``."""
    return [
        TextFragment(x=w[0], y=(w[1] + w[3]) / 2, text=w[4])
        for w in page.get_text("words")
    ]


def reconstruct_lines(fragments: list[TextFragment], bucket_size: float) -> str:
    """Group fragments into lines by vertical bucket, then order each line by x."""
    lines: dict[int, list[TextFragment]] = defaultdict(list)
    for frag in fragments:
        if frag.text.strip():
            lines[round(frag.y / bucket_size)].append(frag)

    return "\n".join(
        " ".join(f.text for f in sorted(lines[key], key=lambda f: f.x))
        for key in sorted(lines)
    )


def raw_block_text(page: fitz.Page) -> str:
    """Text blocks in content-stream order: ``(x0, y0, x1, y1, text, block_no, block_type)``."""
    return "\n".join(
        block[4].strip()
        for block in page.get_text("blocks", sort=False)
        if block[6] == 0 and block[4].strip()
    )


def render_page(page: fitz.Page, dpi: int) -> bytes:
    """Rasterize a page to PNG bytes."""
    pix = page.get_pixmap(dpi=dpi)
    return pix.tobytes("png")


def _pages_output(
    pages: list[tuple[int, str]],
    page_count: int,
    failures: list[PageFailureRecord],
) -> StrategyOutput:
    texts = [text for _, text in pages]
    return StrategyOutput(
        text=PAGE_BREAK.join(texts),
        page_count=page_count,
        pages=texts,
        page_failures=failures,
    )


def estimate_page_count(text: str) -> int:
    return max(1, math.ceil(len(text) / _CHARS_PER_PAGE))


# ── OCR Fan-out ──────────────────────────────────────────────────────


def recognize_pages(
    images: list[tuple[int, bytes]],
    context: ExtractionContext,
    failures: list[PageFailureRecord],
) -> dict[int, OcrResult]:
    """Recognize page images, in parallel when ``ocr_workers`` > 1.

    Results are keyed by page number; callers order by page, not completion.
    Per-page OcrErrors are appended to ``failures``.
    """
    language = context.options.recognition_language
    workers = min(context.settings.ocr_workers, len(images))
    results: dict[int, OcrResult] = {}

    if workers <= 1:
        with context.ocr_pool.lease(language) as engine:
            for page_number, image in images:
                context.budget.check()
                logger.info("OCR processing page %d/%d", page_number, len(images))
                try:
                    results[page_number] = engine.recognize(image)
                except OcrError as exc:
                    logger.warning("OCR failed for page %d: %s", page_number, exc)
                    failures.append(PageFailureRecord(page_number=page_number, reason=str(exc)))
        return results

    def _recognize(image: bytes) -> OcrResult:
        with context.ocr_pool.lease(language) as engine:
            return engine.recognize(image)

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocr")
    try:
        pending = {executor.submit(_recognize, image): page_number for page_number, image in images}
        while pending:
            context.budget.check()
            done, _ = wait(pending, timeout=context.budget.remaining(), return_when=FIRST_COMPLETED)
            if not done:
                context.budget.check()
                raise AttemptTimeout("OCR did not finish within the attempt budget")
            for future in done:
                page_number = pending.pop(future)
                try:
                    results[page_number] = future.result()
                except OcrError as exc:
                    logger.warning("OCR failed for page %d: %s", page_number, exc)
                    failures.append(PageFailureRecord(page_number=page_number, reason=str(exc)))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    failures.sort(key=lambda f: f.page_number)
    return results


# ── DOCX ─────────────────────────────────────────────────────────────

_W_P = qn("w:p")
_W_T = qn("w:t")
_W_TAB = qn("w:tab")
_W_BR = qn("w:br")
_W_CR = qn("w:cr")
_MC_FALLBACK = "{http://schemas.openxmlformats.org/markup-compatibility/2006}Fallback"


def extract_docx_text(payload: bytes) -> str:
    """Collect raw text runs from a WordprocessingML package.

    Headers come first, then the body (tables and text boxes included, in
    document order), then footers. One output line per paragraph.
    """
    try:
        document = Document(io.BytesIO(payload))
    except Exception as exc:
        raise StrategyFailure(f"not a readable Word document: {exc}") from exc

    headers, footers = [], []
    for part in document.part.package.iter_parts():
        if isinstance(part, HeaderPart):
            headers.append(part.element)
        elif isinstance(part, FooterPart):
            footers.append(part.element)

    paragraphs: list[str] = []
    for root in [*headers, document.element.body, *footers]:
        for p in root.iter(_W_P):
            if next(p.iterancestors(_MC_FALLBACK), None) is not None:
                continue
            text = _paragraph_text(p)
            if text.strip():
                paragraphs.append(text)

    if not paragraphs:
        raise StrategyFailure("no text runs found in document")
    return "\n".join(paragraphs)


def _paragraph_text(p) -> str:
    chunks: list[str] = []
    for node in p.iter(_W_T, _W_TAB, _W_BR, _W_CR):
        # Text boxes nest whole paragraphs; those are visited on their own
        if next(node.iterancestors(_W_P)) is not p:
            continue
        if node.tag == _W_T:
            chunks.append(node.text or "")
        elif node.tag == _W_TAB:
            chunks.append(" ")
        else:
            chunks.append("\n")
    return "".join(chunks)


# ── docling (optional) ───────────────────────────────────────────────


DOCLING_PDF_OPTIONS = {"do_ocr": False, "do_table_structure": False}


@functools.lru_cache(maxsize=1)
def _docling_converter():
    # Recognition belongs to the hybrid and optical strategies only
    from docling.datamodel.base_models import InputFormat
    from docling.datamodel.pipeline_options import PdfPipelineOptions
    from docling.document_converter import DocumentConverter, PdfFormatOption

    pipeline_options = PdfPipelineOptions(**DOCLING_PDF_OPTIONS)
    return DocumentConverter(
        format_options={InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options)}
    )


def convert_with_docling(payload: bytes, max_pages: int) -> str:
    """Convert a PDF to Markdown with docling, limited to the first ``max_pages``.

    Layout analysis only: OCR and table-structure models are disabled.
    """
    try:
        from docling.datamodel.base_models import DocumentStream

        converter = _docling_converter()
    except ImportError as exc:
        raise StrategyFailure(
            "docling is not installed (pip install 'resume-intake[docling]')"
        ) from exc

    with open_pdf(payload) as doc:
        if doc.page_count > max_pages:
            doc.select(list(range(max_pages)))
            payload = doc.tobytes()

    try:
        result = converter.convert(DocumentStream(name="upload.pdf", stream=io.BytesIO(payload)))
    except Exception as exc:
        raise StrategyFailure(f"docling conversion failed: {exc}") from exc
    return result.document.export_to_markdown()
