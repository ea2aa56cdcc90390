"""Tests for the five extraction strategies and their page-level helpers."""

import io
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from docx import Document
from fpdf import FPDF

from resume_intake.core.settings import ExtractionOptions, PipelineSettings
from resume_intake.parsers.errors import (
    AttemptTimeout,
    ExtractionCancelled,
    OcrError,
    StrategyFailure,
)
from resume_intake.parsers.models import PAGE_BREAK
from resume_intake.parsers.ocr import OcrEnginePool, OcrResult
from resume_intake.parsers.strategies import (
    Budget,
    ContainerTextStrategy,
    ExtractionContext,
    HybridStrategy,
    OpticalStrategy,
    PageReconstructionStrategy,
    TextFragment,
    TextLayerStrategy,
    _docling_converter,
    default_strategies,
    estimate_page_count,
    extract_docx_text,
    open_pdf,
    page_fragments,
    raw_block_text,
    reconstruct_lines,
)

BODY = (
    "Senior Software Engineer at Acme Corp. Led the migration of the billing "
    "platform to event sourcing and mentored four engineers. "
)

DOCLING = PipelineSettings(render_dpi=72, pdf_container_engine="docling")


# ── Fixtures ─────────────────────────────────────────────────────────


def _pdf(pages: list[str]) -> bytes:
    pdf = FPDF()
    for text in pages:
        pdf.add_page()
        pdf.set_font("Helvetica", size=11)
        if text:
            pdf.multi_cell(w=0, text=text)
    return bytes(pdf.output())


@pytest.fixture()
def text_pdf() -> bytes:
    """Three pages of selectable text."""
    return _pdf([f"Page {n}. " + BODY * 3 for n in (1, 2, 3)])


@pytest.fixture()
def blank_pdf() -> bytes:
    """One page, no text layer (stands in for a scanned page)."""
    return _pdf([""])


@pytest.fixture()
def columns_pdf() -> bytes:
    """One line of text drawn right-to-left so stream order differs from reading order."""
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    pdf.text(150, 30, "Engineer")
    pdf.text(20, 30, "Jane Doe")
    pdf.text(20, 60, "Experience with distributed systems")
    return bytes(pdf.output())


@pytest.fixture()
def resume_docx() -> bytes:
    document = Document()
    document.sections[0].header.paragraphs[0].text = "JANE DOE | jane@example.com"
    document.add_paragraph("Experience")
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "Acme Corp"
    table.cell(0, 1).text = "Senior Engineer"
    document.add_paragraph("Skills: Python, Go")
    document.sections[0].footer.paragraphs[0].text = "References on request"
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


class FakeEngine:
    """Stand-in OCR engine; ``reply`` maps image bytes to a result."""

    def __init__(self, language="eng", reply=None):
        self.language = language
        self.reply = reply or (lambda image: OcrResult("Recognized page text from the scan, " * 2, 0.9))
        self.calls = 0

    def recognize(self, image_bytes):
        self.calls += 1
        return self.reply(image_bytes)


def _context(fmt="pdf", options=None, settings=None, engine=None, budget=None) -> ExtractionContext:
    settings = settings or PipelineSettings(render_dpi=72)
    factory = (lambda lang: engine) if engine is not None else (lambda lang: FakeEngine(lang))
    return ExtractionContext(
        format=fmt,
        options=options or ExtractionOptions(),
        settings=settings,
        ocr_pool=OcrEnginePool(settings, factory=factory),
        budget=budget or Budget(),
    )


# ── Text Layer ───────────────────────────────────────────────────────


def test_text_layer_reads_all_pages(text_pdf):
    out = TextLayerStrategy().try_extract(text_pdf, _context())
    assert out.page_count == 3
    assert len(out.pages) == 3
    assert out.text.count(PAGE_BREAK) == 2
    assert "Acme Corp" in out.pages[0]
    assert out.page_failures == []


def test_text_layer_respects_page_cap(text_pdf):
    out = TextLayerStrategy().try_extract(text_pdf, _context(options=ExtractionOptions(max_pages=2)))
    assert out.page_count == 3
    assert len(out.pages) == 2
    assert "Page 3." not in out.text


def test_text_layer_fails_without_text(blank_pdf):
    with pytest.raises(StrategyFailure, match="no embedded text layer"):
        TextLayerStrategy().try_extract(blank_pdf, _context())


def test_open_pdf_rejects_garbage():
    with pytest.raises(StrategyFailure):
        with open_pdf(b"%PDF-1.7 this is not really a pdf"):
            pass


# ── Page Reconstruction ──────────────────────────────────────────────


def test_reconstruct_lines_orders_by_position():
    fragments = [
        TextFragment(x=300, y=101.0, text="Engineer"),
        TextFragment(x=10, y=140.0, text="Python"),
        TextFragment(x=10, y=100.6, text="Jane"),
        TextFragment(x=60, y=100.8, text="Doe"),
        TextFragment(x=80, y=140.2, text="Go"),
    ]
    assert reconstruct_lines(fragments, bucket_size=2.0) == "Jane Doe Engineer\nPython Go"


def test_reconstruct_lines_ignores_blank_fragments():
    assert reconstruct_lines([TextFragment(0, 0, "  ")], 2.0) == ""


def test_page_reconstruction_uses_reading_order(columns_pdf):
    out = PageReconstructionStrategy().try_extract(columns_pdf, _context())
    assert out.text.splitlines()[0] == "Jane Doe Engineer"


def test_page_reconstruction_isolates_failing_page(text_pdf):
    def flaky(page):
        if page.number == 1:
            raise RuntimeError("corrupt content stream")
        return page_fragments(page)

    with patch("resume_intake.parsers.strategies.page_fragments", side_effect=flaky):
        out = PageReconstructionStrategy().try_extract(text_pdf, _context())

    assert len(out.pages) == 2
    assert out.pages[0].startswith("Page 1.")
    assert out.pages[1].startswith("Page 3.")
    assert [f.page_number for f in out.page_failures] == [2]
    assert "corrupt content stream" in out.page_failures[0].reason


def test_page_reconstruction_fails_on_blank(blank_pdf):
    with pytest.raises(StrategyFailure):
        PageReconstructionStrategy().try_extract(blank_pdf, _context())


# ── Hybrid ───────────────────────────────────────────────────────────


def test_hybrid_skips_ocr_for_text_pages(text_pdf):
    engine = FakeEngine()
    out = HybridStrategy().try_extract(text_pdf, _context(engine=engine))
    assert engine.calls == 0
    assert len(out.pages) == 3
    assert out.ocr_confidence == {}


def test_hybrid_uses_ocr_for_empty_page(blank_pdf):
    engine = FakeEngine()
    out = HybridStrategy().try_extract(blank_pdf, _context(engine=engine))
    assert engine.calls == 1
    assert "Recognized page text" in out.text
    assert out.ocr_confidence == {1: 0.9}
    assert out.mean_confidence == pytest.approx(0.9)


def test_hybrid_records_page_failure_when_ocr_fails(blank_pdf):
    def broken(image):
        raise OcrError("engine crashed")

    with pytest.raises(StrategyFailure) as exc_info:
        HybridStrategy().try_extract(blank_pdf, _context(engine=FakeEngine(reply=broken)))
    assert exc_info.value.details["page_failures"] == 1


def test_hybrid_stops_ocr_at_optical_page_cap():
    engine = FakeEngine()
    options = ExtractionOptions(max_pages=50, max_optical_pages=2)
    out = HybridStrategy().try_extract(_pdf([""] * 5), _context(options=options, engine=engine))

    assert engine.calls == 2
    assert len(out.pages) == 2
    assert [f.page_number for f in out.page_failures] == [3, 4, 5]
    assert "optical page cap" in out.page_failures[0].reason


# ── Optical ──────────────────────────────────────────────────────────


def test_optical_on_image_payload():
    out = OpticalStrategy().try_extract(b"\x89PNG\r\n\x1a\n...", _context(fmt="image"))
    assert out.page_count == 1
    assert "Recognized page text" in out.text
    assert out.ocr_confidence == {1: 0.9}


def test_optical_respects_optical_page_cap(text_pdf):
    engine = FakeEngine()
    options = ExtractionOptions(max_pages=50, max_optical_pages=2)
    out = OpticalStrategy().try_extract(text_pdf, _context(options=options, engine=engine))
    assert engine.calls == 2
    assert out.page_count == 3
    assert len(out.pages) == 2


def test_optical_parallel_keeps_page_order(text_pdf):
    def slow_reply(image):
        page = int(image.decode().rsplit("-", 1)[1])
        time.sleep(0.05 * (4 - page))  # page 1 finishes last
        return OcrResult(f"Recognized text of page {page} " * 2, 0.5 + page / 10)

    settings = PipelineSettings(render_dpi=72, ocr_workers=3)
    context = _context(settings=settings)
    context.ocr_pool = OcrEnginePool(settings, factory=lambda lang: FakeEngine(lang, slow_reply))

    with patch(
        "resume_intake.parsers.strategies.render_page",
        side_effect=lambda page, dpi: f"img-{page.number + 1}".encode(),
    ):
        out = OpticalStrategy().try_extract(text_pdf, context)

    assert [p.split()[4] for p in out.pages] == ["1", "2", "3"]
    assert list(out.ocr_confidence) == [1, 2, 3]


def test_optical_isolates_ocr_failure(text_pdf):
    def flaky(image):
        if image == b"img-2":
            raise OcrError("unreadable scan")
        return OcrResult("Recognized page text from the scan, " * 2, 0.7)

    with patch(
        "resume_intake.parsers.strategies.render_page",
        side_effect=lambda page, dpi: f"img-{page.number + 1}".encode(),
    ):
        out = OpticalStrategy().try_extract(text_pdf, _context(engine=FakeEngine(reply=flaky)))

    assert len(out.pages) == 2
    assert [f.page_number for f in out.page_failures] == [2]


def test_optical_fails_when_nothing_recognized(blank_pdf):
    engine = FakeEngine(reply=lambda image: OcrResult("   ", 0.1))
    with pytest.raises(StrategyFailure, match="OCR failed"):
        OpticalStrategy().try_extract(blank_pdf, _context(engine=engine))


# ── Container Text ───────────────────────────────────────────────────


def test_docx_text_order(resume_docx):
    lines = extract_docx_text(resume_docx).splitlines()
    for expected in ["JANE DOE | jane@example.com", "Experience", "Acme Corp", "Senior Engineer",
                     "Skills: Python, Go", "References on request"]:
        assert expected in lines
    assert lines.index("JANE DOE | jane@example.com") < lines.index("Experience")
    assert lines.index("Experience") < lines.index("Acme Corp") < lines.index("Skills: Python, Go")
    assert lines.index("Skills: Python, Go") < lines.index("References on request")


def test_container_strategy_on_docx(resume_docx):
    out = ContainerTextStrategy().try_extract(resume_docx, _context(fmt="container"))
    assert out.page_count == 1
    assert "Acme Corp" in out.text


def test_container_strategy_rejects_non_docx_zip():
    with pytest.raises(StrategyFailure, match="not a readable Word document"):
        ContainerTextStrategy().try_extract(b"PK\x03\x04" + b"\x00" * 64, _context(fmt="container"))


def test_container_strategy_empty_docx():
    buf = io.BytesIO()
    Document().save(buf)
    with pytest.raises(StrategyFailure):
        ContainerTextStrategy().try_extract(buf.getvalue(), _context(fmt="container"))


def test_container_strategy_on_pdf_reads_raw_blocks(text_pdf):
    out = ContainerTextStrategy().try_extract(text_pdf, _context())
    assert out.page_count == 3
    assert len(out.pages) == 3
    assert "Acme Corp" in out.pages[0]
    assert out.ocr_confidence == {}


def test_container_strategy_pdf_without_text_fails(blank_pdf):
    with pytest.raises(StrategyFailure, match="no text blocks"):
        ContainerTextStrategy().try_extract(blank_pdf, _context())


def test_raw_block_text_skips_image_blocks():
    page = MagicMock()
    page.get_text.return_value = [
        (0, 0, 10, 10, "Jane Doe\n", 0, 0),
        (0, 20, 10, 30, "<image>", 1, 1),
        (0, 40, 10, 50, "  ", 2, 0),
        (0, 60, 10, 70, "Engineer", 3, 0),
    ]
    assert raw_block_text(page) == "Jane Doe\nEngineer"


def test_container_strategy_on_pdf_uses_docling(text_pdf):
    with patch(
        "resume_intake.parsers.strategies.convert_with_docling",
        return_value="## Jane Doe\n\n" + BODY,
    ) as mock_convert:
        out = ContainerTextStrategy().try_extract(text_pdf, _context(settings=DOCLING))
    assert out.text.startswith("## Jane Doe")
    assert mock_convert.call_args.kwargs["max_pages"] == 50


def test_container_strategy_without_docling(text_pdf):
    with patch(
        "resume_intake.parsers.strategies._docling_converter",
        side_effect=ImportError("No module named 'docling'"),
    ):
        with pytest.raises(StrategyFailure, match="docling"):
            ContainerTextStrategy().try_extract(text_pdf, _context(settings=DOCLING))


def test_docling_converter_disables_ocr():
    pipeline_options = MagicMock()
    document_converter = MagicMock()
    modules = {
        "docling": MagicMock(),
        "docling.datamodel": MagicMock(),
        "docling.datamodel.base_models": MagicMock(),
        "docling.datamodel.pipeline_options": pipeline_options,
        "docling.document_converter": document_converter,
    }
    _docling_converter.cache_clear()
    try:
        with patch.dict(sys.modules, modules):
            _docling_converter()
    finally:
        _docling_converter.cache_clear()

    pipeline_options.PdfPipelineOptions.assert_called_once_with(do_ocr=False, do_table_structure=False)
    document_converter.PdfFormatOption.assert_called_once_with(
        pipeline_options=pipeline_options.PdfPipelineOptions.return_value
    )


@pytest.mark.integration
def test_docling_converts_pdf(text_pdf):
    out = ContainerTextStrategy().try_extract(text_pdf, _context(settings=DOCLING))
    assert "Acme" in out.text


def test_estimate_page_count():
    assert estimate_page_count("") == 1
    assert estimate_page_count("x" * 3000) == 1
    assert estimate_page_count("x" * 3001) == 2


# ── Budget ───────────────────────────────────────────────────────────


def test_cancel_event_aborts_between_pages(text_pdf):
    event = threading.Event()
    event.set()
    with pytest.raises(ExtractionCancelled):
        TextLayerStrategy().try_extract(text_pdf, _context(budget=Budget(cancel_event=event)))


def test_expired_attempt_budget_times_out(text_pdf):
    budget = Budget(attempt_deadline=time.monotonic() - 1)
    with pytest.raises(AttemptTimeout):
        PageReconstructionStrategy().try_extract(text_pdf, _context(budget=budget))


def test_request_deadline_outranks_attempt_budget():
    past = time.monotonic() - 1
    with pytest.raises(ExtractionCancelled):
        Budget(attempt_deadline=past, request_deadline=past).check()


def test_budget_remaining():
    assert Budget().remaining() is None
    assert Budget(attempt_deadline=time.monotonic() + 30).remaining() == pytest.approx(30, abs=1)


def test_default_strategies_cover_every_name():
    strategies = default_strategies()
    assert set(strategies) == {"text_layer", "container_text", "page_reconstruction", "hybrid", "optical"}
    assert all(s.name == name for name, s in strategies.items())
