#!/usr/bin/env python3
"""Run the extraction cascade on one file and report what happened at every step."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from resume_intake.core.settings import ExtractionOptions, PipelineSettings, load_settings
from resume_intake.facts.experience import compute_experience
from resume_intake.parsers.cascade import extract_document
from resume_intake.parsers.errors import AggregateExtractionError, PayloadTooLargeError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("diagnose")

PREVIEW_CHARS = 500


# ── Diagnosis ────────────────────────────────────────────────────────


def diagnose(
    path: Path,
    settings: PipelineSettings,
    options: ExtractionOptions,
    show_text: bool = False,
) -> dict:
    """Extract ``path`` and collect a JSON-serialisable report."""
    payload = path.read_bytes()
    logger.info("Diagnosing %s (%d bytes)", path.name, len(payload))
    t0 = time.time()

    report: dict = {"file": str(path), "bytes": len(payload)}
    try:
        doc = extract_document(payload, options=options, settings=settings)
    except AggregateExtractionError as exc:
        report.update(
            status="failed",
            format=exc.format,
            message=exc.user_message,
            cancelled=exc.cancelled,
            attempts=[d.model_dump(mode="json") for d in exc.diagnostics],
        )
        return report
    except PayloadTooLargeError as exc:
        report.update(status="rejected", message=exc.message)
        return report

    experience = compute_experience(doc.text)
    report.update(
        status="ok",
        format=doc.format,
        strategy=doc.strategy_used,
        page_count=doc.page_count,
        text_length=len(doc.text),
        elapsed=round(time.time() - t0, 2),
        attempts=[d.model_dump(mode="json") for d in doc.diagnostics],
        experience={
            **experience.model_dump(mode="json", exclude={"intervals"}),
            "details": experience.details(),
            "prompt_hint": experience.prompt_hint(),
        },
    )
    if show_text:
        report["text"] = doc.text
    else:
        report["preview"] = doc.text[:PREVIEW_CHARS]
    return report


# ── CLI ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="Diagnose resume text extraction for one file")
    parser.add_argument("file", help="Path to a PDF, DOCX or image")
    parser.add_argument("--config", default=None, help="Pipeline settings YAML file")
    parser.add_argument("--no-ocr", action="store_true", help="Disable optical recognition")
    parser.add_argument("--lang", default="eng", help="OCR language code (default: eng)")
    parser.add_argument("--max-pages", type=int, default=50, help="Page cap for structural strategies")
    parser.add_argument("--timeout", type=float, default=None, help="Overall deadline in seconds")
    parser.add_argument("--full-text", action="store_true", help="Include the full text, not a preview")
    args = parser.parse_args()

    path = Path(args.file)
    if not path.is_file():
        logger.error("No such file: %s", path)
        sys.exit(1)

    settings = load_settings(args.config) if args.config else PipelineSettings()
    options = ExtractionOptions(
        allow_optical_recognition=not args.no_ocr,
        recognition_language=args.lang,
        max_pages=args.max_pages,
        timeout_seconds=args.timeout,
    )

    report = diagnose(path, settings, options, show_text=args.full_text)
    print(json.dumps(report, indent=2, ensure_ascii=False))
    if report["status"] != "ok":
        sys.exit(2)


if __name__ == "__main__":
    main()
