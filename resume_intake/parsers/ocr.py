"""Optical recognition engines (Tesseract, Ollama vision model) and a shared engine pool."""

import base64
import io
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Iterator, NamedTuple, Optional, Protocol

import ollama
import pytesseract
from PIL import Image

from resume_intake.core.settings import PipelineSettings
from resume_intake.parsers.errors import OcrError

logger = logging.getLogger(__name__)


class OcrResult(NamedTuple):
    text: str
    confidence: Optional[float]  # 0-1, None when the engine does not report one


class OcrEngine(Protocol):
    language: str

    def recognize(self, image_bytes: bytes) -> OcrResult: ...


# ── Tesseract ────────────────────────────────────────────────────────


class TesseractEngine:
    """Recognize text with the Tesseract binary via pytesseract."""

    def __init__(self, language: str = "eng") -> None:
        self.language = language

    def recognize(self, image_bytes: bytes) -> OcrResult:
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                if image.mode not in ("RGB", "L"):
                    image = image.convert("RGB")
                data = pytesseract.image_to_data(
                    image,
                    lang=self.language,
                    output_type=pytesseract.Output.DICT,
                )
        except Exception as exc:
            raise OcrError(f"Tesseract failed: {exc}") from exc

        return words_to_result(data)


def words_to_result(data: dict) -> OcrResult:
    """Rebuild line structure from ``image_to_data`` output and average word confidence."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        try:
            conf = float(data["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if conf < 0:  # -1 marks layout boxes, not words
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = sum(confidences) / len(confidences) / 100.0 if confidences else None
    return OcrResult(text=text, confidence=confidence)


# ── Vision Model (Ollama) ────────────────────────────────────────────


class VisionModelEngine:
    """Transcribe a page image with a local vision model served by Ollama.

    Each call is a fresh single-message conversation, so nothing leaks
    between pages or documents.
    """

    def __init__(self, model: str = "minicpm-v", language: str = "eng") -> None:
        self.model = model
        self.language = language

    def recognize(self, image_bytes: bytes) -> OcrResult:
        img_b64 = base64.b64encode(image_bytes).decode()
        try:
            response = ollama.chat(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": (
                            "Transcribe all text on this page exactly as written, "
                            "top to bottom, one line per printed line. "
                            f"The document language code is '{self.language}'. "
                            "Output plain text only, no commentary."
                        ),
                        "images": [img_b64],
                    }
                ],
                options={"temperature": 0},
            )
        except Exception as exc:
            raise OcrError(f"Vision model {self.model} failed: {exc}") from exc

        return OcrResult(text=response.message.content or "", confidence=None)


# ── Engine Pool ──────────────────────────────────────────────────────


class OcrEnginePool:
    """Process-wide pool of OCR engines keyed by (engine kind, language).

    ``lease`` hands out an idle engine to exactly one caller at a time;
    concurrent callers get distinct instances.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        factory: Optional[Callable[[str], OcrEngine]] = None,
    ) -> None:
        self._settings = settings
        self._factory = factory or self._default_factory
        self._idle: dict[tuple[str, str], list[OcrEngine]] = defaultdict(list)
        self._lock = threading.Lock()
        self.created = 0

    def _default_factory(self, language: str) -> OcrEngine:
        if self._settings.ocr_engine == "vision":
            return VisionModelEngine(model=self._settings.vision_model, language=language)
        return TesseractEngine(language=language)

    @contextmanager
    def lease(self, language: str) -> Iterator[OcrEngine]:
        key = (self._settings.ocr_engine, language)
        with self._lock:
            engine = self._idle[key].pop() if self._idle[key] else None
        if engine is None:
            engine = self._factory(language)
            with self._lock:
                self.created += 1
            logger.debug("Created %s OCR engine for language %s", key[0], language)
        try:
            yield engine
        finally:
            with self._lock:
                self._idle[key].append(engine)
