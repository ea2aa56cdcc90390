"""Deterministic text cleanup applied to every extracted text before acceptance.

Each pass is a pure function so the lossy heuristics (wide-spacing collapse,
merged-word splitting) can be measured and tuned in isolation. The composed
``sanitize`` is idempotent.
"""

import re

# ── Character Normalization ──────────────────────────────────────────

_CHAR_MAP = str.maketrans(
    {
        "ﬀ": "ff",
        "ﬁ": "fi",
        "ﬂ": "fl",
        "ﬃ": "ffi",
        "ﬄ": "ffl",
        "ﬅ": "st",
        "ﬆ": "st",
        "‘": "'",
        "’": "'",
        "‚": "'",
        "‛": "'",
        "′": "'",
        "“": '"',
        "”": '"',
        "„": '"',
        "‟": '"',
        "″": '"',
        "‒": "-",
        "–": "-",
        "—": "-",
        "―": "-",
        "−": "-",
        "…": "...",
    }
)

# Non-whitespace control chars, soft hyphen, zero-width chars and BOM
_INVISIBLE_RE = re.compile(r"[\x00-\x08\x0e-\x1f\x7f\u00ad\u200b-\u200d\u2060\ufeff]")
_HSPACE_RE = re.compile(r"[^\S\n]")
_HSPACE_RUN_RE = re.compile(r"[^\S\n]+")

# ── Heuristics ───────────────────────────────────────────────────────

_WIDE_SPACED_RE = re.compile(r"(?<!\w)[A-Z](?:[^\S\n]+[A-Z]){2,}(?!\w)")
_MERGED_WORD_RE = re.compile(r"(?<=[a-z])(?=[A-Z][a-z])")

GARBAGE_MIN_LENGTH = 5  # lines at or below this length are never dropped
GARBAGE_MIN_ALNUM_RATIO = 0.3

_BLANK_RUN_RE = re.compile(r"\n{3,}")


# ── Public API ───────────────────────────────────────────────────────


def sanitize(text: str) -> str:
    """Run every cleanup pass in order and return the cleaned text."""
    if not text:
        return ""
    clean = normalize_characters(text)
    clean = collapse_wide_spacing(clean)
    clean = split_merged_words(clean)
    clean = filter_garbage_lines(clean)
    return normalize_whitespace(clean)


def normalize_characters(text: str) -> str:
    """Unify line endings and map ligatures, curly quotes, dashes and ellipses to ASCII."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INVISIBLE_RE.sub("", text)
    text = _HSPACE_RE.sub(" ", text)
    return text.translate(_CHAR_MAP)


def collapse_wide_spacing(text: str) -> str:
    """Join letter-spaced capitals, e.g. ``E X P E R I E N C E`` → ``EXPERIENCE``.

    Only runs of three or more standalone uppercase letters are touched.
    """
    return _WIDE_SPACED_RE.sub(lambda m: _HSPACE_RUN_RE.sub("", m.group(0)), text)


def split_merged_words(text: str) -> str:
    """Split accidentally concatenated Title-case words: ``SeniorManager`` → ``Senior Manager``.

    Names such as ``JavaScript`` or ``McDonald`` are split too. There is no
    exception list.
    """
    return _MERGED_WORD_RE.sub(" ", text)


def filter_garbage_lines(text: str) -> str:
    """Drop lines that are mostly punctuation or OCR noise. Keep blank lines."""
    kept = [line for line in text.split("\n") if not is_garbage_line(line)]
    return "\n".join(kept)


def is_garbage_line(line: str) -> bool:
    trimmed = line.strip()
    if len(trimmed) <= GARBAGE_MIN_LENGTH:
        return False
    alnum = sum(1 for ch in trimmed if ch.isalnum())
    return alnum / len(trimmed) < GARBAGE_MIN_ALNUM_RATIO


def normalize_whitespace(text: str) -> str:
    """Collapse horizontal whitespace, trim lines, keep at most one blank line in a row."""
    lines = [_HSPACE_RUN_RE.sub(" ", line).strip() for line in text.split("\n")]
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(lines)).strip()
