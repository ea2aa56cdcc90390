"""Total years of experience from resume text, with overlapping roles merged.

Date ranges like ``Jan 2018 – Jun 2020`` or ``03/2019 to present`` are
resolved to calendar months, merged into non-overlapping intervals and
summed. Concurrent roles therefore count once. Open-ended ranges resolve
against ``now``, so the same text yields a larger total when re-run later.
"""

import calendar
import logging
import re
from datetime import date
from typing import Iterable, Optional

from resume_intake.facts.models import (
    DateRange,
    ExperienceSummary,
    MergedInterval,
    month_index,
)

logger = logging.getLogger(__name__)

EARLIEST_START = date(1980, 1, 1)

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_MONTH_NAME = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:tember|t)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
_YEAR = r"(?:19|20)\d{2}"


def _date_pattern(prefix: str) -> str:
    return (
        rf"(?:\b(?P<{prefix}_name>{_MONTH_NAME})\.?,?\s*"
        rf"|(?<!\d)(?P<{prefix}_num>\d{{1,2}})(?:\s*[/.\-]\s*|\s+))"
        rf"(?P<{prefix}_year>{_YEAR})(?!\d)"
    )


_SEPARATOR = r"\s*(?:-|–|—|\bto\b|\buntil\b|\btill\b)\s*"
_OPEN_END = r"(?P<open>present|current|now|today|date)\b"

_RANGE_RE = re.compile(
    rf"{_date_pattern('start')}{_SEPARATOR}(?:{_date_pattern('end')}|{_OPEN_END})",
    re.IGNORECASE,
)

_YEARS_MENTION_RE = re.compile(
    r"(?<![\d.])(\d{1,2}(?:\.\d+)?)\s*\+?\s*(?:years?|yrs?)\b",
    re.IGNORECASE,
)


# ── Public API ───────────────────────────────────────────────────────


def compute_experience(text: str, now: Optional[date] = None) -> ExperienceSummary:
    """Summarise total experience in ``text``. Never raises.

    Args:
        text: Extracted resume text (sanitized or raw).
        now: Reference date for open-ended ranges; defaults to today.
    """
    if not text:
        return ExperienceSummary()
    today = now or date.today()

    ranges = find_date_ranges(text, today)
    if not ranges:
        return _fallback_summary(text)

    merged = merge_intervals(ranges)
    total_months = sum(interval.months for interval in merged)
    span_months = month_index(merged[-1].end) - month_index(merged[0].start) + 1

    summary = ExperienceSummary(
        total_months=total_months,
        total_years=round(total_months / 12, 1),
        career_span_years=round(span_months / 12, 1),
        role_count=len(ranges),
        source_note="dates-parsed",
        intervals=merged,
    )
    logger.info("Experience: %s", summary.details())
    return summary


def find_date_ranges(text: str, now: date) -> list[DateRange]:
    """All valid date ranges in ``text``, in order of appearance.

    Ranges starting before 1980, after the current month, or after their
    own end are dropped. Ends in the future are clamped to the current month.
    """
    current_idx = month_index(now)
    current_end = _month_end(now.year, now.month)
    ranges: list[DateRange] = []

    for match in _RANGE_RE.finditer(text):
        start_month = _resolve_month(match.group("start_name"), match.group("start_num"))
        if start_month is None:
            continue
        start = date(int(match.group("start_year")), start_month, 1)

        open_ended = match.group("open") is not None
        if open_ended:
            end = current_end
        else:
            end_month = _resolve_month(match.group("end_name"), match.group("end_num"))
            if end_month is None:
                continue
            end = _month_end(int(match.group("end_year")), end_month)

        if start < EARLIEST_START or month_index(start) > current_idx:
            logger.debug("Discarding out-of-window range %r", match.group(0))
            continue
        if month_index(end) > current_idx:
            end = current_end
        if start > end:
            logger.debug("Discarding reversed range %r", match.group(0))
            continue

        ranges.append(DateRange(start=start, end=end, open_ended=open_ended, raw=match.group(0)))

    return ranges


def merge_intervals(ranges: Iterable[DateRange]) -> list[MergedInterval]:
    """Merge overlapping or month-adjacent ranges in a single pass over the sorted input."""
    ordered = sorted(ranges, key=lambda r: (r.start_idx, r.end_idx))
    if not ordered:
        return []

    merged: list[MergedInterval] = []
    cur_start, cur_end, count = ordered[0].start, ordered[0].end, 1
    for nxt in ordered[1:]:
        if nxt.start_idx <= month_index(cur_end) + 1:
            if nxt.end > cur_end:
                cur_end = nxt.end
            count += 1
        else:
            merged.append(MergedInterval(start=cur_start, end=cur_end, range_count=count))
            cur_start, cur_end, count = nxt.start, nxt.end, 1
    merged.append(MergedInterval(start=cur_start, end=cur_end, range_count=count))
    return merged


# ── Helpers ──────────────────────────────────────────────────────────


def _resolve_month(name: Optional[str], number: Optional[str]) -> Optional[int]:
    if name:
        return _MONTHS[name[:3].lower()]
    month = int(number)
    return month if 1 <= month <= 12 else None


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _fallback_summary(text: str) -> ExperienceSummary:
    """Use the first "N years" / "N+ yrs" mention when no date range survives."""
    match = _YEARS_MENTION_RE.search(text)
    if not match:
        logger.info("Experience: no date ranges or year mentions found")
        return ExperienceSummary(source_note="none")

    years = float(match.group(1))
    total_months = round(years * 12)
    logger.info("Experience: no date ranges, using text mention %r", match.group(0))
    return ExperienceSummary(
        total_months=total_months,
        total_years=round(total_months / 12, 1),
        source_note="fallback-text-mention",
    )
