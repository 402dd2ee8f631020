"""
chronology.py - Deterministic ordering and grouping of capture records

Templates narrate moments in order, so the order handed to them must not
depend on how the client happened to serialize the array. Every function
here returns lists sorted by time; groupings are lists of (key, items)
pairs sorted by key, never dict iteration order.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

import pytz

from .models import CaptureRecord, MonthSignals

_logger = logging.getLogger(__name__)

MAX_NOTE_SNIPPETS = 3
MAX_NOTE_CHARS = 120
MAX_PATTERN_FREQUENCIES = 6

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

DayGroups = List[Tuple[str, List[CaptureRecord]]]


def resolve_timezone(name: Optional[str]):
    """pytz zone for `name`, or UTC when it is missing or unknown."""
    if not name:
        return pytz.utc
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        _logger.warning("Unknown timezone '%s', grouping days in UTC", name)
        return pytz.utc


def _sort_key(capture: CaptureRecord) -> datetime:
    # Validated records always parse; the floor keeps the sort total regardless.
    return capture.captured_at or datetime.min.replace(tzinfo=timezone.utc)


def sort_captures(captures: Sequence[CaptureRecord]) -> List[CaptureRecord]:
    """Stable ascending sort by capturedAt."""
    return sorted(captures, key=_sort_key)


def local_datetime(capture: CaptureRecord, tz=pytz.utc) -> datetime:
    return _sort_key(capture).astimezone(tz)


def day_key(capture: CaptureRecord, tz=pytz.utc) -> str:
    """
    Calendar day of a capture as `YYYY-MM-DD`: the explicit `date` field
    (zero-padded, so keys sort chronologically), else its local date.
    """
    explicit = capture.calendar_day
    if explicit is not None:
        return explicit.isoformat()
    return local_datetime(capture, tz).strftime("%Y-%m-%d")


def _week_key(capture: CaptureRecord, tz) -> str:
    day = datetime.strptime(day_key(capture, tz), "%Y-%m-%d")
    monday = day - timedelta(days=day.weekday())
    return monday.strftime("%Y-%m-%d")


def _group(captures: Sequence[CaptureRecord], key_fn) -> DayGroups:
    buckets = {}
    for capture in sort_captures(captures):
        buckets.setdefault(key_fn(capture), []).append(capture)
    return [(key, buckets[key]) for key in sorted(buckets)]


def group_by_day(captures: Sequence[CaptureRecord], tz=pytz.utc) -> DayGroups:
    return _group(captures, lambda c: day_key(c, tz))


def group_by_week(captures: Sequence[CaptureRecord], tz=pytz.utc) -> DayGroups:
    """Group into Monday-start weeks keyed by the week's Monday."""
    return _group(captures, lambda c: _week_key(c, tz))


def _normalize_tag(tag: str) -> str:
    return (tag or "").strip().lstrip("#").strip().lower()


def filter_by_tag(captures: Sequence[CaptureRecord], tag: str) -> List[CaptureRecord]:
    wanted = _normalize_tag(tag)
    if not wanted:
        return []
    return [c for c in sort_captures(captures) if any(_normalize_tag(t) == wanted for t in c.tags)]


def clean_note(note: Optional[str], limit: int = MAX_NOTE_CHARS) -> str:
    return " ".join((note or "").split())[:limit].rstrip()


def summarize_week(captures: Sequence[CaptureRecord]) -> Tuple[List[str], List[str]]:
    """Unique moods in order of first appearance, and up to three short notes."""
    moods: List[str] = []
    notes: List[str] = []
    for capture in sort_captures(captures):
        mood = (capture.mood or "").strip()
        if mood and mood not in moods:
            moods.append(mood)
        snippet = clean_note(capture.note)
        if snippet and len(notes) < MAX_NOTE_SNIPPETS:
            notes.append(snippet)
    return moods, notes


def derive_month_signals(captures: Sequence[CaptureRecord], tz=pytz.utc) -> MonthSignals:
    """
    Compute month signals from raw captures when the client sent none.

    - dominant / runner-up mood by count; ties go to the mood seen first.
    - activeDays: distinct calendar days with at least one capture.
    - volatilityScore: share of consecutive captures whose mood differs.
    - last7DaysShift: "steady", or "shifting toward <mood>" when the last
      seven days' most common mood differs from the month's.
    """
    ordered = sort_captures(captures)
    moods = [(c.mood or "").strip() for c in ordered if (c.mood or "").strip()]
    if not moods:
        return MonthSignals()

    first_seen = {}
    for index, mood in enumerate(moods):
        first_seen.setdefault(mood, index)
    ranked = sorted(Counter(moods).items(), key=lambda item: (-item[1], first_seen[item[0]]))
    dominant = ranked[0][0]
    runner_up = ranked[1][0] if len(ranked) > 1 else None

    changes = sum(1 for prev, cur in zip(moods, moods[1:]) if prev != cur)
    volatility = changes / (len(moods) - 1) if len(moods) > 1 else 0.0

    last_moment = _sort_key(ordered[-1])
    recent = [
        (c.mood or "").strip() for c in ordered
        if (c.mood or "").strip() and last_moment - _sort_key(c) <= timedelta(days=7)
    ]
    shift = "steady"
    if recent:
        recent_first = {}
        for index, mood in enumerate(recent):
            recent_first.setdefault(mood, index)
        recent_top = sorted(Counter(recent).items(), key=lambda item: (-item[1], recent_first[item[0]]))[0][0]
        if recent_top != dominant:
            shift = f"shifting toward {recent_top}"

    return MonthSignals(
        dominantMood=dominant,
        runnerUpMood=runner_up,
        activeDays=len({day_key(c, tz) for c in ordered}),
        volatilityScore=round(volatility, 2),
        last7DaysShift=shift,
    )


def _ranked(values: Sequence[str], limit: Optional[int] = None) -> List[Tuple[str, int]]:
    # Counter keeps first-seen order among equal counts.
    return Counter(values).most_common(limit)


def day_label(moment: datetime, with_year: bool = False) -> str:
    label = f"{moment:%b} {moment.day}"
    return f"{label}, {moment.year}" if with_year else label


def pattern_stats(captures: Sequence[CaptureRecord], tz=pytz.utc) -> dict:
    """
    Frequencies across a whole archive of captures.

    Returns a dict with:
        top_moods / top_tags: up to six (value, count) pairs, most frequent first
        day_parts / weekdays: every (value, count) pair, most frequent first
        date_range: "Jan 5, 2024 to Mar 2, 2024", or "unknown" when empty
    """
    ordered = sort_captures(captures)
    local = [local_datetime(c, tz) for c in ordered]
    date_range = "unknown"
    if local:
        date_range = f"{day_label(local[0], True)} to {day_label(local[-1], True)}"
    return {
        "top_moods": _ranked([c.mood.strip() for c in ordered if c.mood and c.mood.strip()], MAX_PATTERN_FREQUENCIES),
        "top_tags": _ranked([t.strip() for c in ordered for t in c.tags if t.strip()], MAX_PATTERN_FREQUENCIES),
        "day_parts": _ranked([c.dayPart or "unknown" for c in ordered]),
        "weekdays": _ranked([WEEKDAY_NAMES[moment.weekday()] for moment in local]),
        "date_range": date_range,
    }
