"""
prompts.py - Prompt composition for every insight type

`compose_prompt` is a pure function of (request, tone, timezone). It merges
three things into one prompt string:
- the global constraints block, identical for every type and tone;
- the resolved tone's style guide;
- the normalized, chronologically ordered moments for the requested type.

Captures reach this module already sorted; the day and week groupings below
come from chronology.py and are emitted in ascending key order.
"""

import logging
from typing import Callable, Dict, List

from .chronology import (
    clean_note,
    day_label,
    derive_month_signals,
    filter_by_tag,
    group_by_day,
    group_by_week,
    local_datetime,
    pattern_stats,
    sort_captures,
    summarize_week,
)
from .models import (
    CaptureRecord,
    InsightRequest,
    InsightType,
    MonthSignals,
    ObservedPatternsRequest,
    ToneDefinition,
)
from .utils import BANNED_STARTERS, BANNED_WORDS

_logger = logging.getLogger(__name__)

MAX_WEEKLY_CAPTURES = 40
MAX_TAG_CAPTURES = 10
MAX_PATTERN_DETAIL_CAPTURES = 50
RECENT_PATTERN_CAPTURES = 20
MAX_PREVIOUS_PATTERN_CHARS = 1200

GLOBAL_CONSTRAINTS = (
    "ABSOLUTE RULES:\n"
    "- Third person ONLY. Never use \"you\", \"your\", \"you're\", \"we\", \"I\".\n"
    "- Never use emojis, markdown, headings or bullets. Continuous prose only.\n"
    "- Never use question marks or exclamation marks.\n"
    "- Never use dashes of any kind (em dash, en dash, or a hyphen used as punctuation). "
    "Use periods, commas, colons, semicolons, parentheses and apostrophes.\n"
    f"- BANNED WORDS: {', '.join(BANNED_WORDS)}. Say moments, feelings, the day, this stretch of time instead.\n"
    "- Never mention the app, tracking, or how the moments were recorded.\n"
    f"- BANNED openers: {', '.join(BANNED_STARTERS)}.\n"
    "- The first word must be a determiner (\"The\", \"A\", \"This\") or a time reference "
    "(\"Morning\", \"Midweek\", \"Early November\").\n"
    "- No advice, no therapy language, no character names, no roleplay.\n"
    "- EMBODY THE TONE below, but never name the tone or describe it."
)


def _time_label(capture: CaptureRecord, tz) -> str:
    if capture.localTimeLabel:
        return capture.localTimeLabel.strip()
    return local_datetime(capture, tz).strftime("%H:%M")


def _capture_line(capture: CaptureRecord, tz, with_tags: bool = True) -> str:
    fields = [
        _time_label(capture, tz),
        capture.timeBucket or "unknown",
        capture.dayPart or "unknown",
        f"mood: {capture.mood.strip()}",
    ]
    note = clean_note(capture.note)
    if note:
        fields.append(f"note: {note}")
    if with_tags and capture.tags:
        fields.append(f"tags: {', '.join(t.strip() for t in capture.tags if t.strip())}")
    return " | ".join(fields)


def _header(narrator: str, tone: ToneDefinition, label_line: str) -> List[str]:
    return [
        f"You are a third-person narrator writing {narrator}.",
        "",
        GLOBAL_CONSTRAINTS,
        "",
        f"Tone style: {tone.style_guide.strip()}",
        label_line,
        "",
    ]


def _describe_volatility(score: float) -> str:
    if score >= 0.75:
        return "frequent mood shifts"
    if score >= 0.4:
        return "noticeable variation"
    return "largely consistent"


def _describe_engagement(active_days: int) -> str:
    if active_days >= 25:
        return "present nearly every day"
    if active_days >= 15:
        return "regular check-ins"
    if active_days >= 8:
        return "occasional reflections"
    return "sporadic moments"


def build_capture_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    capture = sort_captures(request.data.captures)[0]
    lines = _header("a tiny reflection on a single moment", tone, "Moment:")
    lines += [
        _capture_line(capture, tz),
        "",
        "Write 1 to 2 sentences. Observational, not prescriptive.",
        "Return plain text only.",
    ]
    return "\n".join(lines)


def build_daily_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    captures = sort_captures(request.data.captures)
    lines = _header(
        "a daily emotional summary",
        tone,
        f"Date: {request.data.dateLabel or 'Today'}",
    )
    lines.append("Moments (chronological):")
    lines += [_capture_line(c, tz) for c in captures]
    lines += [
        "",
        "Write one paragraph of 2 to 5 sentences, fewer when there are few moments.",
        "Follow this arc in order: the baseline the day opened with, the shift, how it resolved, "
        "then one closing reflection.",
        "Return JSON: {\"narrative\": {\"text\": \"...\"}}",
        "No markdown and no line breaks inside the narrative text.",
    ]
    return "\n".join(lines)


def build_weekly_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    captures = sort_captures(request.data.captures)[-MAX_WEEKLY_CAPTURES:]
    lines = _header(
        "a weekly emotional summary",
        tone,
        f"Period: {request.data.weekLabel or 'This week'}",
    )
    lines.append("Days (chronological):")
    for day, day_captures in group_by_day(captures, tz):
        lines.append(day)
        lines += [_capture_line(c, tz, with_tags=False) for c in day_captures]
        lines.append("")
    lines += [
        "Narrative arc: the opening energy of the period, the shift around its middle, "
        "then the state it closed in.",
        "Do not itemize day by day and do not mention dates or weekday names.",
        "Maximum 120 words, 1 to 2 paragraphs, prose only.",
        "Return JSON if possible: {\"narrative\": {\"text\": \"...\"}}. Otherwise plain text.",
    ]
    return "\n".join(lines)


def build_month_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    captures = sort_captures(request.data.captures or [])
    signals: MonthSignals = request.data.signals or derive_month_signals(captures, tz)
    lines = _header(
        "a monthly emotional overview",
        tone,
        f"Month: {request.data.monthLabel or 'This month'}",
    )
    lines += [
        "MONTH SIGNALS:",
        f"- Dominant mood: {signals.dominantMood}",
        f"- Runner-up mood: {signals.runnerUpMood or 'none'}",
        f"- Presence: {_describe_engagement(signals.activeDays)}",
        f"- Variation: {_describe_volatility(signals.volatilityScore)}",
        f"- Recent trend: {signals.last7DaysShift}",
        "",
    ]
    weeks = group_by_week(captures, tz)
    if weeks:
        lines.append("WEEK BY WEEK (chronological):")
        for index, (_, week_captures) in enumerate(weeks, start=1):
            moods, notes = summarize_week(week_captures)
            line = f"Week {index}: moods: {', '.join(moods) or 'none'}"
            if notes:
                line += " | notes: " + "; ".join(f"\"{n}\"" for n in notes)
            lines.append(line)
        lines.append("")
    lines += [
        "Weave the signals and the weekly context into how the month felt and evolved.",
        "NEVER mention numbers, counts, percentages, or statistics.",
        "2 to 3 short paragraphs, maximum 180 words, prose only.",
        "Return plain text or JSON: {\"insight\": \"...\"}.",
    ]
    return "\n".join(lines)


def build_album_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    entries = request.data.albumContext
    names: List[str] = []
    for entry in entries:
        name = entry.user_name.strip()
        if name not in names:
            names.append(name)
    lines = _header("a shared album's story", tone, f"Participants: {', '.join(names)}")
    lines.append("Moments:")
    for entry in entries:
        description = clean_note(entry.description, 200) or "no description"
        lines.append(f"{entry.user_name.strip()}: {description} (feeling: {entry.mood or 'unspecified'})")
    lines += [
        "",
        "Write one flowing narrative, not a log. Name every participant at least once.",
        "Names are the only exception to the no character names rule.",
        "Do not mention specific times.",
        "3 to 6 sentences, more when there are more moments.",
        "Return plain text only.",
    ]
    return "\n".join(lines)


def build_tag_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    tag = request.data.tag.strip().lstrip("#")
    captures = filter_by_tag(request.data.captures, tag)[-MAX_TAG_CAPTURES:]
    lines = _header("a micro-reflection about one recurring theme", tone, f"Theme: {tag}")
    lines.append("Related moments (chronological):")
    lines += [_capture_line(c, tz, with_tags=False) for c in captures]
    lines += [
        "",
        "Write 1 to 2 sentences about what this theme seems to mean across these moments.",
        "Return plain text only.",
    ]
    return "\n".join(lines)


PROMPT_BUILDERS: Dict[InsightType, Callable[[InsightRequest, ToneDefinition, object], str]] = {
    InsightType.CAPTURE: build_capture_prompt,
    InsightType.DAILY: build_daily_prompt,
    InsightType.WEEKLY: build_weekly_prompt,
    InsightType.MONTH: build_month_prompt,
    InsightType.ALBUM: build_album_prompt,
    InsightType.TAG: build_tag_prompt,
}


def compose_prompt(request: InsightRequest, tone: ToneDefinition, tz) -> str:
    """Build the prompt for a validated request."""
    prompt = PROMPT_BUILDERS[request.type](request, tone, tz)
    _logger.debug("Composed %s prompt (%d chars, tone=%s)", request.type.value, len(prompt), tone.id)
    return prompt


# Fixed voice for pattern reflections; users pick no tone for these.
OBSERVER_TONE = ToneDefinition(
    id="observer",
    label="Observer",
    style_guide=(
        "Calm, observational, poetic but grounded, like a narrator who has been quietly "
        "watching for a long time. Concrete: name specific moods, tags and recurring elements."
    ),
    is_preset=False,
)

PATTERN_RULES = (
    "PATTERN RULES:\n"
    "- Surface recurring emotional rhythms, time of day patterns, tag clusters, mood "
    "transitions and themes from the notes and reflections.\n"
    "- Use phrasing such as \"there's a tendency\", \"often\", \"a pattern appears\", "
    "\"a rhythm emerges\".\n"
    "- Never diagnose, label a personality, suggest actions, or imply intent or cause.\n"
    "- Never speak with certainty or permanence (\"this means\", \"clearly\", \"this defines them\").\n"
    "- When patterns are weak, stay subtle and say less. This observes repetition, not identity."
)


def _format_frequencies(pairs) -> str:
    if not pairs:
        return "none"
    return ", ".join(f"{value} ({count})" for value, count in pairs)


def _pattern_line(capture: CaptureRecord, tz) -> str:
    moment = local_datetime(capture, tz)
    fields = [
        f"{day_label(moment)} {moment:%H:%M}",
        capture.timeBucket or "unknown",
        capture.dayPart or "unknown",
        f"mood: {capture.mood.strip()}",
    ]
    note = clean_note(capture.note)
    if note:
        fields.append(f"note: {note}")
    reflection = clean_note(capture.obsyNote, 200)
    if reflection:
        fields.append(f"reflection: {reflection}")
    if capture.tags:
        fields.append(f"tags: {', '.join(t.strip() for t in capture.tags if t.strip())}")
    return " | ".join(fields)


def build_observed_patterns_prompt(request: ObservedPatternsRequest, tz) -> str:
    """
    Prompt for a lifelong pattern reflection over every eligible capture.

    Large archives send the aggregate frequencies plus only the most recent
    moments in detail. From the second generation on, the previous
    reflection is included so the new one evolves it instead of repeating it.
    """
    captures = sort_captures(request.captures)
    stats = pattern_stats(captures, tz)
    eligible = request.eligibleCount if request.eligibleCount is not None else len(captures)

    lines = _header("lifelong emotional pattern observations", OBSERVER_TONE, f"Total eligible moments: {eligible}")
    lines[3:3] = ["", PATTERN_RULES]
    lines += [
        f"Date range: {stats['date_range']}",
        "",
        "FREQUENCIES:",
        f"- Most frequent moods: {_format_frequencies(stats['top_moods'])}",
        f"- Most frequent tags: {_format_frequencies(stats['top_tags'])}",
        f"- Time of day: {_format_frequencies(stats['day_parts'])}",
        f"- Days of the week: {_format_frequencies(stats['weekdays'])}",
        "",
        "MOMENTS (chronological):",
    ]
    detailed = captures
    if len(captures) > MAX_PATTERN_DETAIL_CAPTURES:
        detailed = captures[-RECENT_PATTERN_CAPTURES:]
        lines.append(f"(The {RECENT_PATTERN_CAPTURES} most recent of {len(captures)} moments)")
    lines += [_pattern_line(c, tz) for c in detailed]

    previous = clean_note(request.previousPatternText, MAX_PREVIOUS_PATTERN_CHARS)
    if request.generationNumber > 1 and previous:
        lines += [
            "",
            "REFINEMENT CONTEXT:",
            f"This is generation {request.generationNumber}. The previous observation was:",
            f"\"{previous}\"",
            "Build on it. Notice what has shifted, deepened or emerged since, and evolve the "
            "observations instead of repeating them.",
        ]

    lines += [
        "",
        "Write exactly two paragraphs separated by a single newline. Plain text inside the field.",
        "Return ONLY JSON, no markdown fences: {\"text\": \"...\"}",
    ]
    prompt = "\n".join(lines)
    _logger.debug(
        "Composed observed patterns prompt (%d chars, %d moments, generation %d)",
        len(prompt),
        len(captures),
        request.generationNumber,
    )
    return prompt
