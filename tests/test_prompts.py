import re
from datetime import datetime, timedelta, timezone

import pytz

from obsy_insights.models import InsightRequest, ObservedPatternsRequest
from obsy_insights.prompts import GLOBAL_CONSTRAINTS, build_observed_patterns_prompt, compose_prompt
from obsy_insights.tones import resolve_tone

from .utils import capture


def compose(body, tz=pytz.utc):
    request = InsightRequest.model_validate(body)
    return compose_prompt(request, resolve_tone(request.tone, request.customTonePrompt), tz)


def test_every_prompt_carries_constraints_and_tone():
    prompt = compose({
        "type": "capture",
        "data": {"captures": [capture("calm", "2024-01-01T09:00:00Z", note="tea by the window")]},
        "tone": "dreamlike",
    })
    assert GLOBAL_CONSTRAINTS in prompt
    assert resolve_tone("dreamlike").style_guide in prompt
    assert "mood: calm" in prompt
    assert "note: tea by the window" in prompt


def test_weekly_days_are_ascending_regardless_of_input_order():
    prompt = compose({
        "type": "weekly",
        "data": {
            "weekLabel": "Mar 4 to Mar 10",
            "captures": [
                capture("tired", "2024-03-06T21:00:00Z"),
                capture("calm", "2024-03-04T08:00:00Z"),
                capture("focused", "2024-03-06T07:00:00Z"),
            ],
        },
    })
    first, second = prompt.index("2024-03-04"), prompt.index("2024-03-06")
    assert first < second
    assert prompt.index("mood: focused") < prompt.index("mood: tired")
    assert "Do not itemize day by day" in prompt


def test_daily_prompt_is_chronological_and_asks_for_json():
    prompt = compose({
        "type": "daily",
        "data": {
            "dateLabel": "Monday",
            "captures": [
                capture("happy", "2024-01-01T18:00:00Z"),
                capture("calm", "2024-01-01T08:00:00Z"),
            ],
        },
    })
    assert prompt.index("mood: calm") < prompt.index("mood: happy")
    assert '{"narrative": {"text": "..."}}' in prompt
    assert "Date: Monday" in prompt


def test_month_prompt_describes_signals_without_raw_numbers():
    prompt = compose({
        "type": "month",
        "data": {
            "monthLabel": "January",
            "signals": {
                "dominantMood": "calm",
                "runnerUpMood": "anxious",
                "activeDays": 17,
                "volatilityScore": 0.83,
                "last7DaysShift": "steady",
            },
        },
    })
    signals_block = prompt[prompt.index("MONTH SIGNALS:"):]
    assert "regular check-ins" in signals_block
    assert "frequent mood shifts" in signals_block
    assert not re.search(r"\b17\b|0\.83", signals_block)


def test_month_prompt_derives_signals_and_week_summaries():
    prompt = compose({
        "type": "month",
        "data": {
            "captures": [
                capture("calm", "2024-01-09T09:00:00Z", note="quiet start"),
                capture("happy", "2024-01-02T09:00:00Z"),
            ],
        },
    })
    assert "Week 1: moods: happy" in prompt
    assert 'Week 2: moods: calm | notes: "quiet start"' in prompt


def test_album_prompt_names_every_participant():
    prompt = compose({
        "type": "album",
        "data": {
            "albumContext": [
                {"user_name": "Maya", "mood": "joyful", "description": "Beach at sunset"},
                {"user_name": "Theo", "mood": "calm", "description": "Morning swim"},
                {"user_name": "Maya", "mood": "tired", "description": "Long drive home"},
            ],
        },
    })
    assert "Participants: Maya, Theo" in prompt
    assert "Theo: Morning swim (feeling: calm)" in prompt
    assert "Name every participant" in prompt


def test_tag_prompt_only_includes_tagged_captures():
    prompt = compose({
        "type": "tag",
        "data": {
            "tag": "#gym",
            "captures": [
                capture("energized", "2024-01-02T07:00:00Z", tags=["gym"]),
                capture("bored", "2024-01-02T12:00:00Z", tags=["work"]),
            ],
        },
    })
    assert "Theme: gym" in prompt
    assert "mood: energized" in prompt
    assert "mood: bored" not in prompt


def test_custom_tone_guardrails_reach_the_prompt():
    prompt = compose({
        "type": "capture",
        "data": {"captures": [capture("calm", "2024-01-01T09:00:00Z")]},
        "tone": "custom",
        "customTonePrompt": "Like a nature documentary narrator",
    })
    assert "CUSTOM TONE ACTIVE" in prompt
    assert "Like a nature documentary narrator" in prompt


def patterns(body, tz=pytz.utc):
    return build_observed_patterns_prompt(ObservedPatternsRequest.model_validate(body), tz)


FIVE_DAYS = [
    capture("calm", "2024-01-03T08:00:00Z", tags=["walk"], obsyNote="a slow, steady start"),
    capture("tired", "2024-01-01T21:00:00Z"),
    capture("calm", "2024-01-02T08:00:00Z", tags=["walk"]),
    capture("tired", "2024-01-04T21:00:00Z"),
    capture("calm", "2024-01-05T08:00:00Z"),
]


def test_observed_patterns_prompt_lists_frequencies_and_moments():
    prompt = patterns({"captures": FIVE_DAYS})
    assert GLOBAL_CONSTRAINTS in prompt
    assert "PATTERN RULES:" in prompt
    assert "Total eligible moments: 5" in prompt
    assert "Date range: Jan 1, 2024 to Jan 5, 2024" in prompt
    assert "- Most frequent moods: calm (3), tired (2)" in prompt
    assert "- Most frequent tags: walk (2)" in prompt
    assert "- Days of the week: Monday (1), Tuesday (1), Wednesday (1), Thursday (1), Friday (1)" in prompt
    assert "reflection: a slow, steady start" in prompt
    assert prompt.index("Jan 1 21:00") < prompt.index("Jan 5 08:00")
    assert "REFINEMENT CONTEXT:" not in prompt
    assert prompt.endswith('{"text": "..."}')


def test_previous_observation_only_from_second_generation():
    body = {"captures": FIVE_DAYS, "previousPatternText": "Mornings often begin calm."}
    assert "REFINEMENT CONTEXT:" not in patterns(body)
    prompt = patterns(dict(body, generationNumber=3))
    assert "This is generation 3. The previous observation was:" in prompt
    assert '"Mornings often begin calm."' in prompt


def test_large_archives_detail_only_recent_moments():
    start = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    captures = [
        capture("calm", (start + timedelta(days=i)).isoformat().replace("+00:00", "Z"))
        for i in range(55)
    ]
    prompt = patterns({"captures": captures, "eligibleCount": 60})
    assert "Total eligible moments: 60" in prompt
    assert "(The 20 most recent of 55 moments)" in prompt
    assert "- Most frequent moods: calm (55)" in prompt
    assert prompt.count(" | mood: calm") == 20
    assert "Jan 1 08:00" not in prompt
    assert "Feb 24 08:00" in prompt
