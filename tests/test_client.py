import json

import httpx
import pytest

from obsy_insights.client import (
    GENERIC_FAILURE_MESSAGE,
    InsightServiceClient,
    InsightServiceError,
    parse_daily_insight_text,
    user_friendly_message,
)


def client_returning(status, payload, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=payload)
    return InsightServiceClient("http://insights.test", "tok", transport=httpx.MockTransport(handler))


def test_success_returns_text_and_sends_bearer():
    seen = []
    with client_returning(200, {"ok": True, "text": "The day was calm.", "requestId": "r1"}, seen) as client:
        text = client.generate("capture", {"captures": []}, tone="cinematic")
    assert text == "The day was calm."
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert json.loads(seen[0].content)["tone"] == "cinematic"


def test_failure_envelope_raises_with_extras():
    payload = {
        "ok": False,
        "requestId": "r2",
        "error": {"stage": "rate_limit", "message": "Rate limit exceeded", "status": 429,
                  "remaining": 0, "limit": 3, "tier": "free"},
    }
    with client_returning(429, payload) as client:
        with pytest.raises(InsightServiceError) as excinfo:
            client.generate("daily", {})
    error = excinfo.value
    assert error.stage == "rate_limit"
    assert error.request_id == "r2"
    assert error.extra == {"remaining": 0, "limit": 3, "tier": "free"}
    assert "3 per day on the free plan" in user_friendly_message(error)


def test_internal_stages_are_hidden_from_users():
    error = InsightServiceError("gemini_api", "Model call failed: 503", 502)
    assert user_friendly_message(error) == GENERIC_FAILURE_MESSAGE


def test_unreadable_response():
    def handler(request):
        return httpx.Response(502, text="<html>bad gateway</html>")
    client = InsightServiceClient("http://insights.test", "tok", transport=httpx.MockTransport(handler))
    with pytest.raises(InsightServiceError) as excinfo:
        client.generate("capture", {})
    assert excinfo.value.status == 502
    client.close()


def test_daily_text_with_legacy_json():
    text = json.dumps({
        "narrative": {"text": "The day opened slowly."},
        "vibe_tags": ["slow", 3, "warm"],
        "mood_colors": ["#AABBCC"],
    })
    assert parse_daily_insight_text(text) == {
        "insight": "The day opened slowly.",
        "vibe_tags": ["slow", "warm"],
        "mood_colors": ["#AABBCC"],
    }


def test_daily_text_plain_fallback():
    assert parse_daily_insight_text("The day opened slowly.") == {
        "insight": "The day opened slowly.",
        "vibe_tags": [],
        "mood_colors": [],
    }
    assert parse_daily_insight_text('["not", "an", "object"]')["insight"] == '["not", "an", "object"]'


def test_generate_daily_parses_the_text():
    payload = {"ok": True, "requestId": "r3", "text": json.dumps({"insight": "The evening softened."})}
    with client_returning(200, payload) as client:
        result = client.generate_daily("Monday", [{"mood": "calm", "capturedAt": "2024-01-01T09:00:00Z"}])
    assert result["insight"] == "The evening softened."


def test_generate_observed_patterns_sends_camel_case_fields():
    seen = []
    payload = {"ok": True, "requestId": "r4", "text": "A pattern appears."}
    with client_returning(200, payload, seen) as client:
        text = client.generate_observed_patterns(
            [{"mood": "calm", "capturedAt": "2024-01-01T09:00:00Z"}],
            previous_pattern_text="Calm recurs.",
            generation_number=2,
            eligible_count=12,
        )
    assert text == "A pattern appears."
    assert seen[0].url.path == "/generate-observed-patterns"
    sent = json.loads(seen[0].content)
    assert sent["generationNumber"] == 2
    assert sent["previousPatternText"] == "Calm recurs."
    assert sent["eligibleCount"] == 12
    assert "type" not in sent
