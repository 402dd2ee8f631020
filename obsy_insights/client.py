"""
client.py - Python client for /generate-insight and /generate-observed-patterns

Used by scripts and integration tests the same way the mobile app uses the
service:
- branch on `ok`;
- show a tier-aware message for `rate_limit` and one generic message for
  every other stage, so internal stage names never reach users;
- for daily insights, accept `text` that is itself a JSON object (legacy
  payload with narrative, vibe tags and mood colors) and fall back to plain
  text when it is not.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 45.0
GENERIC_FAILURE_MESSAGE = "Failed to generate insight. Please try again."


class InsightServiceError(Exception):
    """A failure envelope (or an unreadable response) from the insight service."""

    def __init__(self, stage: str, message: str, status: int,
                 request_id: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message
        self.status = status
        self.request_id = request_id
        self.extra = extra or {}


def user_friendly_message(error: InsightServiceError, tier: Optional[str] = None) -> str:
    """Message safe to show in the UI."""
    if error.stage == "rate_limit":
        tier_name = tier or error.extra.get("tier") or "current"
        limit = error.extra.get("limit")
        if limit:
            return f"Daily insight limit reached ({limit} per day on the {tier_name} plan). Try again tomorrow."
        return f"Daily insight limit reached on the {tier_name} plan. Try again tomorrow."
    return GENERIC_FAILURE_MESSAGE


def parse_daily_insight_text(text: str) -> Dict[str, Any]:
    """
    Read a daily insight `text` that may be a JSON-encoded object.

    Returns a dict with `insight`, `vibe_tags` and `mood_colors`. Any text
    that is not a JSON object with a narrative becomes the insight as-is.
    """
    result: Dict[str, Any] = {"insight": text, "vibe_tags": [], "mood_colors": []}
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return result
    if not isinstance(parsed, dict):
        return result

    narrative = parsed.get("insight")
    if not isinstance(narrative, str):
        nested = parsed.get("narrative")
        narrative = nested.get("text") if isinstance(nested, dict) else None
    if not isinstance(narrative, str) or not narrative.strip():
        return result

    result["insight"] = narrative
    result["vibe_tags"] = _string_list(parsed.get("vibe_tags"))
    result["mood_colors"] = _string_list(parsed.get("mood_colors"))
    return result


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


class InsightServiceClient:
    """Thin httpx wrapper around POST /generate-insight."""

    def __init__(self, base_url: str, token: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token = token

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _post(self, path: str, body: Dict[str, Any]) -> str:
        try:
            response = self._client.post(
                path,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as e:
            _logger.warning("Request to %s failed before a response: %s", path, e)
            raise InsightServiceError("network", str(e), 0) from e

        try:
            payload = response.json()
        except ValueError:
            raise InsightServiceError("unknown", "Unreadable response from insight service", response.status_code)

        if isinstance(payload, dict) and payload.get("ok") is True and isinstance(payload.get("text"), str):
            return payload["text"]

        error = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(error, dict):
            raise InsightServiceError("unknown", "Malformed response from insight service", response.status_code)
        extra = {k: v for k, v in error.items() if k not in ("stage", "message", "status")}
        raise InsightServiceError(
            stage=str(error.get("stage", "unknown")),
            message=str(error.get("message", "")),
            status=int(error.get("status", response.status_code)),
            request_id=payload.get("requestId"),
            extra=extra,
        )

    def generate(self, insight_type: str, data: Dict[str, Any], tone: str = "neutral",
                 custom_tone_prompt: Optional[str] = None) -> str:
        """Return the generated text, or raise InsightServiceError."""
        body: Dict[str, Any] = {"type": insight_type, "data": data, "tone": tone}
        if custom_tone_prompt:
            body["customTonePrompt"] = custom_tone_prompt
        return self._post("/generate-insight", body)

    def generate_daily(self, date_label: str, captures: List[Dict[str, Any]], tone: str = "neutral",
                       custom_tone_prompt: Optional[str] = None) -> Dict[str, Any]:
        text = self.generate("daily", {"dateLabel": date_label, "captures": captures}, tone, custom_tone_prompt)
        return parse_daily_insight_text(text)

    def generate_observed_patterns(self, captures: List[Dict[str, Any]],
                                   previous_pattern_text: Optional[str] = None,
                                   generation_number: int = 1,
                                   eligible_count: Optional[int] = None) -> str:
        """Lifelong pattern reflection; pass the last result back to refine it."""
        body: Dict[str, Any] = {"captures": captures, "generationNumber": generation_number}
        if previous_pattern_text:
            body["previousPatternText"] = previous_pattern_text
        if eligible_count is not None:
            body["eligibleCount"] = eligible_count
        return self._post("/generate-observed-patterns", body)
