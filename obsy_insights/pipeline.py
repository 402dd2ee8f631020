"""
pipeline.py - The generation request state machine (insights and observed patterns)

    RECEIVED -> AUTHENTICATED -> QUOTA_OK -> VALIDATED -> GENERATED
             -> EXTRACTED -> SANITIZED -> VALID -> RESPONDED

Each stage function returns `(value, PipelineError | None)`. A failure is
terminal: `InsightPipeline.run` stops at the first error and turns it into
an envelope. No stage retries. Quota is only counted after the generated
text has passed validation.
"""

import json
import logging
from typing import Any, Awaitable, Callable, List, NamedTuple, Optional, Tuple

from pydantic import ValidationError

from .chronology import filter_by_tag, resolve_timezone, sort_captures
from .envelopes import error_response, ok_response
from .extraction import extract_text
from .gcp_clients import ModelCallError, missing_config, vertex_generate
from .models import CaptureRecord, InsightRequest, InsightType, ObservedPatternsRequest, PipelineError, Stage
from .prompts import build_observed_patterns_prompt, compose_prompt
from .tones import resolve_tone
from .utils import find_banned_words, sanitize_text, validate_response_text

_logger = logging.getLogger(__name__)

MIN_PATTERN_CAPTURES = 5

# Types whose templates need at least one capture.
CAPTURE_TYPES = {InsightType.CAPTURE, InsightType.DAILY, InsightType.WEEKLY, InsightType.TAG}

Generate = Callable[[str], Awaitable[str]]


def check_config(config_check: Callable[[], List[str]] = missing_config) -> Optional[PipelineError]:
    missing = config_check()
    if missing:
        return PipelineError.at(Stage.CONFIG, f"Missing server configuration: {', '.join(missing)}")
    return None


def parse_body(raw_body: bytes) -> Tuple[Any, Optional[PipelineError]]:
    try:
        return json.loads(raw_body or b""), None
    except (ValueError, UnicodeDecodeError):
        return None, PipelineError.at(Stage.PARSE, "Invalid JSON body")


def _validate_captures(captures: List[CaptureRecord]) -> Optional[PipelineError]:
    for index, capture in enumerate(captures):
        if not isinstance(capture.mood, str) or not capture.mood.strip():
            return PipelineError.at(Stage.VALIDATION, f"capture {index} missing or invalid mood")
        if capture.captured_at is None:
            return PipelineError.at(Stage.VALIDATION, f"capture {index} missing or invalid capturedAt")
        if capture.date is not None and capture.calendar_day is None:
            return PipelineError.at(Stage.VALIDATION, f"capture {index} invalid date")
    return None


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg', 'invalid value')}"


def validate_request(payload: Any) -> Tuple[Optional[InsightRequest], Optional[PipelineError]]:
    """Check the body shape, then the fields the request's type requires."""
    if not isinstance(payload, dict):
        return None, PipelineError.at(Stage.VALIDATION, "Request body must be a JSON object")
    try:
        request = InsightRequest.model_validate(payload)
    except ValidationError as exc:
        return None, PipelineError.at(Stage.VALIDATION, _describe_validation_error(exc))

    data = request.data
    captures = data.captures or []

    if request.type in CAPTURE_TYPES and not captures:
        return None, PipelineError.at(Stage.VALIDATION, f"{request.type.value} insight requires at least one capture")

    error = _validate_captures(captures)
    if error:
        return None, error

    if request.type is InsightType.MONTH and data.signals is None and not captures:
        return None, PipelineError.at(Stage.VALIDATION, "month insight requires signals or captures")

    if request.type is InsightType.ALBUM:
        entries = data.albumContext or []
        if not entries:
            return None, PipelineError.at(Stage.VALIDATION, "album insight requires albumContext entries")
        for index, entry in enumerate(entries):
            if not isinstance(entry.user_name, str) or not entry.user_name.strip():
                return None, PipelineError.at(Stage.VALIDATION, f"album entry {index} missing user_name")

    if request.type is InsightType.TAG:
        if not data.tag or not data.tag.strip().lstrip("#"):
            return None, PipelineError.at(Stage.VALIDATION, "tag insight requires a tag")
        if not filter_by_tag(captures, data.tag):
            return None, PipelineError.at(Stage.VALIDATION, f"no captures carry tag '{data.tag.strip()}'")

    return request, None


def validate_patterns_request(payload: Any) -> Tuple[Optional[ObservedPatternsRequest], Optional[PipelineError]]:
    """An observed-patterns body needs at least five valid captures."""
    if not isinstance(payload, dict):
        return None, PipelineError.at(Stage.VALIDATION, "Request body must be a JSON object")
    try:
        request = ObservedPatternsRequest.model_validate(payload)
    except ValidationError as exc:
        return None, PipelineError.at(Stage.VALIDATION, _describe_validation_error(exc))

    captures = request.captures or []
    if len(captures) < MIN_PATTERN_CAPTURES:
        return None, PipelineError.at(
            Stage.VALIDATION, f"At least {MIN_PATTERN_CAPTURES} eligible captures are required"
        )
    error = _validate_captures(captures)
    if error:
        return None, error
    return request, None


def normalize_request(request: InsightRequest) -> InsightRequest:
    """Return a copy whose captures are in ascending capturedAt order."""
    if not request.data.captures:
        return request
    data = request.data.model_copy(update={"captures": sort_captures(request.data.captures)})
    return request.model_copy(update={"data": data})


def prepare_insight_prompt(request: InsightRequest, user_id: str, request_id: str) -> str:
    request = normalize_request(request)
    tz = resolve_timezone(request.data.timezone)
    tone = resolve_tone(request.tone, request.customTonePrompt)
    _logger.info(
        "requestId=%s user=%s type=%s captures=%d tone=%s custom=%s",
        request_id,
        user_id,
        request.type.value,
        len(request.data.captures or []),
        tone.id,
        not tone.is_preset,
    )
    return compose_prompt(request, tone, tz)


def prepare_patterns_prompt(request: ObservedPatternsRequest, user_id: str, request_id: str) -> str:
    _logger.info(
        "requestId=%s user=%s type=observed_patterns captures=%d generation=%d previous=%s",
        request_id,
        user_id,
        len(request.captures),
        request.generationNumber,
        bool(request.previousPatternText),
    )
    return build_observed_patterns_prompt(request, resolve_timezone(request.timezone))


class RequestKind(NamedTuple):
    """What differs between the generation routes: body validation and prompt building."""

    name: str
    validate: Callable[[Any], Tuple[Any, Optional[PipelineError]]]
    prepare: Callable[[Any, str, str], str]


INSIGHT = RequestKind("insight", validate_request, prepare_insight_prompt)
OBSERVED_PATTERNS = RequestKind("observed_patterns", validate_patterns_request, prepare_patterns_prompt)


async def generate_text(generate: Generate, prompt: str, request_id: str) -> Tuple[Optional[str], Optional[PipelineError]]:
    _logger.debug("requestId=%s calling model (%d prompt chars)", request_id, len(prompt))
    try:
        return await generate(prompt), None
    except ModelCallError as e:
        return None, PipelineError.at(Stage.GEMINI_API, str(e) or "Model call failed")


def finalize_text(raw: str, request_id: str) -> Tuple[Optional[str], Optional[PipelineError]]:
    """Extract, sanitize and validate the model output."""
    text = sanitize_text(extract_text(raw, request_id))
    if not validate_response_text(text):
        return None, PipelineError.at(Stage.RESPONSE_VALIDATION, "AI generated empty or invalid response")
    banned = find_banned_words(text)
    if banned:
        _logger.warning("requestId=%s output contains banned words: %s", request_id, ", ".join(sorted(set(banned))))
    return text, None


class InsightPipeline:
    """
    Runs one generation request end to end.

    Collaborators are injected so the FastAPI layer can build the real ones
    and tests can pass doubles:
      authenticator: has `resolve(authorization_header) -> (user_id, error)`
      ledger:        has `check(user_id)` and `commit(record)`
      generate:      async `prompt -> raw model payload`, raising ModelCallError

    Both generation routes share every stage; a RequestKind supplies the
    body validation and the prompt.
    """

    def __init__(self, authenticator, ledger, generate: Generate = vertex_generate,
                 config_check: Callable[[], List[str]] = missing_config):
        self.authenticator = authenticator
        self.ledger = ledger
        self.generate = generate
        self.config_check = config_check

    async def run(self, authorization: Optional[str], raw_body: bytes, request_id: str,
                  kind: RequestKind = INSIGHT):
        try:
            return await self._run(authorization, raw_body, request_id, kind)
        except Exception as e:
            _logger.exception("requestId=%s unhandled error in %s: %s", request_id, kind.name, e)
            return error_response(PipelineError.at(Stage.UNKNOWN, "Internal server error"), request_id)

    async def _run(self, authorization: Optional[str], raw_body: bytes, request_id: str, kind: RequestKind):
        # Server must be able to reach the model at all
        error = check_config(self.config_check)
        if error:
            return error_response(error, request_id)

        # Who is asking
        user_id, error = self.authenticator.resolve(authorization)
        if error:
            return error_response(error, request_id)

        # Admission only; nothing is counted yet
        quota, error = self.ledger.check(user_id)
        if error:
            return error_response(error, request_id)

        # Body: JSON first, then the fields this route requires
        payload, error = parse_body(raw_body)
        if error:
            return error_response(error, request_id)
        request, error = kind.validate(payload)
        if error:
            return error_response(error, request_id)

        # Chronology, tone and template
        prompt = kind.prepare(request, user_id, request_id)

        # Single model call, no retries
        raw, error = await generate_text(self.generate, prompt, request_id)
        if error:
            return error_response(error, request_id)

        # Untrusted output -> contract-clean text
        text, error = finalize_text(raw, request_id)
        if error:
            return error_response(error, request_id)

        # Count the generation only now that it succeeded
        quota, error = self.ledger.commit(quota)
        if error:
            return error_response(error, request_id)

        _logger.info(
            "requestId=%s %s success textLength=%d usage=%d/%s",
            request_id,
            kind.name,
            len(text),
            quota.count_today,
            quota.limit if quota.limit is not None else "unlimited",
        )
        return ok_response(text, request_id)
