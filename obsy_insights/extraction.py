"""
extraction.py - Lenient text extraction from untrusted model output

The model is asked for JSON, but in practice it returns any of: the JSON we
asked for, JSON wrapped in a markdown fence, plain prose, or prose that
happens to contain braces. Extraction therefore runs an ordered list of
strategies. Each strategy takes the current context and returns a string or
None; the first non-empty result wins. Nothing here raises.
"""

import json
import logging
import re
from typing import Any, Callable, List, Optional

_logger = logging.getLogger(__name__)

# Field paths read from a JSON answer, in priority order.
ANSWER_FIELD_PATHS = (
    ("narrative", "text"),
    ("insight",),
    ("text",),
)

_FENCE_OPEN_RE = re.compile(r"^\s*```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def _loads(text: Optional[str]) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _read_path(obj: Any, path) -> Optional[str]:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    if isinstance(obj, str) and obj.strip():
        return obj
    return None


def read_answer_field(obj: Any) -> Optional[str]:
    """First non-empty string found along ANSWER_FIELD_PATHS."""
    for path in ANSWER_FIELD_PATHS:
        value = _read_path(obj, path)
        if value:
            return value
    return None


def strip_code_fence(text: str) -> str:
    """Remove a leading ```/```json fence and a trailing ``` fence."""
    cleaned = _FENCE_OPEN_RE.sub("", text)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


class _Extraction:
    """Working state shared by the strategies for one payload."""

    def __init__(self, raw: str):
        self.raw = raw if isinstance(raw, str) else ""
        self.envelope = _loads(self.raw)
        self.parts_text: Optional[str] = None
        self.cleaned: Optional[str] = None

    @property
    def first_candidate(self) -> Any:
        if not isinstance(self.envelope, dict):
            return None
        candidates = self.envelope.get("candidates")
        if isinstance(candidates, list) and candidates:
            return candidates[0]
        return None


def _join_parts(ctx: _Extraction) -> Optional[str]:
    candidate = ctx.first_candidate
    if not isinstance(candidate, dict):
        return None
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    joined = " ".join(t for t in texts if t)
    ctx.parts_text = joined or None
    if ctx.parts_text:
        ctx.cleaned = strip_code_fence(ctx.parts_text)
    # Joining only prepares context; the answer comes from later strategies.
    return None


def _answer_from_json(ctx: _Extraction) -> Optional[str]:
    return read_answer_field(_loads(ctx.cleaned))


def _cleaned_fragment(ctx: _Extraction) -> Optional[str]:
    return ctx.cleaned or None


def _envelope_fields(ctx: _Extraction) -> Optional[str]:
    candidate = ctx.first_candidate
    if isinstance(candidate, dict):
        output_text = candidate.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text
    return read_answer_field(ctx.envelope)


def _raw_payload(ctx: _Extraction) -> Optional[str]:
    return ctx.raw or None


STRATEGIES: List[Callable[[_Extraction], Optional[str]]] = [
    _join_parts,
    _answer_from_json,
    _cleaned_fragment,
    _envelope_fields,
    _raw_payload,
]


def extract_text(raw: str, request_id: str = "-") -> str:
    """
    Pull the narrative out of a model payload.

    Args:
        raw: the transport envelope as returned by the model client, or any
             other string.
        request_id: used only for log correlation.

    Returns:
        The extracted text, or "" when nothing at all was provided.
    """
    ctx = _Extraction(raw)
    for strategy in STRATEGIES:
        try:
            result = strategy(ctx)
        except Exception as e:  # a strategy bug must not fail the request
            _logger.warning("requestId=%s extraction strategy %s failed: %s", request_id, strategy.__name__, e)
            continue
        if result and result.strip():
            _logger.debug("requestId=%s extracted text via %s", request_id, strategy.__name__)
            return result
    return ""
