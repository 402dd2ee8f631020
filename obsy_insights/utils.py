"""
utils.py - Output-contract helpers for generated insights

This module enforces the parts of the style contract that cannot be left to
the model:
1. `sanitize_text` strips control characters and replaces every dash the
   contract forbids with a comma. It is deterministic and idempotent.
2. `find_banned_words` matches the app's own recording vocabulary, which the
   narrative must never use.
3. `validate_response_text` is the last gate before a success envelope.

Example Usage:
- "Evening --- quiet" becomes "Evening , quiet"; em and en dashes are replaced the same way.
"""

import re
from typing import List

# Words that describe the recording mechanics rather than the moment itself.
BANNED_WORDS = [
    "journal", "entry", "entries", "capture", "captures", "photo", "photos",
    "logged", "recorded", "data", "app", "tracked", "tracking",
]

# Openers that read as stock interjections.
BANNED_STARTERS = ["Ah", "Oh", "Well", "So", "Hmm"]

_BANNED_RE = re.compile(
    r"\b(" + r"|".join(re.escape(w) for w in BANNED_WORDS) + r")\b",
    flags=re.IGNORECASE,
)

# C0 controls except \n, plus DEL. Carriage returns are dropped so \r\n collapses to \n.
_CONTROL_RE = re.compile(r"[\x00-\x09\x0B-\x1F\x7F]")
# Em dash, en dash, and ASCII runs of two or more hyphens.
_DASH_RE = re.compile(r"[\u2013\u2014]|-{2,}")
_EXTRA_BREAKS_RE = re.compile(r"\n{3,}")


def sanitize_text(text: str) -> str:
    """
    Enforce the output contract on model text.

    - Removes control characters, keeping newlines used as paragraph breaks.
    - Collapses three or more newlines into one blank line.
    - Replaces U+2013, U+2014 and `--`/`---` runs with a comma.
    - Trims surrounding whitespace.

    No replacement can produce input for another, so sanitize(sanitize(x))
    equals sanitize(x).
    """
    if not text:
        return ""
    cleaned = _CONTROL_RE.sub("", text)
    cleaned = _DASH_RE.sub(",", cleaned)
    cleaned = _EXTRA_BREAKS_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def find_banned_words(text: str) -> List[str]:
    """Return every banned word found in `text`, lowercased, in order of appearance."""
    if not text or not text.strip():
        return []
    return [m.group(0).lower() for m in _BANNED_RE.finditer(text)]


def validate_response_text(text: str) -> bool:
    """True when the sanitized text is non-empty and not only whitespace."""
    return isinstance(text, str) and bool(text.strip())
