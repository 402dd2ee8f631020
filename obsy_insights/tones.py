"""
tones.py - Tone registry and resolution

A tone is a style filter on the narrative: it shapes vocabulary, rhythm,
imagery and emotional distance, and is never named in the output.

Resolution order:
1. A preset id from TONE_PRESETS.
2. A user-authored custom tone prompt, wrapped in guardrails so it can only
   change style, never the output contract.
3. The neutral preset.

`resolve_tone` never raises.
"""

import logging
import re
from types import MappingProxyType
from typing import Optional

from .models import ToneDefinition

_logger = logging.getLogger(__name__)

DEFAULT_TONE_ID = "neutral"
CUSTOM_TONE_ID = "custom"
MAX_CUSTOM_PROMPT_LENGTH = 250

_PRESETS = [
    ("neutral", "Neutral",
     "Plain, observant and balanced vocabulary. Even, medium-length sentences. "
     "Sparse imagery. Keep an observer's distance: a clear mirror of the moments, "
     "no emotional push and no strong interpretation."),
    ("stoic_calm", "Stoic / Calm",
     "Restrained, grounded vocabulary. Short, steady sentences with no flourish. "
     "Almost no imagery. Emotional distance is wide and accepting; observe, do not comment."),
    ("dry_humor", "Dry Humor",
     "Understated, intelligent vocabulary. Measured sentences that allow one quiet "
     "observational twist at most. Light imagery. Wry distance, never silly or mocking."),
    ("mystery_noir", "Mystery / Noir",
     "Atmospheric, shadowed vocabulary from a 1940s detective narrator. Clipped sentences "
     "mixed with one long one. Dense low-light imagery and small clues. Cool, watchful distance; "
     "suggest more than explain."),
    ("cinematic", "Cinematic",
     "Visual, framing vocabulary: shots, light, motion and stillness. Sentences flow like a "
     "sequence of cuts. Rich imagery. Distance of a camera that moves closer at the turning point."),
    ("dreamlike", "Dreamlike",
     "Soft, abstract, fluid vocabulary. Long, drifting sentences. Gentle imagery over logic. "
     "Hazy distance with no sharp conclusions or clinical observations."),
    ("romantic", "Romantic",
     "Warm, intimate vocabulary. Unhurried sentences. Tender imagery that may romanticize heavy "
     "moods without trying to fix them. Close distance, tasteful rather than dramatic."),
    ("gentle_roast", "Gentle Roast",
     "Light, teasing, affectionate vocabulary. Playful sentence rhythm with a soft punchline. "
     "Moderate imagery. Close, warm distance; the humor is always on the person's side."),
    ("inspiring", "Inspiring",
     "Uplifting but grounded vocabulary without slogans or cliches. Sentences that build toward "
     "steady resolve. Modest imagery of forward motion. Encouraging, never pushy."),
    # Legacy ids still sent by older clients.
    ("reflective", "Reflective",
     "Gentle, introspective vocabulary. Slow pacing. Quiet imagery. Soft, thoughtful distance."),
    ("analytical", "Analytical",
     "Clear, pattern-focused vocabulary. Crisp sentences. Minimal flourish. Detached distance."),
    ("warm", "Warm",
     "Soft, kind vocabulary. Easy sentences. Light imagery. Subtle encouragement without hype."),
    ("gentle", "Gentle",
     "Warm, supportive vocabulary. Calm sentences. Light imagery. Validating without toxic positivity."),
    ("snarky", "Snarky",
     "Witty, slightly sardonic vocabulary. Quick sentences. Sparse imagery. Pokes fun gently, never mean."),
    ("cosmic", "Cosmic",
     "Vast, celestial vocabulary. Sweeping sentences. Dense imagery of scale. Distant enough to make "
     "the mundane feel epic."),
    ("film_noir", "Film Noir",
     "Moody, metaphor-heavy vocabulary of a 1940s detective narrator. Clipped rhythm. Dense imagery."),
    ("nature", "Nature",
     "Vocabulary drawn from seasons, weather and ecosystems. Flowing sentences. Rich natural imagery. "
     "Calm, patient distance."),
]

TONE_PRESETS = MappingProxyType({
    tone_id: ToneDefinition(id=tone_id, label=label, style_guide=guide, is_preset=True)
    for tone_id, label, guide in _PRESETS
})

CUSTOM_TONE_GUARDRAILS = (
    "CUSTOM TONE ACTIVE. Apply it as a stylistic filter only.\n\n"
    "Tone description: {prompt}\n\n"
    "GUARDRAILS (these override the tone description):\n"
    "- Third person only. Never address the reader as you or your.\n"
    "- No interjection openers such as Ah, Oh, Well, So, Hmm.\n"
    "- No character names, personas or roleplay. Adopt a character's perspective "
    "(what they notice), never their voice or catchphrases.\n"
    "- No dashes of any kind, no markdown, no emojis.\n"
    "- Stay within the length asked for below.\n"
    "When in doubt, choose clarity and calm observation over stylistic flourish."
)

_MARKDOWN_CHARS_RE = re.compile(r"[*_#\[\]`>~|]")
_EMOJI_RE = re.compile(r"[\U0001F000-\U0001FAFF\u2600-\u27BF\uFE0F]")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_custom_prompt(prompt: str) -> str:
    """Strip markdown symbols and emoji, collapse whitespace, cap the length."""
    cleaned = _MARKDOWN_CHARS_RE.sub(" ", prompt or "")
    cleaned = _EMOJI_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:MAX_CUSTOM_PROMPT_LENGTH].rstrip()


def wrap_custom_tone(prompt: str) -> str:
    return CUSTOM_TONE_GUARDRAILS.format(prompt=clean_custom_prompt(prompt))


def resolve_tone(tone_id: Optional[str], custom_prompt: Optional[str] = None) -> ToneDefinition:
    """
    Map a tone id (and optional custom prompt) to a concrete style guide.

    Unknown ids, blank ids and non-string input all resolve to neutral.
    """
    key = tone_id.strip().lower() if isinstance(tone_id, str) else ""
    preset = TONE_PRESETS.get(key)
    if preset is not None:
        return preset

    if isinstance(custom_prompt, str) and clean_custom_prompt(custom_prompt):
        return ToneDefinition(
            id=CUSTOM_TONE_ID,
            label="Custom",
            style_guide=wrap_custom_tone(custom_prompt),
            is_preset=False,
        )

    if key:
        _logger.info("Unknown tone id '%s', falling back to %s", key, DEFAULT_TONE_ID)
    return TONE_PRESETS[DEFAULT_TONE_ID]
