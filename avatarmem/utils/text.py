from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Union

_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[\w'’-]+", re.UNICODE)

# Keyword buckets for the emotional tone label, checked in order
TONE_KEYWORDS = (
    ("positive", ("love", "happy", "excited", "glad", "thrilled", "proud")),
    ("negative", ("sad", "worried", "upset", "angry", "lonely", "miss ")),
    ("anxious", ("nervous", "anxious", "scared", "afraid", "stressed")),
)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def excerpt(text: str, limit: int) -> str:
    """Collapse whitespace and cut to ``limit`` characters."""
    cleaned = normalize_whitespace(text)
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[:limit].rstrip()


def detect_emotional_tone(message: str) -> str:
    """Label a message positive, negative, anxious or neutral from keywords."""
    lowered = (message or "").lower()
    for tone, keywords in TONE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return tone
    return "neutral"


def render_prior_context(prior_context: Optional[Union[str, Mapping[str, Any]]]) -> str:
    """Flatten prior-turn context into prompt text.

    Mappings render as ``key: value`` lines; falsy values are skipped.
    """
    if not prior_context:
        return ""
    if isinstance(prior_context, str):
        return prior_context.strip()
    lines = [f"{key}: {value}" for key, value in prior_context.items() if value not in (None, "")]
    return "\n".join(lines)
