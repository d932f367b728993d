"""
Small text and numeric helpers shared by the matchers and trackers.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Iterable, List

import numpy as np

_WORD_RE = re.compile(r"[a-z0-9']+")


def clamp(x: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp a scalar into [low, high]."""
    return float(np.clip(x, low, high))


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace, keeping apostrophes."""
    text = text.replace("’", "'").lower()
    return " ".join(text.split())


def contains_any(text: str, phrases: Iterable[str]) -> bool:
    """True if any phrase appears as a substring of the normalized text."""
    haystack = normalize_text(text)
    return any(normalize_text(p) in haystack for p in phrases if p.strip())


def significant_words(text: str, min_length: int = 4) -> List[str]:
    """Words of at least ``min_length`` characters, lowercased, de-duplicated."""
    seen: List[str] = []
    for word in _WORD_RE.findall(normalize_text(text)):
        if len(word) >= min_length and word not in seen:
            seen.append(word)
    return seen


def utcnow() -> datetime:
    return datetime.now(timezone.utc)