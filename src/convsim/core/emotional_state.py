"""
Emotional state tracking for the simulated persona.

The persona's mood is a single value on [0, 1]:
    0.0  calm, cooperative
    1.0  hostile, uncooperative

Each trainee turn moves it by:
    utterance delta   — tone cues in what the trainee said. De-escalating
                        language (empathy, apology, clear explanation)
                        softens the mood; confrontational language
                        (defensiveness, jargon, dismissiveness) escalates it.
    transition shift  — a fixed nudge bound to the branch that was taken,
                        applied regardless of what was said.

The combined change is clamped to ``max_step`` per turn so no single turn can
swing the persona from one extreme to the other. When the utterance carries
no tone cues, or its cues cancel out, the tone is treated as ambiguous and
the utterance component is left out: mood stays where it was rather than
being guessed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import numpy as np

from ..content.lexicon import (
    APOLOGY_PHRASES,
    DEFENSIVE_PHRASES,
    DISMISSIVE_PHRASES,
    EMPATHY_PHRASES,
    JARGON_TERMS,
    STRUCTURE_MARKERS,
)
from .errors import AmbiguousSentiment
from .session_state import EmotionalSnapshot, MoodEntry
from .utils import clamp, contains_any, normalize_text, utcnow
from .vignette import EmotionConfig

if TYPE_CHECKING:
    from .phase_machine import PhaseTransition

logger = logging.getLogger(__name__)

# Cues whose net effect is smaller than this are treated as cancelling out
AMBIGUITY_EPSILON = 0.02

TREND_WINDOW = 5
TREND_DELTA = 0.1


# =============================================================================
# TONE CLASSIFICATION
# =============================================================================

@dataclass
class SentimentReading:
    """Tone cues found in one utterance and the mood change they imply."""
    delta: float
    cues: List[str] = field(default_factory=list)

    @property
    def direction(self) -> str:
        if self.delta < 0:
            return "de-escalating"
        if self.delta > 0:
            return "escalating"
        return "neutral"


def detect_cues(utterance: str) -> List[str]:
    """Names of the tone cues present in an utterance."""
    text = normalize_text(utterance)
    cues = []
    if contains_any(text, EMPATHY_PHRASES):
        cues.append("empathy")
    if contains_any(text, APOLOGY_PHRASES):
        cues.append("apology")
    if _is_clear_explanation(text):
        cues.append("clear_explanation")
    if contains_any(text, DEFENSIVE_PHRASES):
        cues.append("defensiveness")
    if contains_any(text, JARGON_TERMS):
        cues.append("jargon")
    if contains_any(text, DISMISSIVE_PHRASES):
        cues.append("dismissive")
    return cues


def _is_clear_explanation(text: str) -> bool:
    # Sequenced, mid-length and jargon-free
    words = set(re.findall(r"[a-z']+", text))
    has_structure = any(marker in words for marker in STRUCTURE_MARKERS)
    return has_structure and 50 < len(text) < 300 and not contains_any(text, JARGON_TERMS)


def classify_sentiment(
    utterance: str,
    modifiers: Dict[str, float],
    difficulty: str = "intermediate",
) -> SentimentReading:
    """
    Turn an utterance into a mood delta.

    Advanced personas respond less to de-escalation (x0.7); beginner
    personas respond less to escalation (x0.8).

    Raises AmbiguousSentiment when no cue is found or the cues cancel out.
    """
    cues = detect_cues(utterance)
    if not cues:
        raise AmbiguousSentiment("no tone cues")

    delta = 0.0
    for cue in cues:
        value = modifiers.get(cue, 0.0)
        if difficulty == "advanced" and value < 0:
            value *= 0.7
        elif difficulty == "beginner" and value > 0:
            value *= 0.8
        delta += value

    if abs(delta) < AMBIGUITY_EPSILON:
        raise AmbiguousSentiment(f"conflicting cues {cues}")
    return SentimentReading(delta=delta, cues=cues)


# =============================================================================
# TRACKER
# =============================================================================

class EmotionalStateTracker:
    """
    Derives the next mood snapshot from the previous one.

    The tracker keeps no state of its own; ``update`` returns a new
    ``EmotionalSnapshot`` and leaves the previous one untouched.
    """

    def __init__(self, config: EmotionConfig, difficulty: str):
        self.config = config
        self.difficulty = difficulty

    def initial_snapshot(self, clock: Callable[[], datetime] = utcnow) -> EmotionalSnapshot:
        value = clamp(self.config.initial.get(self.difficulty, 0.5))
        return EmotionalSnapshot(
            value=value,
            threshold=self.threshold_for(value),
            trend="stable",
            history=[MoodEntry(value=value, reason="Initial state", timestamp=clock().isoformat())],
        )

    def threshold_for(self, value: float) -> str:
        thresholds = self.config.thresholds
        if value >= thresholds["hostile"]:
            return "hostile"
        if value >= thresholds["angry"]:
            return "angry"
        if value >= thresholds["upset"]:
            return "upset"
        return "concerned"

    @staticmethod
    def trend_of(history: List[MoodEntry], window: int = TREND_WINDOW) -> str:
        """improving / stable / worsening over the last ``window`` entries."""
        if len(history) < window:
            return "stable"
        values = np.array([h.value for h in history[-window:]], dtype=np.float64)
        difference = float(values[-1] - values[0])
        if difference < -TREND_DELTA:
            return "improving"
        if difference > TREND_DELTA:
            return "worsening"
        return "stable"

    @staticmethod
    def response_intensity(value: float) -> str:
        if value >= 0.7:
            return "intense"
        if value >= 0.4:
            return "moderate"
        return "calm"

    def update(
        self,
        previous: EmotionalSnapshot,
        utterance: str,
        transition: Optional["PhaseTransition"] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> EmotionalSnapshot:
        """Return the mood after this trainee turn."""
        delta = 0.0
        modifiers: List[str] = []
        reasons: List[str] = []

        try:
            reading = classify_sentiment(utterance, self.config.modifiers, self.difficulty)
            delta += reading.delta
            modifiers.extend(reading.cues)
            reasons.append(f"trainee tone {reading.direction}")
        except AmbiguousSentiment as e:
            logger.debug(f"[Emotion] Ambiguous tone, mood unchanged by utterance: {e}")

        if transition is not None and transition.mood_shift:
            delta += transition.mood_shift
            modifiers.append(f"transition:{transition.trigger_id}")
            reasons.append(f"entered '{transition.to_phase_id}'")

        history = list(previous.history)
        if not modifiers:
            return EmotionalSnapshot(
                value=previous.value,
                threshold=previous.threshold,
                trend=self.trend_of(history),
                history=history,
            )

        bounded = clamp(delta, -self.config.max_step, self.config.max_step)
        value = clamp(previous.value + bounded)
        history.append(MoodEntry(
            value=value,
            reason="; ".join(reasons),
            timestamp=clock().isoformat(),
            modifiers=modifiers,
        ))
        logger.info(
            f"[Emotion] {previous.value:.2f} -> {value:.2f} "
            f"(raw={delta:+.2f}, applied={bounded:+.2f}, cues={modifiers})"
        )
        return EmotionalSnapshot(
            value=value,
            threshold=self.threshold_for(value),
            trend=self.trend_of(history),
            history=history,
        )
