"""
Phrase lexicons used by the keyword matchers.

These are the default vocabularies for branch-trigger intents, the emotional
tracker's tone cues, and the assessment patterns. Vignettes can override the
assessment patterns; intents are referenced by name from branch triggers.
"""

from __future__ import annotations

from typing import Dict, Tuple

# =============================================================================
# TONE CUES
# =============================================================================

EMPATHY_PHRASES: Tuple[str, ...] = (
    "i understand", "i can imagine", "that must be", "i'm sorry",
    "i apologize", "i recognize", "i acknowledge", "that sounds",
    "i hear you", "i see that", "that's difficult", "must be hard",
    "your frustration", "how you feel",
)

APOLOGY_PHRASES: Tuple[str, ...] = (
    "i made a mistake", "i made an error", "i take responsibility",
    "i was wrong", "this is my fault", "i apologize for",
    "i'm sorry for what happened", "i accept responsibility",
    "we made a mistake", "we made an error",
)

DEFENSIVE_PHRASES: Tuple[str, ...] = (
    "it's not my fault", "not my responsibility", "following protocol",
    "it's protocol", "standard procedure", "wasn't my decision",
    "everyone makes mistakes", "these things happen", "can't be prevented",
    "not preventable", "part of the job", "you have to understand",
    "that's just how it is", "following orders", "calm down",
)

JARGON_TERMS: Tuple[str, ...] = (
    "iatrogenic", "ventricular", "tachycardia", "defibrillation",
    "cardiac arrest", "biphasic", "amiodarone", "norepinephrine",
    "adenosine", "systolic", "diastolic", "hemodynamic", "qrs",
    "ekg", "ecg", "rosc", "acls",
)

DISMISSIVE_PHRASES: Tuple[str, ...] = (
    "you're overreacting", "there's nothing to worry about", "just relax",
    "it's not a big deal", "i don't have time", "that's not important",
)

STRUCTURE_MARKERS: Tuple[str, ...] = ("first", "then", "next", "finally")

# Lexicon intents a branch trigger can name instead of listing phrases.
INTENTS: Dict[str, Tuple[str, ...]] = {
    "empathetic": (
        "understand", "sorry", "apologize", "feel", "emotions",
        "difficult", "acknowledge", "recognize", "empathize",
    ),
    "apology": APOLOGY_PHRASES,
    "defensive": DEFENSIVE_PHRASES,
    "medical_jargon": JARGON_TERMS,
    "dismissive": DISMISSIVE_PHRASES,
}


# =============================================================================
# ASSESSMENT PATTERNS
# =============================================================================

DEFAULT_ASSESSMENT_PATTERNS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "empathy": {
        "patterns": EMPATHY_PHRASES,
        "anti_patterns": DISMISSIVE_PHRASES,
    },
    "clarity": {
        "patterns": (
            "what happened was", "in other words", "to put it simply",
            "does that make sense", "do you have any questions",
            "let me explain",
        ),
        "anti_patterns": JARGON_TERMS,
    },
    "accountability": {
        "patterns": APOLOGY_PHRASES + (
            "we will review", "to prevent this", "make sure this doesn't happen",
        ),
        "anti_patterns": DEFENSIVE_PHRASES,
    },
}
