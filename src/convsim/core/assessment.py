"""
Assessment scoring over the trainee's side of the transcript.

Three dimensions (empathy, clarity, accountability) each start at a neutral
0.5. Every matched pattern raises the score, every matched anti-pattern
lowers it; the overall score is the weighted mean of the three.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from .session_state import ROLE_TRAINEE, Message
from .utils import clamp, normalize_text
from .vignette import AssessmentConfig

DIMENSIONS = ("empathy", "clarity", "accountability")

PATTERN_GAIN = 0.15
ANTI_PATTERN_PENALTY = {"empathy": 0.2, "clarity": 0.2, "accountability": 0.25}


@dataclass
class PatternMatch:
    pattern: str
    confidence: float
    context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"pattern": self.pattern, "confidence": round(self.confidence, 3), "context": self.context}


@dataclass
class DimensionScore:
    score: float
    patterns: List[PatternMatch] = field(default_factory=list)
    anti_patterns: List[PatternMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "patterns": [p.to_dict() for p in self.patterns],
            "anti_patterns": [p.to_dict() for p in self.anti_patterns],
        }


@dataclass
class AssessmentResult:
    dimensions: Dict[str, DimensionScore]
    overall: float
    performance_level: str

    def scores(self) -> Dict[str, float]:
        out = {name: round(d.score, 3) for name, d in self.dimensions.items()}
        out["overall"] = round(self.overall, 3)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimensions": {k: v.to_dict() for k, v in self.dimensions.items()},
            "overall": round(self.overall, 3),
            "performance_level": self.performance_level,
        }


def pattern_confidence(pattern: str, text: str) -> float:
    """Base 0.7; repeats and long patterns raise it, very short ones lower it."""
    confidence = 0.7
    occurrences = text.count(pattern)
    if occurrences > 1:
        confidence = min(0.95, confidence + (occurrences - 1) * 0.1)
    if len(pattern.split()) > 3:
        confidence = min(0.95, confidence + 0.15)
    if len(pattern) < 5:
        confidence = max(0.5, confidence - 0.2)
    return confidence


def _context(text: str, pattern: str, width: int = 50) -> str:
    idx = text.find(pattern)
    start = max(0, idx - width // 2)
    end = min(len(text), idx + len(pattern) + width // 2)
    return text[start:end]


def match_patterns(text: str, patterns: Sequence[str]) -> List[PatternMatch]:
    normalized = normalize_text(text)
    matches = []
    for pattern in patterns:
        needle = normalize_text(pattern)
        if needle and needle in normalized:
            matches.append(PatternMatch(
                pattern=pattern,
                confidence=pattern_confidence(needle, normalized),
                context=_context(normalized, needle),
            ))
    return matches


class AssessmentEngine:
    """Scores trainee utterances against a vignette's assessment hooks."""

    def __init__(self, config: AssessmentConfig):
        self.config = config

    def _score_dimension(self, name: str, text: str) -> DimensionScore:
        hooks: Dict[str, Tuple[str, ...]] = self.config.patterns.get(name, {})
        positives = match_patterns(text, hooks.get("patterns", ()))
        negatives = match_patterns(text, hooks.get("anti_patterns", ()))
        score = 0.5
        score += sum(m.confidence * PATTERN_GAIN for m in positives)
        score -= sum(m.confidence * ANTI_PATTERN_PENALTY.get(name, 0.2) for m in negatives)
        return DimensionScore(score=clamp(score), patterns=positives, anti_patterns=negatives)

    def overall(self, scores: Dict[str, float]) -> float:
        weights = self.config.weights
        total = sum(weights.get(d, 0.0) for d in DIMENSIONS)
        if total <= 0:
            return sum(scores[d] for d in DIMENSIONS) / len(DIMENSIONS)
        return sum(scores[d] * weights.get(d, 0.0) / total for d in DIMENSIONS)

    def performance_level(self, overall: float) -> str:
        if overall >= self.config.excellence_score:
            return "exemplary"
        if overall >= self.config.passing_score:
            return "proficient"
        if overall >= self.config.passing_score * 0.7:
            return "developing"
        return "needs_improvement"

    def assess_text(self, text: str) -> AssessmentResult:
        if not text.strip():
            empty = {d: DimensionScore(score=0.0) for d in DIMENSIONS}
            return AssessmentResult(dimensions=empty, overall=0.0, performance_level="needs_improvement")
        dimensions = {d: self._score_dimension(d, text) for d in DIMENSIONS}
        overall = self.overall({d: s.score for d, s in dimensions.items()})
        return AssessmentResult(
            dimensions=dimensions,
            overall=overall,
            performance_level=self.performance_level(overall),
        )

    def assess_conversation(self, messages: Sequence[Message]) -> AssessmentResult:
        """Score everything the trainee has said so far as one body of text."""
        text = " ".join(m.text for m in messages if m.role == ROLE_TRAINEE)
        return self.assess_text(text)
