"""Tests for trainee assessment scoring."""

import pytest

from convsim.core.assessment import AssessmentEngine, match_patterns, pattern_confidence
from convsim.core.session_state import Message
from convsim.core.vignette import AssessmentConfig


@pytest.fixture
def engine():
    return AssessmentEngine(AssessmentConfig())


class TestPatterns:
    def test_confidence_base(self):
        assert pattern_confidence("i understand", "i understand") == pytest.approx(0.7)

    def test_repeats_raise_confidence(self):
        text = "i understand. i understand. i understand."
        assert pattern_confidence("i understand", text) == pytest.approx(0.9)

    def test_long_pattern_bonus(self):
        assert pattern_confidence("i take full responsibility here", "i take full responsibility here") == pytest.approx(0.85)

    def test_match_patterns_reports_context(self):
        matches = match_patterns("Honestly, I understand why you are angry.", ["i understand", "i'm sorry"])
        assert [m.pattern for m in matches] == ["i understand"]
        assert "i understand" in matches[0].context


class TestScoring:
    def test_empty_text(self, engine):
        result = engine.assess_text("   ")
        assert result.overall == 0.0
        assert result.performance_level == "needs_improvement"

    def test_neutral_text_is_midpoint(self, engine):
        result = engine.assess_text("okay")
        assert result.scores()["empathy"] == 0.5
        assert result.overall == pytest.approx(0.5)

    def test_empathy_raises_score(self, engine):
        result = engine.assess_text("I understand. I'm sorry, that must be hard.")
        assert result.dimensions["empathy"].score > 0.8
        assert result.dimensions["empathy"].patterns

    def test_jargon_lowers_clarity(self, engine):
        result = engine.assess_text("He had ventricular tachycardia after adenosine.")
        assert result.dimensions["clarity"].score < 0.5
        assert len(result.dimensions["clarity"].anti_patterns) == 3

    def test_defensiveness_lowers_accountability(self, engine):
        result = engine.assess_text("It's not my fault, these things happen.")
        assert result.dimensions["accountability"].score < 0.3

    def test_custom_weights(self):
        config = AssessmentConfig.from_dict({"weights": {"empathy": 1.0, "clarity": 0.0, "accountability": 0.0}})
        result = AssessmentEngine(config).assess_text("I understand. I'm sorry, that must be hard.")
        assert result.overall == pytest.approx(result.dimensions["empathy"].score)

    def test_only_trainee_messages_scored(self, engine):
        messages = [
            Message("msg-1", "persona", "It's not my fault, these things happen.", "t0"),
            Message("msg-2", "trainee", "okay", "t0"),
        ]
        assert engine.assess_conversation(messages).scores()["accountability"] == 0.5


class TestPerformanceLevel:
    @pytest.mark.parametrize("overall,level", [
        (0.85, "exemplary"),
        (0.65, "proficient"),
        (0.45, "developing"),
        (0.30, "needs_improvement"),
    ])
    def test_levels(self, engine, overall, level):
        assert engine.performance_level(overall) == level
