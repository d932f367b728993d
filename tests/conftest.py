"""Shared fixtures: a small three-phase scenario, a fixed clock and stub providers."""

from datetime import datetime, timezone
from typing import List, Optional

import pytest

from convsim.core.errors import GenerationFailure
from convsim.core.vignette import Vignette
from convsim.llm.providers import GenerationConfig, ModelProvider, Prompt, ScriptedProvider


# ── Scenario ─────────────────────────────────────────────────────────────────

THREE_PHASE = {
    "id": "TEST-001",
    "title": "Missed lab result",
    "ai_model": "scripted",
    "setting": "Hospital corridor outside the patient's room",
    "persona": {
        "name": "Pat",
        "relationship": "the patient's son",
        "personality": "Worried, impatient",
        "difficulty_traits": {"advanced": "Interrupts constantly."},
    },
    "phases": [
        {
            "id": "intro",
            "name": "Introduction",
            "directive": "You want to know who this doctor is.",
            "opening_line": "Are you the doctor? Nobody has told us anything.",
            "max_messages": 3,
            "objectives": [
                {"id": "introduced_self", "description": "Introduce yourself", "keywords": ["my name is"]},
            ],
            "branch_triggers": [
                {"id": "introduced", "target": "escalation", "required_objectives": ["introduced_self"]},
            ],
        },
        {
            "id": "escalation",
            "name": "Escalation",
            "directive": "You are angry that the result was missed.",
            "max_messages": 3,
            "objectives": [
                {"id": "acknowledged_concern", "description": "Acknowledge the concern", "keywords": ["understand"]},
            ],
            "branch_triggers": [
                {
                    "id": "acknowledged",
                    "target": "resolution",
                    "required_objectives": ["acknowledged_concern"],
                    "mood_shift": -0.1,
                },
                {"id": "chart_mentioned", "target": "intro", "phrases": ["chart"]},
            ],
            "difficulty_overrides": {"advanced": {"max_messages": 2}},
        },
        {
            "id": "resolution",
            "name": "Resolution",
            "directive": "You are calmer and want a plan.",
            "objectives": [
                {"id": "offered_follow_up", "description": "Offer a follow-up", "keywords": ["follow up"]},
            ],
        },
    ],
    "voice_config": {
        "voice_id": "voice-123",
        "stability": 0.55,
        "similarity_boost": 0.75,
        "closing_line": "Thank you, doctor.",
        "phase_stability": {"escalation": 0.35},
    },
}

FIXED_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_TIME


@pytest.fixture
def scenario_dict():
    import copy
    return copy.deepcopy(THREE_PHASE)


@pytest.fixture
def vignette():
    return Vignette.from_dict(THREE_PHASE)


@pytest.fixture
def clock():
    return fixed_clock


# ── Providers ────────────────────────────────────────────────────────────────

class RecordingProvider(ModelProvider):
    """Scripted replies that also remembers every prompt it was given."""

    name = "recording"

    def __init__(self, replies: Optional[List[str]] = None):
        super().__init__("recording")
        self._inner = ScriptedProvider(replies=replies)
        self.prompts: List[Prompt] = []

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        self.prompts.append(prompt)
        return self._inner.generate(prompt, config)


class FailingProvider(ModelProvider):
    name = "failing"

    def __init__(self):
        super().__init__("failing")
        self.calls = 0

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        self.calls += 1
        raise GenerationFailure("backend unavailable", provider_name=self.name, status_code=503)


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def failing_provider():
    return FailingProvider()
