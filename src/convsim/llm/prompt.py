"""
Persona prompt construction.

The system prompt is rebuilt every turn from the vignette and the current
session snapshot, in layers:

    persona     : who the model is playing and how they speak
    scene       : the setting and the active phase's directive
    emotion     : current mood threshold and intensity
    difficulty  : how cooperative the persona is at this level
    guidelines  : length and realism constraints

The recent transcript is passed separately as chat messages.
"""

from __future__ import annotations

from typing import Dict, List

from ..core.emotional_state import EmotionalStateTracker
from ..core.session_state import ROLE_TRAINEE, EmotionalSnapshot, SessionState
from ..core.vignette import Phase, Vignette
from .providers import Prompt

# Transcript turns sent to the model
HISTORY_WINDOW = 10

MOOD_GUIDANCE = {
    "concerned": "You are concerned but seeking understanding.",
    "upset": "You are upset but can be reasoned with.",
    "angry": "You are angry and less cooperative. Short, sharp sentences.",
    "hostile": "You are hostile. You interrupt, challenge, and may threaten to escalate.",
}

DIFFICULTY_GUIDANCE = {
    "beginner": "You are seeking understanding and will respond well to empathy and clarity.",
    "intermediate": "You are demanding answers but can be reached with the right approach.",
    "advanced": "You are less cooperative and may challenge the doctor more aggressively.",
}


def _persona_layer(vignette: Vignette) -> str:
    persona = vignette.persona
    lines = [f"You are {persona.name}"]
    if persona.relationship:
        lines[0] += f", {persona.relationship}"
    lines[0] += ". Stay in character for the whole conversation."
    if persona.personality:
        lines.append(f"Personality: {persona.personality}")
    if persona.vocabulary:
        lines.append(f"How you talk: {persona.vocabulary}")
    lines.append(
        "You are speaking with a doctor in training. You are NOT an AI assistant "
        "and must never mention being one."
    )
    return "\n".join(lines)


def _scene_layer(vignette: Vignette, phase: Phase, first_turn_in_phase: bool) -> str:
    parts = ["## Scene"]
    if vignette.setting:
        parts.append(f"Setting: {vignette.setting}")
    parts.append(f"Current phase: {phase.name}")
    if phase.directive:
        parts.append(f"What you do in this phase: {phase.directive}")
    if phase.goal:
        parts.append(f"What you want right now: {phase.goal}")
    if first_turn_in_phase and phase.opening_line:
        parts.append(f'Open this phase along the lines of: "{phase.opening_line}"')
    return "\n".join(parts)


def _emotion_layer(emotion: EmotionalSnapshot) -> str:
    intensity = EmotionalStateTracker.response_intensity(emotion.value)
    parts = [
        "## Emotional State",
        f"Current state: {emotion.threshold} (intensity: {emotion.value * 100:.0f}%, {intensity})",
        f"Trend: {emotion.trend}",
        MOOD_GUIDANCE.get(emotion.threshold, MOOD_GUIDANCE["upset"]),
    ]
    if emotion.trend == "improving":
        parts.append("The doctor's approach is starting to reach you. Let that show a little.")
    elif emotion.trend == "worsening":
        parts.append("The conversation is going badly for you and your patience is thin.")
    return "\n".join(parts)


def _difficulty_layer(vignette: Vignette, difficulty: str) -> str:
    parts = ["## Difficulty", f"Level: {difficulty}"]
    traits = vignette.persona.difficulty_traits.get(difficulty)
    if traits:
        parts.append(f"Your behavior: {traits}")
    parts.append(DIFFICULTY_GUIDANCE.get(difficulty, ""))
    return "\n".join(p for p in parts if p)


def _guidelines(vignette: Vignette) -> str:
    return f"""## Response Guidelines
- Reply with what {vignette.persona.name} says out loud, nothing else
- No stage directions, no narration, no lists
- 1-4 sentences, within about {vignette.max_response_length} tokens
- Do not reveal information the doctor has not asked about yet
- React to what the doctor just said, not to an ideal version of it"""


def transcript_messages(state: SessionState, window: int = HISTORY_WINDOW) -> List[Dict[str, str]]:
    """The last ``window`` turns as chat messages (trainee -> user, persona -> assistant)."""
    return [
        {"role": "user" if m.role == ROLE_TRAINEE else "assistant", "content": m.text}
        for m in state.messages[-window:]
    ]


def build_persona_prompt(vignette: Vignette, state: SessionState) -> Prompt:
    """
    Build the prompt for the persona's next line.

    ``state`` must have its emotional snapshot set; the engine always does
    this before generating.
    """
    phase = vignette.get_phase(state.phase.current_phase_id)
    emotion = state.emotional_state
    first_turn_in_phase = state.phase.message_count == 0

    parts = [
        _persona_layer(vignette),
        _scene_layer(vignette, phase, first_turn_in_phase),
    ]
    if emotion is not None:
        parts.append(_emotion_layer(emotion))
    parts.append(_difficulty_layer(vignette, state.difficulty))
    parts.append(_guidelines(vignette))

    return Prompt(
        system="\n\n".join(parts),
        messages=transcript_messages(state),
        metadata={
            "vignette_id": vignette.vignette_id,
            "phase_id": phase.phase_id,
            "threshold": emotion.threshold if emotion else "upset",
            "difficulty": state.difficulty,
        },
    )
