"""
Pydantic request/response models for the conversation simulation API.

The API is stateless: every request carries the ``session_state`` returned
by the previous turn, and every response returns the updated one.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ConversationContext(BaseModel):
    """Which scenario to play, and where to resume it."""
    vignette_id: str = Field(..., description="Vignette to play, e.g. MED-001")
    difficulty: str = Field("intermediate", description="beginner, intermediate or advanced")
    user_id: str = Field("anonymous", description="Trainee identifier, used for logging only")
    session_state: Optional[Dict[str, Any]] = Field(
        None, description="Snapshot returned by the previous turn; omit to start fresh"
    )
    initial_phase_id: Optional[str] = Field(None, description="Start (or assert) a specific phase")


class TurnRequest(ConversationContext):
    """One typed trainee turn."""
    message: str = Field(..., min_length=1, description="What the trainee said")


class RetryRequest(ConversationContext):
    """Re-run generation for the unanswered last turn in ``session_state``."""
    session_state: Dict[str, Any]


class VoiceTurnRequest(ConversationContext):
    """One spoken trainee turn, audio base64-encoded."""
    audio_base64: str = Field(..., min_length=1)
    mime_type: str = Field("audio/webm")
    synthesize: bool = Field(True, description="Return the reply as audio too")


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class EmotionalStateData(BaseModel):
    """Persona mood, 0 (calm) to 1 (hostile)."""
    value: float
    threshold: str
    trend: str


class TransitionData(BaseModel):
    """A phase change that happened this turn."""
    from_phase: str
    to_phase: str
    trigger: str
    reason: str
    mood_shift: float = 0.0


class TurnResponse(BaseModel):
    """Response from processing one turn."""
    response: str
    current_phase: str
    emotional_state: EmotionalStateData
    transition: Optional[TransitionData] = None
    ended: bool = False
    end_reason: str = ""
    newly_completed: List[str] = []
    assessment: Dict[str, float] = {}
    progress: float = 0.0
    session_state: Dict[str, Any]


class VoiceTurnResponse(BaseModel):
    transcript: str
    confidence: float
    turn: TurnResponse
    audio_base64: Optional[str] = None
    audio_mime_type: Optional[str] = None


class VignetteSummary(BaseModel):
    id: str
    title: str
    difficulty_levels: List[str]
    ai_model: str
    phases: List[str]
    voice_enabled: bool = False
