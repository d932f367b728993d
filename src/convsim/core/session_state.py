"""
SessionState: the complete, serializable snapshot of one conversation.

Plain data only, with no references back to the engine, so it can cross a
stateless request boundary as JSON and come back in on the next turn:

    state = engine.get_session_state()
    payload = json.dumps(state.to_dict())
    ...
    prior = SessionState.from_dict(json.loads(payload))
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidResumeState

ROLE_TRAINEE = "trainee"
ROLE_PERSONA = "persona"

# Roles other transports use for the same two speakers
_ROLE_ALIASES = {
    "trainee": ROLE_TRAINEE,
    "user": ROLE_TRAINEE,
    "persona": ROLE_PERSONA,
    "assistant": ROLE_PERSONA,
    "avatar": ROLE_PERSONA,
}


@dataclass
class Message:
    message_id: str
    role: str
    text: str
    timestamp: str
    phase_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp,
            "phase_id": self.phase_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> "Message":
        raw_role = str(data.get("role") or data.get("sender") or "")
        role = _ROLE_ALIASES.get(raw_role)
        if role is None:
            raise InvalidResumeState(f"Message {index} has unknown role '{raw_role}'")
        text = data.get("text", data.get("content"))
        if text is None:
            raise InvalidResumeState(f"Message {index} has no text")
        return cls(
            message_id=str(data.get("id") or data.get("message_id") or f"msg-{index + 1}"),
            role=role,
            text=str(text),
            timestamp=str(data.get("timestamp", "")),
            phase_id=data.get("phase_id"),
        )


@dataclass
class PhaseState:
    current_phase_id: str
    objectives_completed: List[str] = field(default_factory=list)
    message_count: int = 0
    # Transcript index where this visit to the phase began
    entered_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_phase_id": self.current_phase_id,
            "objectives_completed": list(self.objectives_completed),
            "message_count": self.message_count,
            "entered_at": self.entered_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhaseState":
        return cls(
            current_phase_id=str(data["current_phase_id"]),
            objectives_completed=[str(o) for o in data.get("objectives_completed", [])],
            message_count=int(data.get("message_count", 0)),
            entered_at=int(data.get("entered_at", 0)),
        )


@dataclass
class BranchRecord:
    """One phase jump: the phase entered, the trigger that fired, and when."""
    phase_id: str
    branch_trigger: str
    from_phase_id: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "branch_trigger": self.branch_trigger,
            "from_phase_id": self.from_phase_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BranchRecord":
        return cls(
            phase_id=str(data["phase_id"]),
            branch_trigger=str(data["branch_trigger"]),
            from_phase_id=str(data.get("from_phase_id", "")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class MoodEntry:
    value: float
    reason: str
    timestamp: str
    modifiers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "modifiers": list(self.modifiers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MoodEntry":
        return cls(
            value=float(data["value"]),
            reason=str(data.get("reason", "")),
            timestamp=str(data.get("timestamp", "")),
            modifiers=[str(m) for m in data.get("modifiers", [])],
        )


@dataclass
class EmotionalSnapshot:
    """
    Persona mood on a 0-1 scale (0 = calm, 1 = hostile).

    threshold: concerned | upset | angry | hostile
    trend: improving | stable | worsening
    """
    value: float
    threshold: str
    trend: str = "stable"
    history: List[MoodEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "threshold": self.threshold,
            "trend": self.trend,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EmotionalSnapshot":
        return cls(
            value=float(data["value"]),
            threshold=str(data.get("threshold", "upset")),
            trend=str(data.get("trend", "stable")),
            history=[MoodEntry.from_dict(h) for h in data.get("history", [])],
        )


@dataclass
class SessionState:
    vignette_id: str
    difficulty: str
    phase: PhaseState
    emotional_state: Optional[EmotionalSnapshot] = None
    branch_history: List[BranchRecord] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)
    # Completed objectives of every visited phase, kept for audit and scoring
    objective_history: Dict[str, List[str]] = field(default_factory=dict)
    ended: bool = False
    assessment_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def awaiting_reply(self) -> bool:
        """True when the last trainee turn has not been answered yet."""
        return (
            not self.ended
            and bool(self.messages)
            and self.messages[-1].role == ROLE_TRAINEE
        )

    def copy(self) -> "SessionState":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vignette_id": self.vignette_id,
            "difficulty": self.difficulty,
            "current_phase": self.phase.to_dict(),
            "emotional_state": self.emotional_state.to_dict() if self.emotional_state else None,
            "branch_history": [b.to_dict() for b in self.branch_history],
            "messages": [m.to_dict() for m in self.messages],
            "objective_history": {k: list(v) for k, v in self.objective_history.items()},
            "ended": self.ended,
            "assessment_scores": dict(self.assessment_scores),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionState":
        """Rebuild a snapshot. Malformed input raises InvalidResumeState."""
        try:
            phase_data = data.get("current_phase") or data.get("phase")
            if not phase_data:
                raise InvalidResumeState("Prior state has no current_phase")
            emotional = data.get("emotional_state")
            return cls(
                vignette_id=str(data.get("vignette_id", "")),
                difficulty=str(data.get("difficulty", "")),
                phase=PhaseState.from_dict(phase_data),
                emotional_state=EmotionalSnapshot.from_dict(emotional) if emotional else None,
                branch_history=[BranchRecord.from_dict(b) for b in data.get("branch_history", [])],
                messages=[Message.from_dict(m, i) for i, m in enumerate(data.get("messages", []))],
                objective_history={
                    str(k): [str(o) for o in v]
                    for k, v in (data.get("objective_history") or {}).items()
                },
                ended=bool(data.get("ended", False)),
                assessment_scores={
                    str(k): float(v) for k, v in (data.get("assessment_scores") or {}).items()
                },
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidResumeState(f"Malformed prior state: {e}") from e
