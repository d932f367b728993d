"""
Vignette: the immutable scenario template a conversation is played against.

A vignette is an ordered list of phases. Each phase carries a persona
directive, a set of objectives the trainee can satisfy, and branch triggers
that move the conversation to another phase. Vignettes are authored
elsewhere and arrive as plain dicts (JSON); ``Vignette.from_dict`` parses
and validates them so that configuration bugs surface at load time rather
than in the middle of a turn.

Instances are frozen and safe to share across concurrently running engines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..content.lexicon import DEFAULT_ASSESSMENT_PATTERNS, INTENTS
from .errors import VignetteError

DIFFICULTIES = ("beginner", "intermediate", "advanced")

# Reserved trigger ids for the implicit transitions
STALL_TRIGGER_ID = "stall"
COMPLETION_TRIGGER_ID = "objectives_complete"
RESERVED_TRIGGER_IDS = (STALL_TRIGGER_ID, COMPLETION_TRIGGER_ID)

# Max trainee turns in a phase before the stall trigger fires
DEFAULT_MAX_MESSAGES = 5

DEFAULT_INITIAL_MOOD = {"beginner": 0.3, "intermediate": 0.5, "advanced": 0.7}

# Per-cue mood deltas (negative = de-escalating)
DEFAULT_MOOD_MODIFIERS = {
    "empathy": -0.10,
    "apology": -0.15,
    "clear_explanation": -0.05,
    "defensiveness": 0.15,
    "jargon": 0.10,
    "dismissive": 0.15,
}

DEFAULT_MOOD_THRESHOLDS = {"upset": 0.5, "angry": 0.7, "hostile": 0.9}

DEFAULT_ASSESSMENT_WEIGHTS = {"empathy": 0.4, "clarity": 0.3, "accountability": 0.3}


def _strings(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


# =============================================================================
# PHASE CONTENTS
# =============================================================================

@dataclass(frozen=True)
class Objective:
    """A checkable goal within a phase, e.g. "acknowledged the concern"."""
    objective_id: str
    description: str
    keywords: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Objective":
        if isinstance(data, str):
            # Plain-text objectives use their text as id and match by word overlap
            return cls(objective_id=data, description=data)
        return cls(
            objective_id=str(data.get("id") or data.get("objective_id") or data["description"]),
            description=str(data.get("description", "")),
            keywords=_strings(data.get("keywords")),
        )


@dataclass(frozen=True)
class BranchTrigger:
    """
    A rule that moves the conversation to ``target_phase_id``.

    Every condition that is set must hold for the trigger to fire:
        phrases             — any phrase appears in the utterance
        intent              — a named lexicon intent matches the utterance
        min_objectives      — at least N objectives of the phase are complete
        required_objectives — these specific objectives are complete
        min_messages        — the phase has seen at least N trainee turns

    A trigger with no conditions always fires. ``mood_shift`` is applied to
    the persona's mood whenever this transition is taken.
    """
    trigger_id: str
    target_phase_id: str
    phrases: Tuple[str, ...] = ()
    intent: Optional[str] = None
    min_objectives: Optional[int] = None
    required_objectives: Tuple[str, ...] = ()
    min_messages: Optional[int] = None
    mood_shift: float = 0.0
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BranchTrigger":
        return cls(
            trigger_id=str(data["id"]),
            target_phase_id=str(data["target"]),
            phrases=_strings(data.get("phrases")),
            intent=data.get("intent"),
            min_objectives=_optional_int(data.get("min_objectives")),
            required_objectives=_strings(data.get("required_objectives")),
            min_messages=_optional_int(data.get("min_messages")),
            mood_shift=float(data.get("mood_shift", 0.0)),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True)
class PhaseOverride:
    """Per-difficulty tweaks to a phase's stall threshold and keywords."""
    max_messages: Optional[int] = None
    additional_keywords: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    removed_keywords: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhaseOverride":
        return cls(
            max_messages=_optional_int(data.get("max_messages")),
            additional_keywords={
                k: _strings(v) for k, v in (data.get("additional_keywords") or {}).items()
            },
            removed_keywords={
                k: _strings(v) for k, v in (data.get("removed_keywords") or {}).items()
            },
        )


@dataclass(frozen=True)
class Phase:
    """One stage of the conversation with its own persona directive."""
    phase_id: str
    name: str
    directive: str = ""
    goal: str = ""
    opening_line: str = ""
    objectives: Tuple[Objective, ...] = ()
    branch_triggers: Tuple[BranchTrigger, ...] = ()
    max_messages: int = DEFAULT_MAX_MESSAGES
    stall_target: Optional[str] = None
    difficulty_overrides: Dict[str, PhaseOverride] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Phase":
        phase_id = str(data["id"])
        return cls(
            phase_id=phase_id,
            name=str(data.get("name", phase_id)),
            directive=str(data.get("directive", "")),
            goal=str(data.get("goal", "")),
            opening_line=str(data.get("opening_line", "")),
            objectives=tuple(Objective.from_dict(o) for o in data.get("objectives", [])),
            branch_triggers=tuple(
                BranchTrigger.from_dict(t) for t in data.get("branch_triggers", [])
            ),
            max_messages=int(data.get("max_messages", DEFAULT_MAX_MESSAGES)),
            stall_target=data.get("stall_target"),
            difficulty_overrides={
                level: PhaseOverride.from_dict(o)
                for level, o in (data.get("difficulty_overrides") or {}).items()
            },
        )

    @property
    def objective_ids(self) -> List[str]:
        return [o.objective_id for o in self.objectives]

    def get_objective(self, objective_id: str) -> Optional[Objective]:
        for objective in self.objectives:
            if objective.objective_id == objective_id:
                return objective
        return None

    def keywords_for(self, objective: Objective, difficulty: str) -> Tuple[str, ...]:
        """Objective keywords with this difficulty's additions and removals applied."""
        keywords = list(objective.keywords)
        override = self.difficulty_overrides.get(difficulty)
        if override:
            keywords.extend(override.additional_keywords.get(objective.objective_id, ()))
            removed = {k.lower() for k in override.removed_keywords.get(objective.objective_id, ())}
            keywords = [k for k in keywords if k.lower() not in removed]
        return tuple(keywords)

    def stall_threshold(self, difficulty: str) -> int:
        override = self.difficulty_overrides.get(difficulty)
        if override and override.max_messages is not None:
            return override.max_messages
        return self.max_messages


# =============================================================================
# PERSONA / EMOTION / VOICE / ASSESSMENT
# =============================================================================

@dataclass(frozen=True)
class Persona:
    name: str
    relationship: str = ""
    personality: str = ""
    vocabulary: str = ""
    difficulty_traits: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Persona":
        return cls(
            name=str(data.get("name", "the family member")),
            relationship=str(data.get("relationship", "")),
            personality=str(data.get("personality", "")),
            vocabulary=str(data.get("vocabulary", "")),
            difficulty_traits=dict(data.get("difficulty_traits") or {}),
        )


@dataclass(frozen=True)
class EmotionConfig:
    """Mood scale settings. Mood runs from 0 (calm) to 1 (hostile)."""
    initial: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_INITIAL_MOOD))
    modifiers: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MOOD_MODIFIERS))
    max_step: float = 0.25
    thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MOOD_THRESHOLDS))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "EmotionConfig":
        data = data or {}
        return cls(
            initial={**DEFAULT_INITIAL_MOOD, **(data.get("initial") or {})},
            modifiers={**DEFAULT_MOOD_MODIFIERS, **(data.get("modifiers") or {})},
            max_step=float(data.get("max_step", 0.25)),
            thresholds={**DEFAULT_MOOD_THRESHOLDS, **(data.get("thresholds") or {})},
        )


@dataclass(frozen=True)
class VoiceConfig:
    """TTS parameters for the voice transport; opaque to the state machine."""
    voice_id: str
    enabled: bool = True
    stability: float = 0.55
    similarity_boost: float = 0.75
    opening_line: str = ""
    closing_line: str = ""
    phase_stability: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VoiceConfig":
        return cls(
            voice_id=str(data.get("voice_id", "")),
            enabled=bool(data.get("enabled", True)),
            stability=float(data.get("stability", 0.55)),
            similarity_boost=float(data.get("similarity_boost", 0.75)),
            opening_line=str(data.get("opening_line", "")),
            closing_line=str(data.get("closing_line", "")),
            phase_stability={k: float(v) for k, v in (data.get("phase_stability") or {}).items()},
        )

    def stability_for(self, phase_id: str) -> float:
        return self.phase_stability.get(phase_id, self.stability)


@dataclass(frozen=True)
class AssessmentConfig:
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ASSESSMENT_WEIGHTS))
    passing_score: float = 0.6
    excellence_score: float = 0.8
    patterns: Dict[str, Dict[str, Tuple[str, ...]]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_ASSESSMENT_PATTERNS.items()}
    )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AssessmentConfig":
        data = data or {}
        patterns = {k: dict(v) for k, v in DEFAULT_ASSESSMENT_PATTERNS.items()}
        for dimension, hooks in (data.get("patterns") or {}).items():
            merged = patterns.setdefault(dimension, {"patterns": (), "anti_patterns": ()})
            if "patterns" in hooks:
                merged["patterns"] = _strings(hooks["patterns"])
            if "anti_patterns" in hooks:
                merged["anti_patterns"] = _strings(hooks["anti_patterns"])
        return cls(
            weights={**DEFAULT_ASSESSMENT_WEIGHTS, **(data.get("weights") or {})},
            passing_score=float(data.get("passing_score", 0.6)),
            excellence_score=float(data.get("excellence_score", 0.8)),
            patterns=patterns,
        )


# =============================================================================
# VIGNETTE
# =============================================================================

@dataclass(frozen=True)
class Vignette:
    vignette_id: str
    title: str
    phases: Tuple[Phase, ...]
    persona: Persona
    difficulty_levels: Tuple[str, ...] = DIFFICULTIES
    ai_model: str = "mistral-small-latest"
    max_response_length: int = 500
    temperature: float = 0.7
    setting: str = ""
    initial_phase_id: Optional[str] = None
    emotion: EmotionConfig = field(default_factory=EmotionConfig)
    assessment: AssessmentConfig = field(default_factory=AssessmentConfig)
    voice_config: Optional[VoiceConfig] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Vignette":
        """Parse and validate a vignette. Raises VignetteError on bad data."""
        vignette_id = str(data.get("id", ""))
        try:
            vignette = cls(
                vignette_id=vignette_id,
                title=str(data.get("title", vignette_id)),
                phases=tuple(Phase.from_dict(p) for p in data.get("phases", [])),
                persona=Persona.from_dict(data.get("persona") or {}),
                difficulty_levels=_strings(data.get("difficulty_levels")) or DIFFICULTIES,
                ai_model=str(data.get("ai_model", "mistral-small-latest")),
                max_response_length=int(data.get("max_response_length", 500)),
                temperature=float(data.get("temperature", 0.7)),
                setting=str(data.get("setting", "")),
                initial_phase_id=data.get("initial_phase_id"),
                emotion=EmotionConfig.from_dict(data.get("emotion")),
                assessment=AssessmentConfig.from_dict(data.get("assessment")),
                voice_config=(
                    VoiceConfig.from_dict(data["voice_config"])
                    if data.get("voice_config") else None
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise VignetteError(vignette_id, f"malformed field: {e}") from e
        vignette.validate()
        return vignette

    def validate(self) -> None:
        vid = self.vignette_id
        if not vid:
            raise VignetteError(vid, "missing id")
        if not self.phases:
            raise VignetteError(vid, "no phases defined")
        if not self.difficulty_levels:
            raise VignetteError(vid, "no difficulty levels")
        for level in self.difficulty_levels:
            if level not in DIFFICULTIES:
                raise VignetteError(vid, f"unknown difficulty '{level}'")

        ids = [p.phase_id for p in self.phases]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise VignetteError(vid, f"duplicate phase ids: {duplicates}")
        known = set(ids)

        if self.initial_phase_id is not None and self.initial_phase_id not in known:
            raise VignetteError(vid, f"initial phase '{self.initial_phase_id}' does not exist")

        for phase in self.phases:
            obj_ids = phase.objective_ids
            if len(set(obj_ids)) != len(obj_ids):
                raise VignetteError(vid, f"phase '{phase.phase_id}' has duplicate objective ids")
            if phase.max_messages < 1:
                raise VignetteError(vid, f"phase '{phase.phase_id}' max_messages must be >= 1")
            if phase.stall_target is not None and phase.stall_target not in known:
                raise VignetteError(
                    vid, f"phase '{phase.phase_id}' stall target '{phase.stall_target}' does not exist"
                )
            trigger_ids = set()
            for trigger in phase.branch_triggers:
                if trigger.trigger_id in RESERVED_TRIGGER_IDS:
                    raise VignetteError(vid, f"trigger id '{trigger.trigger_id}' is reserved")
                if trigger.trigger_id in trigger_ids:
                    raise VignetteError(
                        vid, f"phase '{phase.phase_id}' has duplicate trigger '{trigger.trigger_id}'"
                    )
                trigger_ids.add(trigger.trigger_id)
                for name in ("min_objectives", "min_messages"):
                    value = getattr(trigger, name)
                    if value is not None and value < 0:
                        raise VignetteError(
                            vid, f"trigger '{trigger.trigger_id}' {name} must be >= 0"
                        )
                if trigger.target_phase_id not in known:
                    raise VignetteError(
                        vid,
                        f"trigger '{trigger.trigger_id}' in phase '{phase.phase_id}' "
                        f"targets unknown phase '{trigger.target_phase_id}'",
                    )
                if trigger.intent is not None and trigger.intent not in INTENTS:
                    raise VignetteError(vid, f"trigger '{trigger.trigger_id}' has unknown intent '{trigger.intent}'")
                for oid in trigger.required_objectives:
                    if oid not in obj_ids:
                        raise VignetteError(
                            vid, f"trigger '{trigger.trigger_id}' requires unknown objective '{oid}'"
                        )
            for level, override in phase.difficulty_overrides.items():
                if level not in DIFFICULTIES:
                    raise VignetteError(vid, f"phase '{phase.phase_id}' overrides unknown difficulty '{level}'")
                if override.max_messages is not None and override.max_messages < 1:
                    raise VignetteError(
                        vid, f"phase '{phase.phase_id}' {level} max_messages must be >= 1"
                    )
                for oid in list(override.additional_keywords) + list(override.removed_keywords):
                    if oid not in obj_ids:
                        raise VignetteError(
                            vid, f"phase '{phase.phase_id}' override references unknown objective '{oid}'"
                        )

        if not 0.0 < self.emotion.max_step <= 1.0:
            raise VignetteError(vid, "emotion.max_step must be in (0, 1]")

    # -------------------------------------------------------------------------

    @property
    def phase_ids(self) -> List[str]:
        return [p.phase_id for p in self.phases]

    @property
    def first_phase_id(self) -> str:
        return self.initial_phase_id or self.phases[0].phase_id

    def has_phase(self, phase_id: str) -> bool:
        return any(p.phase_id == phase_id for p in self.phases)

    def get_phase(self, phase_id: str) -> Phase:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        raise KeyError(phase_id)

    def phase_index(self, phase_id: str) -> int:
        return self.phase_ids.index(phase_id)

    def next_phase_id(self, phase_id: str) -> Optional[str]:
        idx = self.phase_index(phase_id)
        if idx + 1 < len(self.phases):
            return self.phases[idx + 1].phase_id
        return None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.vignette_id,
            "title": self.title,
            "difficulty_levels": list(self.difficulty_levels),
            "ai_model": self.ai_model,
            "phases": self.phase_ids,
            "voice_enabled": bool(self.voice_config and self.voice_config.enabled),
        }
