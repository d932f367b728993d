"""
ConversationEngine: orchestrates one trainee turn of a difficult conversation.

Each engine is bound to one vignette, one difficulty and one model provider,
and lives for a single request. The caller owns persistence: it passes the
previous ``SessionState`` in as ``prior_phase_state`` and stores the snapshot
returned with each turn.

Turn sequence (``process_user_message``):
    1. append the trainee utterance to the transcript
    2. phase machine: objectives, then branch triggers (so a trigger can
       condition on objectives met this same turn)
    3. emotional tracker, with the transition (if any) visible to it
    4. assessment scores over the trainee's side of the transcript
    5. unless the conversation just ended: build the persona prompt and call
       the model provider, then append the reply

Everything before step 5 is committed before the provider is called. If
generation fails, the GenerationFailure carries that committed snapshot and
``retry_generation`` can produce the reply without re-running steps 1-4.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..llm.prompt import build_persona_prompt
from ..llm.providers import GenerationConfig, ModelProvider
from .assessment import AssessmentEngine, AssessmentResult
from .emotional_state import EmotionalStateTracker
from .errors import ConversationEnded, ConvSimError, GenerationFailure, InvalidResumeState
from .phase_machine import PhaseMachine, PhaseStep, PhaseTransition
from .session_state import (
    ROLE_PERSONA,
    ROLE_TRAINEE,
    EmotionalSnapshot,
    Message,
    PhaseState,
    SessionState,
)
from .utils import utcnow
from .vignette import Vignette

logger = logging.getLogger(__name__)


@dataclass
class ConversationEngineConfig:
    vignette: Vignette
    difficulty: str
    user_id: str
    model_provider: ModelProvider
    initial_phase_id: Optional[str] = None
    prior_phase_state: Optional[Union[SessionState, Mapping[str, Any]]] = None
    # Injected for deterministic timestamps in tests
    clock: Optional[Callable[[], datetime]] = None


@dataclass
class TurnResult:
    """Everything the caller needs after one turn, including the snapshot to persist."""
    response: str
    current_phase: str
    emotional_state: EmotionalSnapshot
    session_state: SessionState
    transition: Optional[PhaseTransition] = None
    ended: bool = False
    end_reason: str = ""
    newly_completed: List[str] = field(default_factory=list)
    assessment: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "current_phase": self.current_phase,
            "emotional_state": self.emotional_state.to_dict(),
            "transition": self.transition.to_dict() if self.transition else None,
            "ended": self.ended,
            "end_reason": self.end_reason,
            "newly_completed": list(self.newly_completed),
            "assessment": dict(self.assessment),
            "session_state": self.session_state.to_dict(),
        }


class ConversationEngine:
    """
    Stateless-per-request orchestrator for the persona roleplay.

    Construction validates the resume point and fails fast with
    InvalidResumeState rather than silently restarting the scenario.
    """

    def __init__(self, config: ConversationEngineConfig):
        vignette = config.vignette
        if config.difficulty not in vignette.difficulty_levels:
            raise ValueError(
                f"Difficulty '{config.difficulty}' not supported by vignette "
                f"{vignette.vignette_id} (supported: {list(vignette.difficulty_levels)})"
            )

        self.vignette = vignette
        self.difficulty = config.difficulty
        self.user_id = config.user_id
        self.provider = config.model_provider
        self.clock = config.clock or utcnow

        self.machine = PhaseMachine(vignette, config.difficulty)
        self.tracker = EmotionalStateTracker(vignette.emotion, config.difficulty)
        self.assessor = AssessmentEngine(vignette.assessment)

        if config.prior_phase_state is not None:
            self._state = self._resume(config.prior_phase_state, config.initial_phase_id)
        else:
            self._state = self._fresh(config.initial_phase_id)

        logger.info(
            f"[Engine] user={self.user_id} vignette={vignette.vignette_id} "
            f"difficulty={self.difficulty} phase={self._state.phase.current_phase_id} "
            f"messages={len(self._state.messages)} provider={self.provider!r}"
        )

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    def _fresh(self, initial_phase_id: Optional[str]) -> SessionState:
        phase_id = initial_phase_id or self.vignette.first_phase_id
        if not self.vignette.has_phase(phase_id):
            raise InvalidResumeState(
                f"Initial phase '{phase_id}' is not a phase of vignette {self.vignette.vignette_id}",
                phase_id=phase_id,
            )
        return SessionState(
            vignette_id=self.vignette.vignette_id,
            difficulty=self.difficulty,
            phase=PhaseState(current_phase_id=phase_id),
            emotional_state=self.tracker.initial_snapshot(self.clock),
        )

    def _resume(
        self,
        prior: Union[SessionState, Mapping[str, Any]],
        initial_phase_id: Optional[str],
    ) -> SessionState:
        if isinstance(prior, SessionState):
            state = prior.copy()
        else:
            state = SessionState.from_dict(prior)

        vid = self.vignette.vignette_id
        if state.vignette_id and state.vignette_id != vid:
            raise InvalidResumeState(
                f"Prior state belongs to vignette '{state.vignette_id}', not '{vid}'"
            )
        if state.difficulty and state.difficulty != self.difficulty:
            raise InvalidResumeState(
                f"Prior state was played at '{state.difficulty}', not '{self.difficulty}'"
            )

        phase_id = state.phase.current_phase_id
        if not self.vignette.has_phase(phase_id):
            raise InvalidResumeState(
                f"Prior phase '{phase_id}' is not a phase of vignette {vid}", phase_id=phase_id
            )
        if initial_phase_id is not None and initial_phase_id != phase_id:
            raise InvalidResumeState(
                f"initial_phase_id '{initial_phase_id}' disagrees with prior phase '{phase_id}'",
                phase_id=initial_phase_id,
            )

        known_objectives = set(self.vignette.get_phase(phase_id).objective_ids)
        unknown = [o for o in state.phase.objectives_completed if o not in known_objectives]
        if unknown:
            raise InvalidResumeState(
                f"Objectives {unknown} are not defined in phase '{phase_id}'", phase_id=phase_id
            )
        if state.phase.message_count < 0:
            raise InvalidResumeState("message_count cannot be negative", phase_id=phase_id)
        if not 0 <= state.phase.entered_at <= len(state.messages):
            raise InvalidResumeState(
                f"entered_at {state.phase.entered_at} is outside the transcript "
                f"({len(state.messages)} messages)",
                phase_id=phase_id,
            )

        for record in state.branch_history:
            for pid in (record.phase_id, record.from_phase_id):
                if pid and not self.vignette.has_phase(pid):
                    raise InvalidResumeState(
                        f"Branch history names unknown phase '{pid}'", phase_id=pid
                    )

        state.vignette_id = vid
        state.difficulty = self.difficulty
        if state.emotional_state is None:
            state.emotional_state = self.tracker.initial_snapshot(self.clock)
        return state

    # =========================================================================
    # TRANSCRIPT
    # =========================================================================

    def _next_message_id(self) -> str:
        return f"msg-{len(self._state.messages) + 1}"

    def _append(self, role: str, text: str, phase_id: str) -> Message:
        message = Message(
            message_id=self._next_message_id(),
            role=role,
            text=text,
            timestamp=self.clock().isoformat(),
            phase_id=phase_id,
        )
        self._state.messages.append(message)
        return message

    def update_conversation_history(
        self, messages: Sequence[Union[Message, Mapping[str, Any]]]
    ) -> None:
        """Replace the transcript (e.g. from a client-side store). Phase state is untouched."""
        history = []
        for i, m in enumerate(messages):
            history.append(m if isinstance(m, Message) else Message.from_dict(m, i))
        self._state.messages = history
        logger.info(f"[Engine] Conversation history set ({len(history)} messages)")

    # =========================================================================
    # TURN
    # =========================================================================

    def process_user_message(self, utterance: str) -> TurnResult:
        """
        Run one trainee turn and return the persona's reply plus a snapshot.

        Raises ConversationEnded if the conversation already reached its
        terminal state, and GenerationFailure (with ``session_state``
        attached) if the provider could not produce a reply.
        """
        if self._state.ended:
            raise ConversationEnded(
                f"Conversation in vignette {self.vignette.vignette_id} has already ended"
            )

        state = self._state
        active_phase = state.phase.current_phase_id
        self._append(ROLE_TRAINEE, utterance, active_phase)

        step: PhaseStep = self.machine.advance(state, utterance, clock=self.clock)
        state.emotional_state = self.tracker.update(
            state.emotional_state, utterance, transition=step.transition, clock=self.clock
        )
        assessment = self.assessor.assess_conversation(state.messages)
        state.assessment_scores = assessment.scores()

        logger.info(
            f"[Engine] Turn in '{active_phase}': objectives={step.objectives_completed} "
            f"transition={step.transition.to_phase_id if step.transition else None} "
            f"mood={state.emotional_state.value:.2f} ({state.emotional_state.threshold})"
        )

        if step.ended:
            return self._result("", step)

        response = self._generate()
        return self._result(response, step)

    def retry_generation(self) -> TurnResult:
        """
        Generate the persona reply for an unanswered trainee turn.

        Used after a GenerationFailure: phase, objective and emotion updates
        for the turn are already in the state and are not re-applied.
        """
        if not self._state.awaiting_reply:
            raise ConvSimError("No unanswered trainee turn to retry")
        response = self._generate()
        return self._result(response, None)

    def _generate(self) -> str:
        state = self._state
        prompt = build_persona_prompt(self.vignette, state)
        config = GenerationConfig(
            max_tokens=self.vignette.max_response_length,
            temperature=self.vignette.temperature,
        )
        try:
            response = self.provider.generate(prompt, config)
        except GenerationFailure as e:
            e.session_state = state.to_dict()
            logger.warning(f"[Engine] Generation failed, turn state committed: {e}")
            raise
        except Exception as e:
            # A provider that breaks its contract still leaves a retryable turn
            failure = GenerationFailure(
                f"Unexpected provider error: {e!r}",
                provider_name=getattr(self.provider, "name", type(self.provider).__name__),
                original_error=e,
            )
            failure.session_state = state.to_dict()
            logger.exception(f"[Engine] Provider raised {type(e).__name__}, turn state committed")
            raise failure from e
        self._append(ROLE_PERSONA, response, state.phase.current_phase_id)
        return response

    def _result(self, response: str, step: Optional[PhaseStep]) -> TurnResult:
        state = self._state
        return TurnResult(
            response=response,
            current_phase=state.phase.current_phase_id,
            emotional_state=EmotionalSnapshot.from_dict(state.emotional_state.to_dict()),
            session_state=self.get_session_state(),
            transition=step.transition if step else None,
            ended=state.ended,
            end_reason=step.end_reason if step else "",
            newly_completed=list(step.newly_completed) if step else [],
            assessment=dict(state.assessment_scores),
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_session_state(self) -> SessionState:
        """A deep copy; mutating it does not affect the engine."""
        return self._state.copy()

    def get_assessment(self) -> AssessmentResult:
        return self.assessor.assess_conversation(self._state.messages)

    def get_progress(self) -> float:
        """Rough completion 0-1: 70% phase position, 30% objectives in the active phase."""
        if self._state.ended:
            return 1.0
        phase = self.vignette.get_phase(self._state.phase.current_phase_id)
        if phase.objectives:
            done = sum(1 for o in phase.objective_ids if o in self._state.phase.objectives_completed)
            objective_share = done / len(phase.objectives)
        else:
            objective_share = 0.0
        return 0.7 * self.machine.progression(phase.phase_id) + 0.3 * objective_share
