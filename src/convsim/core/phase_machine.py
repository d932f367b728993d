"""
PhaseMachine: the phase/branch state machine behind a conversation.

States are the vignette's phase ids plus an implicit terminal state.
Once per trainee turn the machine:

    1. counts the turn against the active phase
    2. evaluates the phase's objectives (monotonic: once met, never un-met)
    3. evaluates branch triggers in declaration order; the first that fires
       wins. A phase without triggers moves on by itself once all of its
       objectives are met, and if nothing fires after the phase's stall
       threshold an implicit "stall" trigger moves the conversation on
    4. reports whether the active phase is terminal

Objective and trigger matching are keyword policies over the utterance and
the trainee turns of the current visit to the phase. Turns from an earlier
visit do not count again when a branch loops back. Matching is a pure
function of its inputs, so replaying the same turn against the same state
yields the same result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..content.lexicon import INTENTS
from .session_state import ROLE_TRAINEE, BranchRecord, Message, PhaseState, SessionState
from .utils import contains_any, normalize_text, significant_words, utcnow
from .vignette import COMPLETION_TRIGGER_ID, STALL_TRIGGER_ID, BranchTrigger, Objective, Phase, Vignette

logger = logging.getLogger(__name__)

# Word-overlap fallback for objectives without keywords
MIN_WORD_OVERLAP = 2


@dataclass
class PhaseTransition:
    from_phase_id: str
    to_phase_id: str
    trigger_id: str
    reason: str
    mood_shift: float = 0.0
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_phase_id,
            "to": self.to_phase_id,
            "trigger": self.trigger_id,
            "reason": self.reason,
            "mood_shift": self.mood_shift,
            "timestamp": self.timestamp,
        }


@dataclass
class PhaseStep:
    """What one trainee turn did to the phase state."""
    phase_id: str
    objectives_completed: List[str]
    newly_completed: List[str] = field(default_factory=list)
    transition: Optional[PhaseTransition] = None
    ended: bool = False
    end_reason: str = ""


class PhaseMachine:
    """Evaluates objectives and branch triggers for one vignette/difficulty."""

    def __init__(self, vignette: Vignette, difficulty: str):
        self.vignette = vignette
        self.difficulty = difficulty

    # =========================================================================
    # OBJECTIVES
    # =========================================================================

    def objective_satisfied(self, phase: Phase, objective: Objective, text: str) -> bool:
        keywords = phase.keywords_for(objective, self.difficulty)
        if keywords:
            return contains_any(text, keywords)
        words = significant_words(objective.description)
        haystack = normalize_text(text)
        return sum(1 for w in words if w in haystack) >= MIN_WORD_OVERLAP

    def evaluate_objectives(
        self,
        phase: Phase,
        utterance: str,
        history: Sequence[Message] = (),
        already_completed: Iterable[str] = (),
    ) -> List[str]:
        """
        Return every objective of ``phase`` that is now satisfied.

        The result is the union of ``already_completed`` and anything newly
        matched by the utterance or by trainee turns of this phase in
        ``history`` (the engine passes only the current visit), ordered as
        the phase declares its objectives.
        """
        completed = set(already_completed)
        texts = [utterance] + [
            m.text for m in history
            if m.role == ROLE_TRAINEE and m.phase_id == phase.phase_id
        ]
        for objective in phase.objectives:
            if objective.objective_id in completed:
                continue
            if any(self.objective_satisfied(phase, objective, t) for t in texts):
                completed.add(objective.objective_id)

        ordered = [oid for oid in phase.objective_ids if oid in completed]
        # Keep ids the phase no longer declares rather than dropping them
        ordered.extend(sorted(completed - set(ordered)))
        return ordered

    # =========================================================================
    # BRANCHES
    # =========================================================================

    def trigger_fires(
        self,
        trigger: BranchTrigger,
        utterance: str,
        objectives_completed: Sequence[str],
        message_count: int,
    ) -> bool:
        if trigger.phrases and not contains_any(utterance, trigger.phrases):
            return False
        if trigger.intent is not None and not contains_any(utterance, INTENTS[trigger.intent]):
            return False
        if trigger.min_objectives is not None and len(objectives_completed) < trigger.min_objectives:
            return False
        if any(oid not in objectives_completed for oid in trigger.required_objectives):
            return False
        if trigger.min_messages is not None and message_count < trigger.min_messages:
            return False
        return True

    def onward_phase_id(self, phase: Phase) -> Optional[str]:
        """Where implicit transitions lead: the stall target, else the next phase."""
        return phase.stall_target or self.vignette.next_phase_id(phase.phase_id)

    def completion_trigger(self, phase: Phase) -> Optional[BranchTrigger]:
        """Implicit advance for a phase without triggers once its objectives are met."""
        target = self.onward_phase_id(phase)
        if target is None or phase.branch_triggers or not phase.objectives:
            return None
        return BranchTrigger(
            trigger_id=COMPLETION_TRIGGER_ID,
            target_phase_id=target,
            required_objectives=tuple(phase.objective_ids),
            description="All objectives met, advancing",
        )

    def stall_trigger(self, phase: Phase) -> Optional[BranchTrigger]:
        """The implicit anti-stall transition, or None when nowhere is left to go."""
        target = self.onward_phase_id(phase)
        if target is None:
            return None
        threshold = phase.stall_threshold(self.difficulty)
        return BranchTrigger(
            trigger_id=STALL_TRIGGER_ID,
            target_phase_id=target,
            min_messages=threshold,
            description=f"No progress after {threshold} turns, advancing",
        )

    def evaluate_branches(
        self,
        phase: Phase,
        utterance: str,
        objectives_completed: Sequence[str],
        message_count: int = 0,
    ) -> Optional[BranchTrigger]:
        """
        First declared trigger that fires, else the completion advance for a
        phase without triggers, else the stall trigger if due.
        """
        for trigger in phase.branch_triggers:
            if self.trigger_fires(trigger, utterance, objectives_completed, message_count):
                return trigger
        completion = self.completion_trigger(phase)
        if completion is not None and self.trigger_fires(
            completion, utterance, objectives_completed, message_count
        ):
            return completion
        if message_count >= phase.stall_threshold(self.difficulty):
            return self.stall_trigger(phase)
        return None

    def is_terminal(self, phase: Phase, objectives_completed: Sequence[str]) -> bool:
        """No outgoing triggers, nowhere left to advance to, and every objective satisfied."""
        if phase.branch_triggers or self.onward_phase_id(phase) is not None:
            return False
        return all(oid in objectives_completed for oid in phase.objective_ids)

    # =========================================================================
    # TURN
    # =========================================================================

    def advance(
        self,
        state: SessionState,
        utterance: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> PhaseStep:
        """
        Apply one trainee turn to ``state`` in place.

        The utterance is expected to already be the last entry of
        ``state.messages``.
        """
        phase = self.vignette.get_phase(state.phase.current_phase_id)
        state.phase.message_count += 1

        before = list(state.phase.objectives_completed)
        visit = state.messages[state.phase.entered_at:]
        completed = self.evaluate_objectives(
            phase, utterance, history=visit, already_completed=before
        )
        newly = [oid for oid in completed if oid not in before]
        state.phase.objectives_completed = completed
        audit = state.objective_history.setdefault(phase.phase_id, [])
        audit.extend(oid for oid in completed if oid not in audit)

        step = PhaseStep(
            phase_id=phase.phase_id,
            objectives_completed=list(completed),
            newly_completed=newly,
        )
        if newly:
            logger.info(f"[PhaseMachine] Objectives met in '{phase.phase_id}': {newly}")

        trigger = self.evaluate_branches(
            phase, utterance, completed, state.phase.message_count
        )
        if trigger is not None:
            timestamp = clock().isoformat()
            step.transition = PhaseTransition(
                from_phase_id=phase.phase_id,
                to_phase_id=trigger.target_phase_id,
                trigger_id=trigger.trigger_id,
                reason=trigger.description or f"Trigger '{trigger.trigger_id}' matched",
                mood_shift=trigger.mood_shift,
                timestamp=timestamp,
            )
            state.branch_history.append(BranchRecord(
                phase_id=trigger.target_phase_id,
                branch_trigger=trigger.trigger_id,
                from_phase_id=phase.phase_id,
                timestamp=timestamp,
            ))
            state.phase = PhaseState(
                current_phase_id=trigger.target_phase_id,
                entered_at=len(state.messages),
            )
            logger.info(
                f"[PhaseMachine] {phase.phase_id} -> {trigger.target_phase_id} "
                f"(trigger={trigger.trigger_id})"
            )
            return step

        if self.is_terminal(phase, completed):
            step.ended = True
            step.end_reason = "objectives_complete"
        elif (
            state.phase.message_count >= phase.stall_threshold(self.difficulty)
            and self.stall_trigger(phase) is None
        ):
            step.ended = True
            step.end_reason = "stalled_in_final_phase"
        if step.ended:
            state.ended = True
            logger.info(f"[PhaseMachine] Conversation ended in '{phase.phase_id}' ({step.end_reason})")
        return step

    # -------------------------------------------------------------------------

    def progression(self, phase_id: str) -> float:
        """Position of ``phase_id`` in the phase order, 0-1."""
        n = len(self.vignette.phases)
        if n == 1:
            return 1.0
        return self.vignette.phase_index(phase_id) / (n - 1)
