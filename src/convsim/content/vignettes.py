"""
Built-in vignettes and the catalog that serves them.

Vignettes are plain dicts in the same shape as the JSON files an author
drops into ``CONVSIM_VIGNETTE_DIR``; both go through ``Vignette.from_dict``
so they are validated the same way.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.errors import VignetteError
from ..core.vignette import Vignette

logger = logging.getLogger(__name__)


# =============================================================================
# MED-001: ADENOSINE ERROR DISCLOSURE
# =============================================================================

MED_001: Dict[str, Any] = {
    "id": "MED-001",
    "title": "Medication Error Disclosure: Adenosine in Wide-Complex Tachycardia",
    "setting": (
        "Private family conference room near the ICU. Your husband, 72, was given "
        "adenosine for a wide-complex tachycardia yesterday afternoon, went into "
        "ventricular fibrillation and needed defibrillation. He is now stable in the ICU."
    ),
    "ai_model": "mistral-small-latest",
    "max_response_length": 300,
    "temperature": 0.8,
    "difficulty_levels": ["beginner", "intermediate", "advanced"],
    "persona": {
        "name": "Margaret",
        "relationship": "the patient's wife of 45 years",
        "personality": (
            "Retired schoolteacher, organized and direct. Trusted this hospital "
            "for years. Protective of her husband."
        ),
        "vocabulary": "Plain language, no medical terms. Asks pointed follow-up questions.",
        "difficulty_traits": {
            "beginner": "Upset but willing to listen once she feels heard.",
            "intermediate": "Angry and demanding specifics, tests whether you are being straight with her.",
            "advanced": "Furious, interrupts, mentions lawyers and wants someone else in charge.",
        },
    },
    "phases": [
        {
            "id": "opening",
            "name": "Initial Contact",
            "directive": "You are anxious and want information immediately. You don't know about the error yet.",
            "goal": "Find out why the doctor asked to see you.",
            "opening_line": (
                "Doctor? The nurse said you needed to speak with me about my husband. "
                "Is everything okay? He seemed stable when I left last night."
            ),
            "max_messages": 3,
            "objectives": [
                {
                    "id": "introduced_self",
                    "description": "Introduce yourself and your role",
                    "keywords": ["my name is", "i'm dr", "i am dr", "i'm the", "i am the"],
                },
                {
                    "id": "acknowledged_seriousness",
                    "description": "Signal that this is a serious conversation",
                    "keywords": ["serious", "something happened", "need to talk", "important"],
                },
            ],
            "branch_triggers": [
                {
                    "id": "ready_for_disclosure",
                    "target": "disclosure",
                    "min_objectives": 2,
                    "description": "Setting established, moving to disclosure",
                },
            ],
        },
        {
            "id": "disclosure",
            "name": "Error Disclosure",
            "directive": (
                "You are hearing that a mistake was made. You are shocked, and you ask "
                "whether this was preventable and how it could happen."
            ),
            "goal": "Understand exactly what went wrong.",
            "objectives": [
                {
                    "id": "stated_error",
                    "description": "State clearly that an error occurred",
                    "keywords": ["mistake", "error", "should not have", "shouldn't have"],
                },
                {
                    "id": "accepted_responsibility",
                    "description": "Accept responsibility",
                    "keywords": ["my fault", "responsibility", "we are responsible", "i made"],
                },
                {
                    "id": "expressed_regret",
                    "description": "Express appropriate regret",
                    "keywords": ["i'm sorry", "i am sorry", "i apologize", "deeply sorry"],
                },
            ],
            "branch_triggers": [
                {
                    "id": "clear_empathetic",
                    "target": "emotional_processing",
                    "intent": "empathetic",
                    "required_objectives": ["stated_error"],
                    "mood_shift": -0.2,
                    "description": "Family is upset but engaging",
                },
                {
                    "id": "medical_jargon",
                    "target": "emotional_processing",
                    "intent": "medical_jargon",
                    "mood_shift": 0.3,
                    "description": "Family becomes more frustrated",
                },
                {
                    "id": "defensive",
                    "target": "emotional_processing",
                    "intent": "defensive",
                    "mood_shift": 0.5,
                    "description": "Family becomes hostile",
                },
            ],
            "difficulty_overrides": {
                "beginner": {"max_messages": 6},
                "advanced": {
                    "max_messages": 4,
                    "removed_keywords": {"stated_error": ["should not have", "shouldn't have"]},
                },
            },
        },
        {
            "id": "emotional_processing",
            "name": "Managing Emotional Response",
            "directive": (
                "This is the height of your reaction. You may repeat questions, blame the "
                "doctor, or show grief. Remember everything the doctor has said so far."
            ),
            "goal": "Be heard, and decide whether you can trust this team.",
            "objectives": [
                {
                    "id": "acknowledged_emotion",
                    "description": "Acknowledge her emotions",
                    "keywords": ["understand", "must be", "frightening", "angry", "upset"],
                },
                {
                    "id": "stayed_present",
                    "description": "Stay calm and keep answering",
                    "keywords": ["take your time", "i'm here", "i am here", "any questions"],
                },
            ],
            "branch_triggers": [
                {
                    "id": "ready_for_questions",
                    "target": "clinical_questions",
                    "min_objectives": 2,
                    "mood_shift": -0.1,
                    "description": "Emotions acknowledged, she is ready for details",
                },
            ],
        },
        {
            "id": "clinical_questions",
            "name": "Detailed Questions",
            "directive": (
                "You want specific answers: will he have brain damage, who is caring for "
                "him now, how do you know this won't happen again, should he be transferred."
            ),
            "goal": "Get clear, honest answers about his condition and safety.",
            "objectives": [
                {
                    "id": "explained_status",
                    "description": "Explain his current medical status",
                    "keywords": ["stable", "his heart", "right now he", "currently"],
                },
                {
                    "id": "addressed_prevention",
                    "description": "Address prevention measures",
                    "keywords": ["won't happen again", "review", "changes", "prevent"],
                },
            ],
            "branch_triggers": [
                {
                    "id": "questions_answered",
                    "target": "next_steps",
                    "required_objectives": ["explained_status", "addressed_prevention"],
                    "description": "Her questions are answered",
                },
            ],
        },
        {
            "id": "next_steps",
            "name": "Planning and Closure",
            "directive": "You want to know what happens now and who you can call.",
            "goal": "Leave with a clear plan and a contact.",
            "objectives": [
                {
                    "id": "offered_follow_up",
                    "description": "Arrange a follow-up meeting",
                    "keywords": ["follow up", "follow-up", "meet again", "tomorrow"],
                },
                {
                    "id": "offered_support",
                    "description": "Offer support resources and contact information",
                    "keywords": ["contact", "call me", "number", "support", "chaplain", "social work"],
                },
            ],
        },
    ],
    "voice_config": {
        "enabled": True,
        "voice_id": "EXAVITQu4vr4xnSDxMaL",
        "stability": 0.55,
        "similarity_boost": 0.75,
        "opening_line": (
            "Doctor? The nurse said you needed to speak with me about my husband. "
            "Is everything okay?"
        ),
        "closing_line": "Thank you for being honest with me. I'd like to see him now.",
        "phase_stability": {
            "opening": 0.5,
            "disclosure": 0.35,
            "emotional_processing": 0.4,
            "clinical_questions": 0.5,
            "next_steps": 0.55,
        },
    },
}

BUILTIN_VIGNETTES: List[Dict[str, Any]] = [MED_001]


# =============================================================================
# CATALOG
# =============================================================================

class VignetteCatalog:
    """Validated vignettes by id: the built-ins plus any JSON files in ``directory``."""

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        definitions: Optional[Iterable[Dict[str, Any]]] = None,
    ):
        self._vignettes: Dict[str, Vignette] = {}
        for data in (BUILTIN_VIGNETTES if definitions is None else definitions):
            self.add(Vignette.from_dict(data))
        if directory:
            self.load_directory(directory)

    def add(self, vignette: Vignette) -> None:
        if vignette.vignette_id in self._vignettes:
            logger.info(f"[Catalog] Replacing vignette {vignette.vignette_id}")
        self._vignettes[vignette.vignette_id] = vignette

    def load_directory(self, directory: Union[str, Path]) -> int:
        """Load every ``*.json`` vignette in ``directory``. Invalid files raise VignetteError."""
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"[Catalog] Vignette directory not found: {path}")
            return 0
        count = 0
        for file in sorted(path.glob("*.json")):
            try:
                data = json.loads(file.read_text())
            except json.JSONDecodeError as e:
                raise VignetteError(file.stem, f"invalid JSON in {file.name}: {e}") from e
            self.add(Vignette.from_dict(data))
            count += 1
        logger.info(f"[Catalog] Loaded {count} vignette(s) from {path}")
        return count

    def get(self, vignette_id: str) -> Optional[Vignette]:
        return self._vignettes.get(vignette_id)

    def list(self) -> List[Vignette]:
        return list(self._vignettes.values())

    def __contains__(self, vignette_id: str) -> bool:
        return vignette_id in self._vignettes

    def __len__(self) -> int:
        return len(self._vignettes)
