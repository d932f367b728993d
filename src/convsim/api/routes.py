"""
REST API routes for the conversation simulation engine.

No session is kept on the server. Each turn builds a fresh engine from the
vignette and the caller's ``session_state``, runs the turn, and returns the
new snapshot for the caller to send back next time.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..content.vignettes import VignetteCatalog
from ..core.engine import ConversationEngine, ConversationEngineConfig, TurnResult
from ..core.errors import (
    ConversationEnded,
    ConvSimError,
    EmptyTranscript,
    GenerationFailure,
    InvalidResumeState,
)
from ..llm.client import ChatAPIError, ChatClient
from ..llm.providers import ModelProvider, create_provider
from ..voice.speech import (
    ElevenLabsSynthesizer,
    SpeechServiceError,
    Synthesizer,
    Transcriber,
    WhisperTranscriber,
)
from ..voice.turn import run_voice_turn
from .schemas import (
    ConversationContext,
    EmotionalStateData,
    RetryRequest,
    TransitionData,
    TurnRequest,
    TurnResponse,
    VignetteSummary,
    VoiceTurnRequest,
    VoiceTurnResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

ProviderFactory = Callable[[str, int, float], ModelProvider]

# Global catalog (loaded on first use)
catalog: Optional[VignetteCatalog] = None


def get_catalog() -> VignetteCatalog:
    global catalog
    if catalog is None:
        catalog = VignetteCatalog(directory=os.environ.get("CONVSIM_VIGNETTE_DIR"))
    return catalog


def get_provider_factory() -> ProviderFactory:
    return create_provider


def get_transcriber() -> Transcriber:
    return WhisperTranscriber()


def get_synthesizer() -> Synthesizer:
    return ElevenLabsSynthesizer()


# =============================================================================
# HELPERS
# =============================================================================

def _build_engine(
    request: ConversationContext,
    vignettes: VignetteCatalog,
    provider_factory: ProviderFactory,
) -> ConversationEngine:
    vignette = vignettes.get(request.vignette_id)
    if vignette is None:
        raise HTTPException(404, f"Vignette {request.vignette_id} not found")

    try:
        provider = provider_factory(
            vignette.ai_model, vignette.max_response_length, vignette.temperature
        )
        return ConversationEngine(ConversationEngineConfig(
            vignette=vignette,
            difficulty=request.difficulty,
            user_id=request.user_id,
            model_provider=provider,
            initial_phase_id=request.initial_phase_id,
            prior_phase_state=request.session_state,
        ))
    except InvalidResumeState as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(422, str(e))


def _turn_response(engine: ConversationEngine, result: TurnResult) -> TurnResponse:
    transition = None
    if result.transition is not None:
        t = result.transition
        transition = TransitionData(
            from_phase=t.from_phase_id,
            to_phase=t.to_phase_id,
            trigger=t.trigger_id,
            reason=t.reason,
            mood_shift=t.mood_shift,
        )
    emotion = result.emotional_state
    return TurnResponse(
        response=result.response,
        current_phase=result.current_phase,
        emotional_state=EmotionalStateData(
            value=emotion.value, threshold=emotion.threshold, trend=emotion.trend
        ),
        transition=transition,
        ended=result.ended,
        end_reason=result.end_reason,
        newly_completed=result.newly_completed,
        assessment=result.assessment,
        progress=round(engine.get_progress(), 3),
        session_state=result.session_state.to_dict(),
    )


def _generation_unavailable(e: GenerationFailure) -> HTTPException:
    logger.warning(f"[API] Generation failed: {e}")
    return HTTPException(503, detail={
        "message": "The persona could not respond. Please try again.",
        "error": str(e),
        "retryable": True,
        "session_state": e.session_state,
    })


# =============================================================================
# ROUTES
# =============================================================================

@router.get("/status")
def status(vignettes: VignetteCatalog = Depends(get_catalog)):
    """Check system status including LLM availability."""
    try:
        llm_available = ChatClient().is_available
    except ChatAPIError:
        llm_available = False
    return {"llm_available": llm_available, "vignettes": len(vignettes)}


@router.get("/vignettes", response_model=List[VignetteSummary])
def list_vignettes(vignettes: VignetteCatalog = Depends(get_catalog)):
    return [VignetteSummary(**v.summary()) for v in vignettes.list()]


@router.post("/conversations/turn", response_model=TurnResponse)
def conversation_turn(
    request: TurnRequest,
    vignettes: VignetteCatalog = Depends(get_catalog),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    """Process one typed trainee turn."""
    engine = _build_engine(request, vignettes, provider_factory)
    try:
        result = engine.process_user_message(request.message)
    except ConversationEnded as e:
        raise HTTPException(409, str(e))
    except GenerationFailure as e:
        raise _generation_unavailable(e)
    return _turn_response(engine, result)


@router.post("/conversations/retry", response_model=TurnResponse)
def retry_turn(
    request: RetryRequest,
    vignettes: VignetteCatalog = Depends(get_catalog),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
):
    """Generate the reply for a turn whose generation previously failed."""
    engine = _build_engine(request, vignettes, provider_factory)
    try:
        result = engine.retry_generation()
    except GenerationFailure as e:
        raise _generation_unavailable(e)
    except ConvSimError as e:
        raise HTTPException(409, str(e))
    return _turn_response(engine, result)


@router.post("/conversations/voice", response_model=VoiceTurnResponse)
def voice_turn(
    request: VoiceTurnRequest,
    vignettes: VignetteCatalog = Depends(get_catalog),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    transcriber: Transcriber = Depends(get_transcriber),
    synthesizer: Synthesizer = Depends(get_synthesizer),
):
    """Process one spoken trainee turn: transcribe, respond, synthesize."""
    try:
        audio = base64.b64decode(request.audio_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(422, "audio_base64 is not valid base64")

    engine = _build_engine(request, vignettes, provider_factory)
    try:
        result = run_voice_turn(
            engine,
            audio,
            transcriber,
            synthesizer if request.synthesize else None,
            mime_type=request.mime_type,
        )
    except EmptyTranscript as e:
        raise HTTPException(422, str(e))
    except SpeechServiceError as e:
        raise HTTPException(502, str(e))
    except ConversationEnded as e:
        raise HTTPException(409, str(e))
    except GenerationFailure as e:
        raise _generation_unavailable(e)

    return VoiceTurnResponse(
        transcript=result.transcript,
        confidence=result.confidence,
        turn=_turn_response(engine, result.turn),
        audio_base64=base64.b64encode(result.audio).decode("ascii") if result.audio else None,
        audio_mime_type=result.audio_mime_type if result.audio else None,
    )
