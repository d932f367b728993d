"""
One voice turn: speech-to-text, the engine turn, text-to-speech.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.engine import ConversationEngine, TurnResult
from ..core.errors import EmptyTranscript
from .speech import SpeechServiceError, Synthesizer, Transcriber, VoiceSettings

logger = logging.getLogger(__name__)


@dataclass
class VoiceTurnResult:
    transcript: str
    confidence: float
    turn: TurnResult
    audio: Optional[bytes] = None
    audio_mime_type: str = "audio/mpeg"


def run_voice_turn(
    engine: ConversationEngine,
    audio: bytes,
    transcriber: Transcriber,
    synthesizer: Optional[Synthesizer] = None,
    mime_type: str = "audio/webm",
) -> VoiceTurnResult:
    """
    Transcribe ``audio``, run it through ``engine`` and voice the reply.

    An empty transcript raises EmptyTranscript before the engine is touched,
    so no turn is recorded. Speech synthesis is best-effort: if it fails the
    text reply is still returned, without audio.
    """
    transcription = transcriber.transcribe(audio, mime_type)
    transcript = transcription.transcript.strip()
    if not transcript:
        raise EmptyTranscript("No speech detected in the recording")
    logger.info(f"[Voice] Transcript ({transcription.confidence:.2f}): {transcript[:80]}")

    turn = engine.process_user_message(transcript)
    result = VoiceTurnResult(transcript=transcript, confidence=transcription.confidence, turn=turn)

    voice = engine.vignette.voice_config
    if synthesizer is None or voice is None or not voice.enabled:
        return result

    text = turn.response or (voice.closing_line if turn.ended else "")
    if not text:
        return result

    settings = VoiceSettings(
        stability=voice.stability_for(turn.current_phase),
        similarity_boost=voice.similarity_boost,
    )
    try:
        result.audio = synthesizer.synthesize(text, voice.voice_id, settings)
    except SpeechServiceError as e:
        logger.warning(f"[Voice] Synthesis failed, returning text only: {e}")
    return result
