"""
Speech collaborators for the voice transport.

The engine never touches audio. The voice route transcribes the trainee's
audio, hands the text to the engine like any typed turn, and synthesizes the
persona's reply with the vignette's voice settings.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np
import requests

from ..core.errors import ConvSimError
from ..llm.client import env

logger = logging.getLogger(__name__)

WHISPER_URL = "https://api.openai.com/v1/audio/transcriptions"
ELEVENLABS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
ELEVENLABS_MODEL = "eleven_turbo_v2_5"


class SpeechServiceError(ConvSimError):
    """Raised when a speech-to-text or text-to-speech backend fails."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"[{service}] {message}")


@dataclass
class Transcription:
    transcript: str
    confidence: float = 1.0


@dataclass
class VoiceSettings:
    stability: float = 0.55
    similarity_boost: float = 0.75


class Transcriber(ABC):
    @abstractmethod
    def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> Transcription:
        """Return the transcript or raise SpeechServiceError."""


class Synthesizer(ABC):
    @abstractmethod
    def synthesize(self, text: str, voice_id: str, settings: VoiceSettings) -> bytes:
        """Return encoded audio (mp3) or raise SpeechServiceError."""


def _extension(mime_type: str) -> str:
    subtype = mime_type.split("/")[-1].split(";")[0].strip()
    return {"mpeg": "mp3", "x-wav": "wav", "wave": "wav"}.get(subtype, subtype or "webm")


def _post(service: str, url: str, timeout: float, **kwargs) -> requests.Response:
    try:
        resp = requests.post(url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as e:
        raise SpeechServiceError(service, "Request timed out", 408) from e
    except requests.exceptions.ConnectionError as e:
        raise SpeechServiceError(service, f"Connection error: {e}", 0) from e
    if resp.status_code != 200:
        raise SpeechServiceError(service, resp.text[:300], resp.status_code)
    return resp


class WhisperTranscriber(Transcriber):
    """Whisper via the OpenAI-compatible /audio/transcriptions endpoint."""

    def __init__(self, api_key: str = "", model: str = "whisper-1",
                 url: str = WHISPER_URL, timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.timeout = timeout

    def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> Transcription:
        api_key = self.api_key or env("OPENAI_API_KEY")
        if not api_key:
            raise SpeechServiceError("whisper", "OPENAI_API_KEY is not set", 401)

        resp = _post(
            "whisper",
            self.url,
            self.timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            files={"file": (f"audio.{_extension(mime_type)}", audio, mime_type)},
            data={"model": self.model, "response_format": "verbose_json", "language": "en"},
        )
        data = resp.json()
        transcript = str(data.get("text", ""))
        return Transcription(transcript=transcript, confidence=self._confidence(data))

    @staticmethod
    def _confidence(data: dict) -> float:
        # Mean per-segment log-probability mapped back to 0-1
        logprobs = [s["avg_logprob"] for s in data.get("segments") or [] if "avg_logprob" in s]
        if not logprobs:
            return 1.0
        return float(np.clip(np.exp(np.mean(logprobs)), 0.0, 1.0))


class ElevenLabsSynthesizer(Synthesizer):
    """ElevenLabs text-to-speech."""

    def __init__(self, api_key: str = "", model_id: str = ELEVENLABS_MODEL, timeout: float = 30.0):
        self.api_key = api_key
        self.model_id = model_id
        self.timeout = timeout

    def synthesize(self, text: str, voice_id: str, settings: VoiceSettings) -> bytes:
        api_key = self.api_key or env("ELEVENLABS_API_KEY")
        if not api_key:
            raise SpeechServiceError("elevenlabs", "ELEVENLABS_API_KEY is not set", 401)
        if not voice_id:
            raise SpeechServiceError("elevenlabs", "No voice_id configured")

        resp = _post(
            "elevenlabs",
            ELEVENLABS_URL.format(voice_id=voice_id),
            self.timeout,
            headers={
                "xi-api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {
                    "stability": settings.stability,
                    "similarity_boost": settings.similarity_boost,
                },
            },
        )
        logger.info(f"[TTS] Synthesized {len(text)} chars -> {len(resp.content)} bytes")
        return resp.content
