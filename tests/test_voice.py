"""
Tests for the voice turn: transcription, engine turn and synthesis.

Speech backends are faked or have their HTTP mocked.
"""

from unittest.mock import MagicMock, patch

import pytest

from convsim.core.engine import ConversationEngine, ConversationEngineConfig
from convsim.core.errors import EmptyTranscript
from convsim.llm.providers import ScriptedProvider
from convsim.voice.speech import (
    ElevenLabsSynthesizer,
    SpeechServiceError,
    Synthesizer,
    Transcriber,
    Transcription,
    VoiceSettings,
    WhisperTranscriber,
)
from convsim.voice.turn import run_voice_turn

from conftest import fixed_clock


class FakeTranscriber(Transcriber):
    def __init__(self, text, confidence=0.9):
        self.result = Transcription(text, confidence)

    def transcribe(self, audio, mime_type="audio/webm"):
        return self.result


class FakeSynthesizer(Synthesizer):
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def synthesize(self, text, voice_id, settings):
        self.calls.append((text, voice_id, settings))
        if self.fail:
            raise SpeechServiceError("fake", "down", 500)
        return b"mp3-bytes"


@pytest.fixture
def engine(vignette):
    return ConversationEngine(ConversationEngineConfig(
        vignette=vignette,
        difficulty="intermediate",
        user_id="trainee-1",
        model_provider=ScriptedProvider(replies=["What happened to my father?"]),
        clock=fixed_clock,
    ))


class TestVoiceTurn:
    def test_empty_transcript_rejected_before_engine(self, engine):
        with pytest.raises(EmptyTranscript):
            run_voice_turn(engine, b"...", FakeTranscriber("   "), FakeSynthesizer())
        assert engine.get_session_state().messages == []

    def test_full_turn(self, engine):
        synth = FakeSynthesizer()
        result = run_voice_turn(engine, b"...", FakeTranscriber("  my name is Dr. Lee  "), synth)

        assert result.transcript == "my name is Dr. Lee"
        assert result.turn.response == "What happened to my father?"
        assert result.audio == b"mp3-bytes"
        text, voice_id, settings = synth.calls[0]
        assert voice_id == "voice-123"
        # Transition into escalation picks up that phase's stability
        assert settings == VoiceSettings(stability=0.35, similarity_boost=0.75)

    def test_closing_line_when_conversation_ends(self, vignette):
        engine = ConversationEngine(ConversationEngineConfig(
            vignette=vignette,
            difficulty="intermediate",
            user_id="trainee-1",
            model_provider=ScriptedProvider(),
            initial_phase_id="resolution",
            clock=fixed_clock,
        ))
        synth = FakeSynthesizer()
        result = run_voice_turn(engine, b"...", FakeTranscriber("Let's follow up tomorrow"), synth)
        assert result.turn.ended
        assert synth.calls[0][0] == "Thank you, doctor."

    def test_synthesis_failure_keeps_text_reply(self, engine):
        result = run_voice_turn(engine, b"...", FakeTranscriber("Hello"), FakeSynthesizer(fail=True))
        assert result.audio is None
        assert result.turn.response == "What happened to my father?"

    def test_no_synthesizer(self, engine):
        result = run_voice_turn(engine, b"...", FakeTranscriber("Hello"))
        assert result.audio is None


def _response(status_code=200, payload=None, content=b"", text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.content = content
    resp.text = text
    return resp


class TestWhisper:
    def test_transcribe(self):
        payload = {"text": " Hello there ", "segments": [{"avg_logprob": 0.0}, {"avg_logprob": 0.0}]}
        with patch("convsim.voice.speech.requests.post", return_value=_response(200, payload)) as post:
            result = WhisperTranscriber(api_key="k").transcribe(b"audio", "audio/webm")
        assert result.transcript == " Hello there "
        assert result.confidence == pytest.approx(1.0)
        filename, data, mime = post.call_args.kwargs["files"]["file"]
        assert filename == "audio.webm"
        assert mime == "audio/webm"

    def test_confidence_from_logprobs(self):
        payload = {"text": "hi", "segments": [{"avg_logprob": -0.5}, {"avg_logprob": -1.5}]}
        with patch("convsim.voice.speech.requests.post", return_value=_response(200, payload)):
            result = WhisperTranscriber(api_key="k").transcribe(b"audio")
        assert result.confidence == pytest.approx(0.3679, abs=1e-3)

    def test_http_error(self):
        with patch("convsim.voice.speech.requests.post", return_value=_response(500, text="boom")):
            with pytest.raises(SpeechServiceError) as exc_info:
                WhisperTranscriber(api_key="k").transcribe(b"audio")
        assert exc_info.value.status_code == 500

    def test_missing_key(self):
        with patch("convsim.voice.speech.env", return_value=""):
            with pytest.raises(SpeechServiceError, match="OPENAI_API_KEY"):
                WhisperTranscriber().transcribe(b"audio")


class TestElevenLabs:
    def test_synthesize(self):
        with patch("convsim.voice.speech.requests.post", return_value=_response(200, content=b"mp3")) as post:
            audio = ElevenLabsSynthesizer(api_key="k").synthesize(
                "Hello", "voice-123", VoiceSettings(stability=0.4, similarity_boost=0.8)
            )
        assert audio == b"mp3"
        assert post.call_args.args[0].endswith("/text-to-speech/voice-123")
        body = post.call_args.kwargs["json"]
        assert body["voice_settings"] == {"stability": 0.4, "similarity_boost": 0.8}

    def test_requires_voice_id(self):
        with pytest.raises(SpeechServiceError, match="voice_id"):
            ElevenLabsSynthesizer(api_key="k").synthesize("Hello", "", VoiceSettings())
