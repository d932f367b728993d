"""
Tests for the ConversationEngine orchestrator.

These verify the properties callers rely on:
- phase logic is deterministic for identical inputs
- objectives only ever accumulate within a phase
- branch triggers resolve in declaration order
- a serialized snapshot resumes exactly where the conversation left off
- a stalled phase still moves on
- a provider failure leaves the turn's state changes committed, whatever
  the provider raised

Uses scripted providers, so no real API calls are made.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from convsim.content.vignettes import MED_001
from convsim.core.engine import ConversationEngine, ConversationEngineConfig
from convsim.core.errors import (
    ConversationEnded,
    ConvSimError,
    GenerationFailure,
    InvalidResumeState,
)
from convsim.core.vignette import Vignette
from convsim.llm.client import ChatClient
from convsim.llm.providers import OpenAICompatibleProvider, ScriptedProvider

from conftest import RecordingProvider, fixed_clock

EXAMPLE_UTTERANCE = "I understand your frustration, let's look at the chart together"


def make_engine(vignette, provider=None, difficulty="intermediate", **kwargs):
    return ConversationEngine(ConversationEngineConfig(
        vignette=vignette,
        difficulty=difficulty,
        user_id="trainee-1",
        model_provider=provider or ScriptedProvider(),
        clock=fixed_clock,
        **kwargs,
    ))


class TestConstruction:
    def test_fresh_engine_starts_at_first_phase(self, vignette):
        engine = make_engine(vignette)
        state = engine.get_session_state()
        assert state.phase.current_phase_id == "intro"
        assert state.phase.message_count == 0
        assert state.emotional_state.value == pytest.approx(0.5)
        assert state.messages == []

    def test_initial_phase_id(self, vignette):
        engine = make_engine(vignette, initial_phase_id="escalation")
        assert engine.get_session_state().phase.current_phase_id == "escalation"

    def test_unknown_initial_phase(self, vignette):
        with pytest.raises(InvalidResumeState):
            make_engine(vignette, initial_phase_id="nowhere")

    def test_unsupported_difficulty(self, scenario_dict):
        scenario_dict["difficulty_levels"] = ["beginner"]
        v = Vignette.from_dict(scenario_dict)
        with pytest.raises(ValueError, match="not supported"):
            make_engine(v, difficulty="advanced")

    def test_prior_state_with_unknown_phase(self, vignette):
        prior = {"vignette_id": "TEST-001", "current_phase": {"current_phase_id": "gone"}}
        with pytest.raises(InvalidResumeState, match="gone"):
            make_engine(vignette, prior_phase_state=prior)

    def test_prior_state_with_foreign_objectives(self, vignette):
        prior = {"current_phase": {"current_phase_id": "intro", "objectives_completed": ["acknowledged_concern"]}}
        with pytest.raises(InvalidResumeState, match="not defined"):
            make_engine(vignette, prior_phase_state=prior)

    def test_prior_state_from_other_vignette(self, vignette):
        prior = {"vignette_id": "MED-001", "current_phase": {"current_phase_id": "intro"}}
        with pytest.raises(InvalidResumeState, match="MED-001"):
            make_engine(vignette, prior_phase_state=prior)

    def test_prior_state_with_unknown_branch_phase(self, vignette):
        prior = {
            "current_phase": {"current_phase_id": "escalation"},
            "branch_history": [{"phase_id": "escalation", "branch_trigger": "x", "from_phase_id": "lobby"}],
        }
        with pytest.raises(InvalidResumeState, match="lobby"):
            make_engine(vignette, prior_phase_state=prior)

    def test_initial_phase_disagrees_with_prior(self, vignette):
        prior = {"current_phase": {"current_phase_id": "escalation"}}
        with pytest.raises(InvalidResumeState, match="disagrees"):
            make_engine(vignette, prior_phase_state=prior, initial_phase_id="intro")

    def test_prior_state_difficulty_mismatch(self, vignette):
        prior = {"difficulty": "beginner", "current_phase": {"current_phase_id": "intro"}}
        with pytest.raises(InvalidResumeState, match="beginner"):
            make_engine(vignette, prior_phase_state=prior)

    def test_prior_state_without_mood_gets_initial(self, vignette):
        prior = {"current_phase": {"current_phase_id": "escalation"}}
        engine = make_engine(vignette, prior_phase_state=prior, difficulty="advanced")
        state = engine.get_session_state()
        assert state.emotional_state.value == pytest.approx(0.7)
        assert state.vignette_id == "TEST-001"
        assert state.difficulty == "advanced"


class TestTurns:
    def test_example_scenario(self, vignette):
        """Acknowledging the concern in escalation moves straight to resolution."""
        engine = make_engine(vignette, initial_phase_id="escalation")
        result = engine.process_user_message(EXAMPLE_UTTERANCE)

        assert result.current_phase == "resolution"
        state = engine.get_session_state()
        assert state.phase.current_phase_id == "resolution"
        assert len(state.branch_history) == 1
        assert state.branch_history[0].branch_trigger == "acknowledged"
        assert result.transition.from_phase_id == "escalation"
        assert result.newly_completed == ["acknowledged_concern"]

    def test_transition_and_empathy_soften_mood(self, vignette):
        engine = make_engine(vignette, initial_phase_id="escalation")
        result = engine.process_user_message(EXAMPLE_UTTERANCE)
        # empathy cue -0.10, transition shift -0.10
        assert result.emotional_state.value == pytest.approx(0.3)
        assert result.emotional_state.threshold == "concerned"

    def test_transcript_records_both_sides(self, vignette):
        provider = RecordingProvider(replies=["Who are you?"])
        engine = make_engine(vignette, provider)
        result = engine.process_user_message("Hello")

        assert result.response == "Who are you?"
        messages = engine.get_session_state().messages
        assert [(m.message_id, m.role, m.text) for m in messages] == [
            ("msg-1", "trainee", "Hello"),
            ("msg-2", "persona", "Who are you?"),
        ]
        assert messages[0].phase_id == "intro"

    def test_prompt_uses_new_phase(self, vignette):
        """The reply is generated for the phase entered this turn."""
        provider = RecordingProvider()
        engine = make_engine(vignette, provider, initial_phase_id="escalation")
        engine.process_user_message(EXAMPLE_UTTERANCE)
        prompt = provider.prompts[-1]
        assert prompt.metadata["phase_id"] == "resolution"
        assert prompt.messages[-1] == {"role": "user", "content": EXAMPLE_UTTERANCE}

    def test_generation_config_from_vignette(self, scenario_dict):
        scenario_dict["max_response_length"] = 120
        scenario_dict["temperature"] = 0.3

        class ConfigCapture(RecordingProvider):
            def generate(self, prompt, config=None):
                self.config_seen = config
                return "ok"

        provider = ConfigCapture()
        make_engine(Vignette.from_dict(scenario_dict), provider).process_user_message("Hello")
        assert provider.config_seen.max_tokens == 120
        assert provider.config_seen.temperature == 0.3

    def test_length_guidance_matches_token_limit(self, scenario_dict):
        """The persona is told the same token budget the provider enforces."""
        scenario_dict["max_response_length"] = 120
        provider = RecordingProvider()
        make_engine(Vignette.from_dict(scenario_dict), provider).process_user_message("Hello")
        system = provider.prompts[-1].system
        assert "within about 120 tokens" in system
        assert "characters" not in system

    def test_objectives_accumulate(self):
        """Objectives met earlier in a phase stay met on later turns."""
        engine = make_engine(Vignette.from_dict(MED_001))
        engine.process_user_message("Hi, my name is Dr. Lee.")
        engine.process_user_message("Okay.")
        state = engine.get_session_state()
        assert state.phase.current_phase_id == "opening"
        assert state.phase.objectives_completed == ["introduced_self"]

        result = engine.process_user_message("There is something serious we need to discuss.")
        assert result.transition.to_phase_id == "disclosure"
        assert result.newly_completed == ["acknowledged_seriousness"]
        assert engine.get_session_state().objective_history["opening"] == [
            "introduced_self", "acknowledged_seriousness"
        ]

    def test_stall_moves_conversation_on(self, vignette):
        engine = make_engine(vignette)
        for _ in range(2):
            assert engine.process_user_message("okay").transition is None
        result = engine.process_user_message("okay")
        assert result.transition.trigger_id == "stall"
        assert result.current_phase == "escalation"

    def test_terminal_phase_skips_generation(self, vignette):
        provider = RecordingProvider()
        engine = make_engine(vignette, provider, initial_phase_id="resolution")
        result = engine.process_user_message("We will follow up tomorrow morning.")

        assert result.ended
        assert result.end_reason == "objectives_complete"
        assert result.response == ""
        assert provider.prompts == []
        assert engine.get_session_state().ended

    def test_no_turns_after_end(self, vignette):
        engine = make_engine(vignette, initial_phase_id="resolution")
        engine.process_user_message("We will follow up tomorrow morning.")
        with pytest.raises(ConversationEnded):
            engine.process_user_message("Anything else?")

    def test_assessment_scores_in_state(self, vignette):
        engine = make_engine(vignette)
        result = engine.process_user_message("I understand. I'm sorry, that must be hard.")
        assert set(result.assessment) == {"empathy", "clarity", "accountability", "overall"}
        assert engine.get_session_state().assessment_scores == result.assessment
        assert engine.get_assessment().dimensions["empathy"].score > 0.5

    def test_progress(self, vignette):
        engine = make_engine(vignette)
        assert engine.get_progress() == 0.0
        engine.process_user_message("my name is Sam")
        assert engine.get_progress() == pytest.approx(0.35)

    def test_snapshot_is_a_copy(self, vignette):
        engine = make_engine(vignette)
        engine.process_user_message("Hello")
        snapshot = engine.get_session_state()
        snapshot.messages.clear()
        snapshot.phase.current_phase_id = "resolution"
        state = engine.get_session_state()
        assert len(state.messages) == 2
        assert state.phase.current_phase_id == "intro"

    def test_update_conversation_history(self, vignette):
        engine = make_engine(vignette)
        engine.update_conversation_history([
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Are you the doctor?"},
        ])
        state = engine.get_session_state()
        assert [m.role for m in state.messages] == ["trainee", "persona"]
        assert state.phase.message_count == 0
        engine.process_user_message("Yes")
        assert engine.get_session_state().messages[2].message_id == "msg-3"


class TestDeterminism:
    UTTERANCES = ["Hello, my name is Dr. Lee.", "okay", EXAMPLE_UTTERANCE, "We'll follow up tomorrow."]

    def test_same_inputs_same_state(self, vignette):
        a, b = make_engine(vignette), make_engine(vignette)
        for text in self.UTTERANCES:
            a.process_user_message(text)
            b.process_user_message(text)
        assert a.get_session_state().to_dict() == b.get_session_state().to_dict()

    def test_resume_matches_continuous_run(self, vignette):
        """Serializing after each turn and resuming gives the same conversation."""
        continuous = make_engine(vignette)
        for text in self.UTTERANCES:
            continuous.process_user_message(text)

        payload = None
        for text in self.UTTERANCES:
            prior = json.loads(payload) if payload else None
            engine = make_engine(vignette, prior_phase_state=prior)
            engine.process_user_message(text)
            payload = json.dumps(engine.get_session_state().to_dict())

        assert json.loads(payload) == continuous.get_session_state().to_dict()

    def test_resume_from_session_state_object(self, vignette):
        a = make_engine(vignette)
        a.process_user_message("Hello, my name is Dr. Lee.")
        b = make_engine(vignette, prior_phase_state=a.get_session_state())
        assert b.get_session_state() == a.get_session_state()


class TestFailureIsolation:
    def test_failure_commits_turn_state(self, vignette, failing_provider):
        ok = make_engine(vignette, initial_phase_id="escalation")
        ok.process_user_message(EXAMPLE_UTTERANCE)
        expected = ok.get_session_state().to_dict()

        broken = make_engine(vignette, failing_provider, initial_phase_id="escalation")
        with pytest.raises(GenerationFailure) as exc_info:
            broken.process_user_message(EXAMPLE_UTTERANCE)

        committed = exc_info.value.session_state
        for key in ("current_phase", "branch_history", "emotional_state", "objective_history"):
            assert committed[key] == expected[key]
        # Only the persona reply is missing
        assert committed["messages"] == expected["messages"][:-1]
        assert broken.get_session_state().to_dict() == committed

    def test_retry_generation_completes_turn(self, vignette, failing_provider):
        ok = make_engine(vignette, initial_phase_id="escalation")
        ok.process_user_message(EXAMPLE_UTTERANCE)

        broken = make_engine(vignette, failing_provider, initial_phase_id="escalation")
        with pytest.raises(GenerationFailure) as exc_info:
            broken.process_user_message(EXAMPLE_UTTERANCE)

        retry = make_engine(vignette, prior_phase_state=exc_info.value.session_state)
        result = retry.retry_generation()
        assert result.response
        assert result.transition is None
        assert retry.get_session_state().to_dict() == ok.get_session_state().to_dict()

    def test_retry_without_pending_turn(self, vignette):
        engine = make_engine(vignette)
        with pytest.raises(ConvSimError, match="retry"):
            engine.retry_generation()

    def test_failure_is_retryable_in_place(self, vignette, failing_provider):
        engine = make_engine(vignette, failing_provider)
        with pytest.raises(GenerationFailure):
            engine.process_user_message("Hello")
        assert engine.get_session_state().awaiting_reply
        engine.provider = ScriptedProvider(replies=["Finally, someone."])
        assert engine.retry_generation().response == "Finally, someone."
        assert failing_provider.calls == 1

    def test_malformed_completion_is_a_generation_failure(self, vignette):
        """A 200 with no completion still yields a retryable, committed turn."""
        provider = OpenAICompatibleProvider(
            "mistral-small-latest",
            client=ChatClient(api_key="k", base_url="https://llm.example.test/v1", max_retries=0),
        )
        engine = make_engine(vignette, provider)
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"choices": []}
        with patch("convsim.llm.client.requests.post", return_value=resp):
            with pytest.raises(GenerationFailure) as exc_info:
                engine.process_user_message("Hi, my name is Dr. Lee")

        committed = exc_info.value.session_state
        assert committed["current_phase"]["current_phase_id"] == "escalation"
        assert len(committed["messages"]) == 1

    def test_unexpected_provider_error_is_wrapped(self, vignette):
        provider = ScriptedProvider()
        engine = make_engine(vignette, provider)
        with patch.object(provider, "generate", side_effect=RuntimeError("boom")):
            with pytest.raises(GenerationFailure) as exc_info:
                engine.process_user_message("Hello")

        failure = exc_info.value
        assert isinstance(failure.original_error, RuntimeError)
        assert failure.provider_name == "scripted"
        assert failure.session_state == engine.get_session_state().to_dict()
        assert engine.get_session_state().awaiting_reply


class TestImplicitPhaseAdvance:
    def test_completed_middle_phase_moves_on(self):
        chain = Vignette.from_dict({
            "id": "CHAIN",
            "ai_model": "scripted",
            "persona": {"name": "Sam"},
            "phases": [
                {"id": "a", "objectives": [{"id": "greeted", "description": "Greet", "keywords": ["hello"]}]},
                {"id": "b"},
                {"id": "c"},
            ],
        })
        engine = make_engine(chain)
        result = engine.process_user_message("hello there")
        assert not result.ended
        assert result.current_phase == "b"
        assert result.transition.trigger_id == "objectives_complete"
        assert result.response

    def test_loop_back_does_not_reuse_earlier_turns(self, vignette):
        engine = make_engine(vignette)
        engine.process_user_message("Hi, my name is Dr. Lee")
        assert engine.process_user_message("Let's check the chart").current_phase == "intro"
        result = engine.process_user_message("okay")
        assert result.current_phase == "intro"
        assert result.newly_completed == []

    def test_resume_rejects_entry_point_past_transcript(self, vignette):
        prior = {"current_phase": {"current_phase_id": "intro", "entered_at": 3}, "messages": []}
        with pytest.raises(InvalidResumeState, match="entered_at"):
            make_engine(vignette, prior_phase_state=prior)
