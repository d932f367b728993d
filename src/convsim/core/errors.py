"""
Exception taxonomy for the conversation simulation engine.

    VignetteError       — malformed scenario data, raised at load time
    InvalidResumeState  — caller-supplied phase/prior state does not fit the vignette
    GenerationFailure   — the model backend failed or timed out (retryable)
    ConversationEnded   — a turn was submitted after the terminal state
    AmbiguousSentiment  — internal to the emotional tracker, never surfaced
    EmptyTranscript     — caller-side voice rejection before the engine runs
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConvSimError(Exception):
    """Base class for all engine errors."""


class VignetteError(ConvSimError):
    """Raised when a vignette definition is structurally invalid."""

    def __init__(self, vignette_id: str, message: str):
        self.vignette_id = vignette_id
        super().__init__(f"Vignette {vignette_id or '<unknown>'}: {message}")


class InvalidResumeState(ConvSimError):
    """Raised when a resume point does not match the bound vignette."""

    def __init__(self, message: str, phase_id: Optional[str] = None):
        self.phase_id = phase_id
        super().__init__(message)


class GenerationFailure(ConvSimError):
    """
    Raised when the model provider cannot produce a reply.

    By the time this propagates out of the engine, the turn's objective,
    branch and emotion updates are already committed; ``session_state``
    holds that snapshot (as a dict) so the caller can retry generation alone.
    """

    def __init__(
        self,
        message: str,
        provider_name: str = "unknown",
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        self.provider_name = provider_name
        self.status_code = status_code
        self.original_error = original_error
        self.session_state: Optional[Dict[str, Any]] = None
        super().__init__(f"[{provider_name}] {message}")


class ConversationEnded(ConvSimError):
    """A trainee turn arrived after the conversation reached its terminal state."""


class AmbiguousSentiment(ConvSimError):
    """Tone of an utterance could not be classified with confidence."""


class EmptyTranscript(ConvSimError):
    """Speech-to-text produced no usable text."""
