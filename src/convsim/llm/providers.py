"""
Model providers: the single text-generation capability the engine depends on.

    provider = create_provider("claude-3-5-haiku-latest", max_tokens=300)
    reply = provider.generate(prompt, provider.config)

Every backend reports failure the same way, by raising GenerationFailure.
Transport details (status codes, timeouts, rate limits) never leak past
this module.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from ..core.errors import GenerationFailure
from .client import ChatAPIError, ChatClient, env

logger = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# model-name prefix -> (base_url, api key env var); None uses the client's env defaults
OPENAI_COMPATIBLE_PREFIXES = {
    "mistral": (None, None),
    "open-mistral": (None, None),
    "ministral": (None, None),
    "gpt": ("https://api.openai.com/v1", "OPENAI_API_KEY"),
    "llama": ("https://api.groq.com/openai/v1", "GROQ_API_KEY"),
    "mixtral": ("https://api.groq.com/openai/v1", "GROQ_API_KEY"),
}


@dataclass
class GenerationConfig:
    max_tokens: int = 500
    temperature: float = 0.7


@dataclass
class Prompt:
    """
    System text plus the chat transcript to continue.

    ``messages`` use chat roles: "user" for the trainee, "assistant" for the
    persona. ``metadata`` carries plain hints (phase id, mood threshold) that
    offline providers can use; network backends ignore it.
    """
    system: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_chat(self) -> List[Dict[str, str]]:
        return [{"role": "system", "content": self.system}] + list(self.messages)


class ModelProvider(ABC):
    """Produces the persona's next line. Implementations must be thread-safe."""

    name = "base"

    def __init__(self, model: str, config: Optional[GenerationConfig] = None):
        self.model = model
        self.config = config or GenerationConfig()

    @abstractmethod
    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        """Return the reply text or raise GenerationFailure."""

    def _failure(self, message: str, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None) -> GenerationFailure:
        logger.warning(f"[{self.name}] Generation failed ({status_code}): {message}")
        return GenerationFailure(
            message,
            provider_name=self.name,
            status_code=status_code,
            original_error=original_error,
        )

    def _post_json(self, url: str, headers: Dict[str, str], body: Dict[str, Any],
                   timeout: float = 30.0) -> Dict[str, Any]:
        try:
            resp = requests.post(url, headers=headers, json=body, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise self._failure("Request timed out", 408, e) from e
        except requests.exceptions.ConnectionError as e:
            raise self._failure(f"Connection error: {e}", 0, e) from e

        if resp.status_code != 200:
            raise self._failure(resp.text[:300], resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise self._failure("Response was not JSON", resp.status_code, e) from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


# =============================================================================
# BACKENDS
# =============================================================================

class OpenAICompatibleProvider(ModelProvider):
    """Mistral, Groq, OpenAI and friends via /v1/chat/completions."""

    name = "openai-compatible"

    def __init__(
        self,
        model: str,
        config: Optional[GenerationConfig] = None,
        client: Optional[ChatClient] = None,
        base_url: Optional[str] = None,
        api_key_env: Optional[str] = None,
    ):
        super().__init__(model, config)
        self._client = client
        self._base_url = base_url
        self._api_key_env = api_key_env

    @property
    def client(self) -> ChatClient:
        # Built on first use so a missing key surfaces as a generation failure
        if self._client is None:
            self._client = ChatClient(
                base_url=self._base_url or "",
                model=self.model,
                api_key_env=self._api_key_env,
            )
        return self._client

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        config = config or self.config
        try:
            text = self.client.chat_completion(
                messages=prompt.as_chat(),
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
        except ChatAPIError as e:
            raise self._failure(str(e), e.status_code, e) from e
        if not text.strip():
            raise self._failure("Empty completion")
        return text.strip()


class AnthropicProvider(ModelProvider):
    """Claude models via the Messages API."""

    name = "anthropic"

    def __init__(self, model: str, config: Optional[GenerationConfig] = None,
                 api_key: str = "", timeout: float = 30.0):
        super().__init__(model, config)
        self.api_key = api_key
        self.timeout = timeout

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        config = config or self.config
        api_key = self.api_key or env("ANTHROPIC_API_KEY")
        if not api_key:
            raise self._failure("ANTHROPIC_API_KEY is not set", 401)

        body = {
            "model": self.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "system": prompt.system,
            "messages": _alternating(prompt.messages),
        }
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        data = self._post_json(ANTHROPIC_URL, headers, body, self.timeout)
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        ).strip()
        if not text:
            raise self._failure(f"No text in response (stop_reason={data.get('stop_reason')})")
        return text


class GeminiProvider(ModelProvider):
    """Gemini models via the generateContent REST endpoint."""

    name = "gemini"

    def __init__(self, model: str, config: Optional[GenerationConfig] = None,
                 api_key: str = "", timeout: float = 30.0):
        super().__init__(model, config)
        self.api_key = api_key
        self.timeout = timeout

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        config = config or self.config
        api_key = self.api_key or env("GEMINI_API_KEY")
        if not api_key:
            raise self._failure("GEMINI_API_KEY is not set", 401)

        contents = [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in _alternating(prompt.messages)
        ]
        body = {
            "systemInstruction": {"parts": [{"text": prompt.system}]},
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": config.max_tokens,
                "temperature": config.temperature,
            },
        }
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        data = self._post_json(GEMINI_URL.format(model=self.model), headers, body, self.timeout)

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise self._failure(f"No candidates returned ({reason})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts).strip()
        if not text:
            raise self._failure(f"Empty candidate (finishReason={candidates[0].get('finishReason')})")
        return text


class ScriptedProvider(ModelProvider):
    """
    Offline provider for demos and tests.

    With ``replies`` it cycles through them; otherwise it answers with a
    canned line matched to the persona's current mood threshold.
    """

    name = "scripted"

    CANNED = {
        "concerned": "Okay. I just want to understand what is going on.",
        "upset": "I hear you, but I still don't understand how this happened.",
        "angry": "That's not good enough. Somebody needs to explain this to me.",
        "hostile": "I'm done listening to excuses. I want to talk to someone in charge.",
    }

    def __init__(self, model: str = "scripted", config: Optional[GenerationConfig] = None,
                 replies: Optional[Sequence[str]] = None):
        super().__init__(model, config)
        self._replies = itertools.cycle(list(replies)) if replies else None

    def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> str:
        if self._replies is not None:
            return next(self._replies)
        threshold = prompt.metadata.get("threshold", "upset")
        return self.CANNED.get(threshold, self.CANNED["upset"])


def _alternating(messages: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    """Merge consecutive same-role turns and make sure the first turn is the user's."""
    merged: List[Dict[str, str]] = []
    for m in messages:
        if merged and merged[-1]["role"] == m["role"]:
            merged[-1] = {"role": m["role"], "content": merged[-1]["content"] + "\n" + m["content"]}
        else:
            merged.append({"role": m["role"], "content": m["content"]})
    if not merged or merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": "(The conversation begins.)"})
    return merged


# =============================================================================
# FACTORY
# =============================================================================

def create_provider(
    model: str,
    max_tokens: int = 500,
    temperature: float = 0.7,
) -> ModelProvider:
    """
    Build a provider for ``model``, chosen by the model-name prefix.

    Raises ValueError for a model no backend serves.
    """
    config = GenerationConfig(max_tokens=max_tokens, temperature=temperature)
    name = (model or "").strip()
    lowered = name.lower()

    if lowered == "scripted":
        return ScriptedProvider(config=config)
    if lowered.startswith("claude"):
        return AnthropicProvider(name, config)
    if lowered.startswith("gemini"):
        return GeminiProvider(name, config)
    for prefix, (base_url, key_env) in OPENAI_COMPATIBLE_PREFIXES.items():
        if lowered.startswith(prefix):
            return OpenAICompatibleProvider(name, config, base_url=base_url, api_key_env=key_env)

    raise ValueError(f"Unsupported model '{model}'")
