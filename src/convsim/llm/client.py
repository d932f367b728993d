"""
Client for OpenAI-compatible /chat/completions endpoints (Mistral, Groq,
OpenAI, Together, ...).

One client is bound to one endpoint and one model. Every failure, including
a 200 whose body is not a completion, comes out as ChatAPIError; the client
never switches to another vendor or model on its own.

Configure via environment variables (or a .env file):
    LLM_BASE_URL: endpoint base URL (default: Mistral)
    LLM_MODEL: default model name
    LLM_API_KEY / MISTRAL_API_KEY: key for the default endpoint
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.mistral.ai/v1"
DEFAULT_MODEL = "mistral-small-latest"
DEFAULT_KEY_VARS: Tuple[str, ...] = ("LLM_API_KEY", "MISTRAL_API_KEY")

# Statuses worth another attempt; 429 and other 4xx fail fast
RETRYABLE_STATUSES = (408, 500, 502, 503, 504)

# Reported when a 200 carries no usable completion
MALFORMED_STATUS = 502


class ChatAPIError(Exception):
    """The endpoint failed, or answered with something that is not a completion."""

    def __init__(self, status_code: int, message: str, retryable: bool = False):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(f"Chat API error {status_code}: {message}")


def load_dotenv() -> None:
    """Load the first .env file found into os.environ (only vars not already set)."""
    for parent in [Path.cwd()] + list(Path(__file__).resolve().parents):
        env_path = parent / ".env"
        if env_path.exists():
            for line in env_path.read_text().splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = (part.strip() for part in line.split("=", 1))
                if key and key not in os.environ:
                    os.environ[key] = value
            break


def env(name: str, default: str = "") -> str:
    """Read a setting from the environment, after loading .env."""
    load_dotenv()
    return os.environ.get(name, default).strip()


@dataclass
class ChatClient:
    """
    One OpenAI-compatible endpoint and model.

    ``api_key_env`` names the only variable the key may come from. Without
    it the default variables are tried in order. A missing key raises
    ChatAPIError(401) at construction.
    """

    base_url: str = ""
    model: str = ""
    api_key: str = ""
    api_key_env: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 2

    def __post_init__(self):
        self.base_url = (self.base_url or env("LLM_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.model = self.model or env("LLM_MODEL", DEFAULT_MODEL)
        if not self.api_key:
            self.api_key = self._resolve_api_key()

    def _resolve_api_key(self) -> str:
        # A vendor-specific variable never falls back to another vendor's key
        names = (self.api_key_env,) if self.api_key_env else DEFAULT_KEY_VARS
        for name in names:
            key = env(name)
            if key:
                return key
        raise ChatAPIError(401, f"No API key set (looked in {', '.join(names)})")

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    # -------------------------------------------------------------------------

    def _post(self, body: Dict[str, Any]) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            return requests.post(self.url, headers=headers, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise ChatAPIError(408, "Request timed out", retryable=True) from e
        except requests.exceptions.ConnectionError as e:
            raise ChatAPIError(0, f"Connection error: {e}", retryable=True) from e
        except requests.exceptions.RequestException as e:
            raise ChatAPIError(0, f"Request failed: {e}") from e

    @staticmethod
    def parse_completion(resp: requests.Response) -> str:
        """Assistant text from a 200 response, or ChatAPIError if there is none."""
        try:
            content = resp.json()["choices"][0]["message"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ChatAPIError(MALFORMED_STATUS, f"Malformed completion response: {e!r}") from e
        return content or ""

    def _complete_once(self, body: Dict[str, Any]) -> str:
        resp = self._post(body)
        if resp.status_code == 200:
            return self.parse_completion(resp)
        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After", "?")
            raise ChatAPIError(429, f"Rate limited (Retry-After: {retry_after}s)")
        raise ChatAPIError(
            resp.status_code,
            resp.text[:300],
            retryable=resp.status_code in RETRYABLE_STATUSES,
        )

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """
        Call /chat/completions and return the assistant's text.

        Timeouts, connection errors and 5xx are retried with exponential
        backoff up to ``max_retries`` times. Raises ChatAPIError.
        """
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        for attempt in range(self.max_retries):
            try:
                return self._complete_once(body)
            except ChatAPIError as e:
                if not e.retryable:
                    raise
                logger.warning(
                    f"[ChatClient] {e} (attempt {attempt + 1}/{self.max_retries + 1}), retrying"
                )
                time.sleep(2 ** attempt)
        return self._complete_once(body)
