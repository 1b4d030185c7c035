"""
Reasoning oracle clients (OpenAI, Anthropic, OpenAI-compatible HTTP, mock).

A client turns one prompt into one text completion. Clients do not retry and
do not parse: the protocol controller enforces the per-call timeout and owns
validation of the returned text.
"""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import OracleUnavailableError

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an autonomous leveraged futures trader. "
    "Reply with JSON only: either one ANALYZE request object or an array of trade decisions."
)


class ModelClient(ABC):
    """Abstract base class for reasoning oracle clients."""

    name = "base"

    @abstractmethod
    def complete(self, prompt: str, timeout: float) -> str:
        """
        Send ``prompt`` and return the raw text reply.

        Args:
            prompt: Fully rendered prompt
            timeout: Max time in seconds (advisory; the caller enforces it)

        Raises:
            OracleUnavailableError: transport or provider failure
        """


class OpenAIClient(ModelClient):
    """OpenAI chat completions client."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", base_url: Optional[str] = None,
                 temperature: float = 0.7):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"
        self.temperature = temperature

        # Lazy import to avoid requiring openai unless used
        try:
            from openai import OpenAI
            self.client = OpenAI(api_key=api_key, base_url=self.base_url)
        except ImportError:
            log.warning("openai package not installed - OpenAIClient will fail at runtime")
            self.client = None

    def complete(self, prompt: str, timeout: float) -> str:
        if not self.client:
            raise OracleUnavailableError("OpenAI client not initialized - install openai package")

        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.temperature,
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"OpenAI call failed after {elapsed*1000:.1f}ms: {e}")
            raise OracleUnavailableError(f"OpenAI call failed: {e}") from e

        elapsed = time.perf_counter() - start
        log.info(f"OpenAI call completed in {elapsed*1000:.1f}ms")
        return response.choices[0].message.content or ""


class AnthropicClient(ModelClient):
    """Anthropic messages API client."""

    name = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022", max_tokens: int = 4096,
                 temperature: float = 0.7):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        # Lazy import
        try:
            from anthropic import Anthropic
            self.client = Anthropic(api_key=api_key)
        except ImportError:
            log.warning("anthropic package not installed - AnthropicClient will fail at runtime")
            self.client = None

    def complete(self, prompt: str, timeout: float) -> str:
        if not self.client:
            raise OracleUnavailableError("Anthropic client not initialized - install anthropic package")

        start = time.perf_counter()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise OracleUnavailableError(f"Anthropic call failed: {e}") from e

        elapsed = time.perf_counter() - start
        log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")
        return "".join(getattr(block, "text", "") for block in response.content)


class OpenAICompatibleClient(ModelClient):
    """
    Plain HTTP client for OpenAI-compatible endpoints (DeepSeek, Grok, local
    servers). No SDK needed.
    """

    name = "openai_compatible"

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None,
                 temperature: float = 0.7, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self._session = session or requests.Session()

    def complete(self, prompt: str, timeout: float) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
        }

        start = time.perf_counter()
        try:
            response = self._session.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers, timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (requests_exceptions.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            elapsed = time.perf_counter() - start
            log.error(f"{self.base_url} call failed after {elapsed*1000:.1f}ms: {e}")
            raise OracleUnavailableError(f"HTTP oracle call failed: {e}") from e

        elapsed = time.perf_counter() - start
        log.info(f"{self.model} call completed in {elapsed*1000:.1f}ms")
        return content or ""


ScriptedReply = Union[str, BaseException, Callable[[str], str]]


class MockClient(ModelClient):
    """
    Scripted client for tests and dry runs.

    Each call pops the next scripted reply: a string is returned, an exception
    is raised, a callable receives the prompt. When the script runs out the
    ``default`` reply (an empty decision array) is used.
    """

    name = "mock"

    def __init__(self, responses: Optional[Iterable[ScriptedReply]] = None, default: str = "[]",
                 delay_seconds: float = 0.0):
        self._responses: Deque[ScriptedReply] = deque(responses or [])
        self.default = default
        self.delay_seconds = delay_seconds
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    def queue(self, *responses: ScriptedReply) -> None:
        with self._lock:
            self._responses.extend(responses)

    def complete(self, prompt: str, timeout: float) -> str:
        with self._lock:
            self.prompts.append(prompt)
            reply = self._responses.popleft() if self._responses else self.default

        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create the appropriate oracle client.

    Args:
        provider: "openai", "anthropic", "openai_compatible" or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: Additional provider-specific args

    Raises:
        ValueError: If provider is unknown or credentials are missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o-mini", base_url=kwargs.get("base_url"))

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022")

    elif provider == "openai_compatible":
        base_url = kwargs.get("base_url")
        if not base_url or not model:
            raise ValueError("openai_compatible requires base_url and model")
        return OpenAICompatibleClient(base_url=base_url, model=model, api_key=api_key)

    elif provider == "mock":
        return MockClient(responses=kwargs.get("responses"), default=kwargs.get("default", "[]"))

    else:
        raise ValueError(
            f"Unknown provider: {provider}. Use 'openai', 'anthropic', 'openai_compatible', or 'mock'"
        )


def create_model_client_from_config(oracle_cfg: Dict[str, Any]) -> ModelClient:
    """Build a client from an ``oracle`` config block; the key is read from the environment."""
    api_key_env = oracle_cfg.get("api_key_env")
    api_key = os.getenv(api_key_env) if api_key_env else None
    return create_model_client(
        provider=oracle_cfg.get("provider", "mock"),
        api_key=api_key,
        model=oracle_cfg.get("model"),
        base_url=oracle_cfg.get("base_url"),
    )
