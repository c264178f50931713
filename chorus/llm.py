"""LLM client — HTTP connection to a text-generation backend.

Orchestration injects an LLM callable matching the protocol:

    async def __call__(self, messages, system_prompt=None, caller_id=None) -> str: ...

`messages` is a list of {"role": "user"|"assistant", "content": ...} dicts.
`caller_id` identifies who is calling ("orchestrator" for aggregated scene
prompts, a character id for per-character prompts). Implementations may use
it for logging or routing; the simplest ignore it.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports KoboldCpp and OpenAI-compatible
                 chat backends. Selected by provider_format.
    EchoLLM   — returns the last message back unchanged. Useful for
                 smoke-testing the wiring without a running model.

Production code constructs an HttpLLM from the settings store. Tests use
StubLLM (defined in conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

from chorus.errors import LLMError
from chorus.settings import SettingsStore

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        messages: list[ChatMessage],
        system_prompt: str | None = None,
        caller_id: str | None = None,
    ) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-generation backends.

    Supported formats:
      "koboldcpp"  — POST /api/v1/generate      {"prompt": ...}
                     Messages are flattened into one prompt string.
                     Response: {"results": [{"text": "..."}]}
      "openai"     — POST /v1/chat/completions  {"model": ..., "messages": [...]}
                     Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        settings:        Optional store; temperature and max_tokens are read
                         from it on every call.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        settings: SettingsStore | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._settings = settings

    @classmethod
    def from_settings(cls, settings: SettingsStore) -> "HttpLLM":
        s = settings.snapshot()
        return cls(
            provider_url=s.provider_url,
            api_key=s.api_key,
            provider_format=s.provider_format,
            model=s.model,
            timeout=s.timeout,
            settings=settings,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _sampling(self) -> dict:
        if self._settings is None:
            return {}
        return {
            "temperature": self._settings.get("temperature"),
            "max_tokens": self._settings.get("max_tokens"),
        }

    def _build_request(
        self, messages: list[ChatMessage], system_prompt: str | None
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        sampling = self._sampling()

        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            chat = list(messages)
            if system_prompt:
                chat.insert(0, {"role": "system", "content": system_prompt})
            body: dict = {"messages": chat, **sampling}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        body = {"prompt": flatten_prompt(messages, system_prompt)}
        if "temperature" in sampling:
            body["temperature"] = sampling["temperature"]
            body["max_length"] = sampling["max_tokens"]
        return url, body

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "content" not in (choices[0].get("message") or {}):
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"]["content"]

        # koboldcpp
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(
        self,
        messages: list[ChatMessage],
        system_prompt: str | None = None,
        caller_id: str | None = None,
    ) -> str:
        url, body = self._build_request(messages, system_prompt)
        logger.debug(
            "llm call caller=%s url=%s messages=%d system_len=%d",
            caller_id, url, len(messages), len(system_prompt or ""),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request to {url} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise LLMError("LLM backend returned an unexpected JSON payload")

        text = self._parse_response(data)
        logger.debug("llm response caller=%s len=%d", caller_id, len(text))
        return text


def flatten_prompt(messages: list[ChatMessage], system_prompt: str | None) -> str:
    """Render chat messages as a single completion prompt."""
    parts: list[str] = []
    if system_prompt:
        parts.append(system_prompt.strip())
    for m in messages:
        role = "User" if m["role"] == "user" else "Assistant"
        parts.append(f"{role}: {m['content']}")
    parts.append("Assistant:")
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# EchoLLM — returns the last message unchanged; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the last message's content as-is. No network calls.

    The output won't be a valid scene, so scene strategies fall back and the
    direct path echoes the user. Use StubLLM in tests when you need
    controlled responses.
    """

    async def __call__(
        self,
        messages: list[ChatMessage],
        system_prompt: str | None = None,
        caller_id: str | None = None,
    ) -> str:
        logger.debug("EchoLLM caller=%s messages=%d", caller_id, len(messages))
        return messages[-1]["content"] if messages else ""
