"""LLM providers and model routing.

The pipeline talks to models only through the ``LLMProvider`` protocol:

    async def complete(system, history, user, *, json_mode, temperature,
                       max_tokens) -> Completion

Three HTTP implementations are provided, one per upstream API:

    OpenAIProvider     - POST /v1/chat/completions
    AnthropicProvider  - POST /v1/messages
    GeminiProvider     - POST /v1beta/models/{model}:generateContent

Which one serves a role is decided once, by ``resolve_model``, from the UI
model id plus the available credentials. ``build_provider`` turns the
resulting ``ModelRoute`` into a provider instance. Tests substitute a stub
provider with the same ``complete`` signature.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import httpx

from chronicle.errors import ConfigurationError, ProviderFailure
from chronicle.models import ChatMessage, TokenUsage

logger = logging.getLogger(__name__)

ProviderName = Literal["openai", "anthropic", "google"]


@dataclass
class Completion:
    text: str
    usage: TokenUsage


# ---------------------------------------------------------------------------
# Protocol - every provider must match this signature
# ---------------------------------------------------------------------------

class LLMProvider(Protocol):
    name: str
    model: str

    async def complete(
        self,
        system: str,
        history: list[ChatMessage],
        user: str,
        *,
        json_mode: bool = False,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> Completion: ...


# ---------------------------------------------------------------------------
# HTTP providers
# ---------------------------------------------------------------------------

class _HttpProvider(ABC):
    name = ""
    default_base_url = ""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def _build_request(
        self,
        system: str,
        history: list[ChatMessage],
        user: str,
        json_mode: bool,
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, dict]: ...

    @abstractmethod
    def _parse_response(self, data: dict) -> Completion: ...

    async def complete(
        self,
        system: str,
        history: list[ChatMessage],
        user: str,
        *,
        json_mode: bool = False,
        temperature: float = 0.5,
        max_tokens: int = 2000,
    ) -> Completion:
        url, body = self._build_request(system, history, user, json_mode, temperature, max_tokens)
        logger.debug(
            "llm call provider=%s model=%s prompt_len=%d history=%d",
            self.name, self.model, len(system) + len(user), len(history),
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ProviderFailure(f"Cannot connect to {self.name} at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise ProviderFailure(
                f"{self.name} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderFailure(f"{self.name} timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderFailure(f"{self.name} request failed: {e.__class__.__name__}") from e

        try:
            completion = self._parse_response(resp.json())
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderFailure(f"Unexpected response format from {self.name}") from e
        if not completion.text.strip():
            raise ProviderFailure(f"{self.name} returned no content")
        logger.debug(
            "llm response provider=%s len=%d tokens=%d",
            self.name, len(completion.text), completion.usage.total_tokens,
        )
        return completion


class OpenAIProvider(_HttpProvider):
    name = "openai"
    default_base_url = "https://api.openai.com"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _build_request(self, system, history, user, json_mode, temperature, max_tokens):
        messages = [{"role": "system", "content": system}]
        for msg in history:
            messages.append({
                "role": "user" if msg.role == "user" else "assistant",
                "content": msg.content,
            })
        messages.append({"role": "user", "content": user})
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return f"{self._base_url}/v1/chat/completions", body

    def _parse_response(self, data: dict) -> Completion:
        text = data["choices"][0]["message"].get("content") or ""
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
        )


class AnthropicProvider(_HttpProvider):
    name = "anthropic"
    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": self.api_version,
        }

    def _build_request(self, system, history, user, json_mode, temperature, max_tokens):
        messages = [
            {"role": "user" if msg.role == "user" else "assistant", "content": msg.content}
            for msg in history
        ]
        messages.append({"role": "user", "content": user})
        body = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": messages,
        }
        return f"{self._base_url}/v1/messages", body

    def _parse_response(self, data: dict) -> Completion:
        text = "".join(
            block.get("text", "") for block in data["content"] if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return Completion(
            text=text,
            usage=TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
        )


class GeminiProvider(_HttpProvider):
    name = "google"
    default_base_url = "https://generativelanguage.googleapis.com"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }

    def _build_request(self, system, history, user, json_mode, temperature, max_tokens):
        contents = [
            {"role": "user" if msg.role == "user" else "model", "parts": [{"text": msg.content}]}
            for msg in history
        ]
        # Gemini rejects a conversation that opens with a model turn
        while contents and contents[0]["role"] == "model":
            contents.pop(0)
        contents.append({"role": "user", "parts": [{"text": user}]})

        generation: dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
        }
        if json_mode:
            generation["responseMimeType"] = "application/json"
        body = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": contents,
            "generationConfig": generation,
        }
        return f"{self._base_url}/v1beta/models/{self.model}:generateContent", body

    def _parse_response(self, data: dict) -> Completion:
        parts = data["candidates"][0]["content"].get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        usage = data.get("usageMetadata") or {}
        return Completion(
            text=text,
            usage=TokenUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ),
        )


PROVIDERS: dict[str, type[_HttpProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GeminiProvider,
}


# ---------------------------------------------------------------------------
# Model routing
# ---------------------------------------------------------------------------

# UI model id → (provider, provider model id)
MODEL_ID_MAP: dict[str, tuple[ProviderName, str]] = {
    "claude-opus-4.5": ("anthropic", "claude-opus-4-5-20251101"),
    "claude-sonnet-3.5": ("anthropic", "claude-3-5-sonnet-20241022"),
    "claude-3-5-sonnet": ("anthropic", "claude-3-5-sonnet-20241022"),
    "gemini-3-flash": ("google", "gemini-1.5-flash"),
    "gemini-1.5-flash": ("google", "gemini-1.5-flash"),
    "gpt-4o-mini": ("openai", "gpt-4o-mini"),
    "gpt-4o": ("openai", "gpt-4o"),
}

FALLBACK_PROVIDER: ProviderName = "openai"
FALLBACK_MODEL = "gpt-4o-mini"

SECRET_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


@dataclass(frozen=True)
class ModelRoute:
    ui_model: str
    provider: ProviderName
    model: str
    api_key: str
    byok: bool = False


def infer_provider(model_id: str) -> ProviderName:
    lowered = model_id.lower()
    if lowered.startswith("claude"):
        return "anthropic"
    if lowered.startswith("gemini"):
        return "google"
    return "openai"


def resolve_model(
    ui_model: str,
    *,
    byok_keys: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> ModelRoute:
    """Pick provider, provider model id and credential for a UI model id.

    Credential order: the user's own key for that provider, then the system
    secret. When neither exists, fall back to the system OpenAI key with
    gpt-4o-mini. With no usable key at all, raise ConfigurationError.
    """
    byok_keys = byok_keys or {}
    secrets = secrets or {}
    provider, model = MODEL_ID_MAP.get(ui_model, (infer_provider(ui_model), ui_model))

    if byok_keys.get(provider):
        return ModelRoute(ui_model, provider, model, byok_keys[provider], byok=True)
    if secrets.get(provider):
        return ModelRoute(ui_model, provider, model, secrets[provider])
    if secrets.get(FALLBACK_PROVIDER):
        logger.warning(
            "no %s credential for %s, falling back to %s/%s",
            provider, ui_model, FALLBACK_PROVIDER, FALLBACK_MODEL,
        )
        return ModelRoute(ui_model, FALLBACK_PROVIDER, FALLBACK_MODEL, secrets[FALLBACK_PROVIDER])
    raise ConfigurationError(f"No API key available for model {ui_model!r} ({provider})")


def build_provider(
    route: ModelRoute,
    *,
    timeout: float = 120.0,
    base_urls: dict[str, str] | None = None,
) -> LLMProvider:
    cls = PROVIDERS[route.provider]
    return cls(
        model=route.model,
        api_key=route.api_key,
        base_url=(base_urls or {}).get(route.provider),
        timeout=timeout,
    )
