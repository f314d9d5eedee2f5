"""Tests for chronicle.llm - HTTP providers and model routing."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from chronicle.errors import ConfigurationError, ProviderFailure
from chronicle.llm import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    _HttpProvider,
    build_provider,
    infer_provider,
    resolve_model,
)
from chronicle.models import ChatMessage


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


HISTORY = [
    ChatMessage(role="assistant", content="You wake in a cell."),
    ChatMessage(role="user", content="I look around."),
]

OPENAI_BODY = {
    "choices": [{"message": {"content": '{"ok": true}'}}],
    "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
}


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class TestOpenAIProvider:
    @pytest.fixture
    def llm(self) -> OpenAIProvider:
        return OpenAIProvider(model="gpt-4o-mini", api_key="sk-test")

    async def test_happy_path(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(OPENAI_BODY))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.complete("system", HISTORY, "act")
        assert result.text == '{"ok": true}'
        assert result.usage.total_tokens == 150

    async def test_posts_to_chat_completions(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(OPENAI_BODY))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.complete("system", [], "act")
        url = mock_post.call_args[0][0]
        assert url == "https://api.openai.com/v1/chat/completions"
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer sk-test"

    async def test_message_order_and_json_mode(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(OPENAI_BODY))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.complete("rules", HISTORY, "I attack", json_mode=True, temperature=0.3, max_tokens=500)
        body = mock_post.call_args.kwargs["json"]
        assert [m["role"] for m in body["messages"]] == ["system", "assistant", "user", "user"]
        assert body["messages"][-1]["content"] == "I attack"
        assert body["response_format"] == {"type": "json_object"}
        assert body["temperature"] == 0.3
        assert body["max_tokens"] == 500

    async def test_no_response_format_without_json_mode(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response(OPENAI_BODY))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.complete("system", [], "act")
        assert "response_format" not in mock_post.call_args.kwargs["json"]

    async def test_custom_base_url_trailing_slash(self) -> None:
        llm = OpenAIProvider(model="gpt-4o", api_key="k", base_url="http://localhost:8080/")
        mock_post = AsyncMock(return_value=_mock_response(OPENAI_BODY))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.complete("s", [], "u")
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    async def test_connect_error_raises_provider_failure(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="Cannot connect"):
                await llm.complete("s", [], "u")

    async def test_timeout_raises_provider_failure(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="timed out"):
                await llm.complete("s", [], "u")

    @pytest.mark.parametrize("error", [
        httpx.ReadError("connection reset"),
        httpx.RemoteProtocolError("peer closed connection"),
        httpx.WriteError("broken pipe"),
    ])
    async def test_transport_error_raises_provider_failure(
        self, llm: OpenAIProvider, error: httpx.HTTPError,
    ) -> None:
        mock_post = AsyncMock(side_effect=error)
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="request failed"):
                await llm.complete("s", [], "u")

    def test_base_provider_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            _HttpProvider(model="m", api_key="k")

    async def test_http_error_raises_provider_failure(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=429))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="HTTP 429"):
                await llm.complete("s", [], "u")

    async def test_malformed_response_raises_provider_failure(self, llm: OpenAIProvider) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"unexpected": "format"}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="Unexpected response"):
                await llm.complete("s", [], "u")

    async def test_empty_content_raises_provider_failure(self, llm: OpenAIProvider) -> None:
        body = {"choices": [{"message": {"content": "   "}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="no content"):
                await llm.complete("s", [], "u")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

class TestAnthropicProvider:
    async def test_request_shape_and_usage(self) -> None:
        llm = AnthropicProvider(model="claude-3-5-sonnet-20241022", api_key="ant-key")
        body = {
            "content": [{"type": "text", "text": "The torch gutters."}],
            "usage": {"input_tokens": 200, "output_tokens": 80},
        }
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.complete("narrate", HISTORY, "cues", max_tokens=1024)

        assert mock_post.call_args[0][0] == "https://api.anthropic.com/v1/messages"
        headers = mock_post.call_args.kwargs["headers"]
        assert headers["x-api-key"] == "ant-key"
        assert headers["anthropic-version"] == "2023-06-01"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["system"] == "narrate"
        assert sent["max_tokens"] == 1024
        assert [m["role"] for m in sent["messages"]] == ["assistant", "user", "user"]

        assert result.text == "The torch gutters."
        assert result.usage.prompt_tokens == 200
        assert result.usage.total_tokens == 280


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class TestGeminiProvider:
    async def test_leading_model_turns_dropped(self) -> None:
        llm = GeminiProvider(model="gemini-1.5-flash", api_key="g-key")
        body = {
            "candidates": [{"content": {"parts": [{"text": "{}"}]}}],
            "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 2, "totalTokenCount": 12},
        }
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.complete("rules", HISTORY, "act", json_mode=True)

        url = mock_post.call_args[0][0]
        assert url == "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"
        sent = mock_post.call_args.kwargs["json"]
        assert [c["role"] for c in sent["contents"]] == ["user", "user"]
        assert sent["generationConfig"]["responseMimeType"] == "application/json"
        assert sent["systemInstruction"]["parts"][0]["text"] == "rules"
        assert result.usage.total_tokens == 12


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class TestResolveModel:
    def test_mapped_model_with_system_secret(self) -> None:
        route = resolve_model("claude-3-5-sonnet", secrets={"anthropic": "ant"})
        assert route.provider == "anthropic"
        assert route.model == "claude-3-5-sonnet-20241022"
        assert route.api_key == "ant"
        assert not route.byok

    def test_byok_key_wins(self) -> None:
        route = resolve_model("gpt-4o", byok_keys={"openai": "user-key"}, secrets={"openai": "sys-key"})
        assert route.api_key == "user-key"
        assert route.byok

    def test_falls_back_to_openai_mini(self) -> None:
        route = resolve_model("gemini-3-flash", secrets={"openai": "sys-key"})
        assert route.provider == "openai"
        assert route.model == "gpt-4o-mini"
        assert route.ui_model == "gemini-3-flash"

    def test_no_key_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve_model("claude-3-5-sonnet", secrets={})

    def test_unknown_model_inferred_by_prefix(self) -> None:
        assert infer_provider("claude-next") == "anthropic"
        assert infer_provider("gemini-2.0-pro") == "google"
        assert infer_provider("mistral-large") == "openai"
        route = resolve_model("gemini-2.0-pro", secrets={"google": "g"})
        assert (route.provider, route.model) == ("google", "gemini-2.0-pro")

    def test_build_provider_matches_route(self) -> None:
        route = resolve_model("claude-3-5-sonnet", secrets={"anthropic": "ant"})
        provider = build_provider(route, base_urls={"anthropic": "http://proxy"})
        assert isinstance(provider, AnthropicProvider)
        assert provider.model == "claude-3-5-sonnet-20241022"
