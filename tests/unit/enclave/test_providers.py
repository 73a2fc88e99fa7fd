"""Tests for upstream provider clients."""
import json

import httpx
import pytest

from enclave.providers import (
    AnthropicProvider,
    CustomProvider,
    MistralProvider,
    OpenAIProvider,
    ProviderAPIError,
    SimulatedProvider,
    get_provider_client,
)


def _transport(handler):
    """MockTransport that records requests."""
    requests = []

    def _handle(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(_handle), requests


OPENAI_BODY = {
    "model": "gpt-4o-mini-2024-07-18",
    "choices": [{"message": {"role": "assistant", "content": "pong"}}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
}


# =============================================================================
# OpenAI-compatible providers
# =============================================================================

class TestOpenAIProvider:
    """Tests for the chat-completions client."""

    @pytest.mark.asyncio
    async def test_request_shape(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=OPENAI_BODY))
        client = OpenAIProvider(transport=transport)

        await client.complete("sk-test-ABC", "ping", None, 64, 0.7)

        request = requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test-ABC"
        body = json.loads(request.content)
        assert body == {
            "model": "gpt-4o-mini",
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 64,
            "temperature": 0.7,
        }

    @pytest.mark.asyncio
    async def test_omits_temperature_when_unset(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=OPENAI_BODY))
        await OpenAIProvider(transport=transport).complete("sk", "ping", "gpt-4o", 64)
        assert "temperature" not in json.loads(requests[0].content)

    @pytest.mark.asyncio
    async def test_parses_response(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json=OPENAI_BODY))

        response = await OpenAIProvider(transport=transport).complete("sk", "ping", None, 64)

        assert response.content == "pong"
        assert response.model_used == "gpt-4o-mini-2024-07-18"
        assert response.usage == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}

    @pytest.mark.asyncio
    async def test_upstream_error_text_is_verbatim(self):
        error_body = '{"error": {"message": "Incorrect API key provided"}}'
        transport, _ = _transport(lambda r: httpx.Response(401, text=error_body))

        with pytest.raises(ProviderAPIError) as exc:
            await OpenAIProvider(transport=transport).complete("sk-bad", "ping", None, 64)

        assert str(exc.value) == f"OpenAI API error: {error_body}"

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def _fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport, _ = _transport(_fail)
        with pytest.raises(ProviderAPIError, match="connection refused"):
            await OpenAIProvider(transport=transport).complete("sk", "ping", None, 64)

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        transport, _ = _transport(lambda r: httpx.Response(200, json={"choices": []}))
        with pytest.raises(ProviderAPIError, match="unexpected response shape"):
            await OpenAIProvider(transport=transport).complete("sk", "ping", None, 64)

    @pytest.mark.asyncio
    async def test_mistral_endpoint(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=OPENAI_BODY))
        await MistralProvider(transport=transport).complete("sk", "ping", None, 64)
        assert requests[0].url.host == "api.mistral.ai"
        assert json.loads(requests[0].content)["model"] == "mistral-large-latest"

    @pytest.mark.asyncio
    async def test_custom_endpoint(self):
        transport, requests = _transport(lambda r: httpx.Response(200, json=OPENAI_BODY))
        await CustomProvider("https://llm.internal/v1/chat/completions", transport=transport).complete(
            "sk", "ping", "local", 64
        )
        assert str(requests[0].url) == "https://llm.internal/v1/chat/completions"

    def test_custom_requires_endpoint(self):
        with pytest.raises(ProviderAPIError, match="not configured"):
            CustomProvider("")


# =============================================================================
# Anthropic
# =============================================================================

class TestAnthropicProvider:
    """Tests for the messages API client."""

    @pytest.mark.asyncio
    async def test_request_and_response(self):
        body = {
            "model": "claude-3-opus-20240229",
            "content": [{"type": "text", "text": "po"}, {"type": "text", "text": "ng"}],
            "usage": {"input_tokens": 4, "output_tokens": 6},
        }
        transport, requests = _transport(lambda r: httpx.Response(200, json=body))

        response = await AnthropicProvider(transport=transport).complete("sk-ant-1", "ping", None, 32)

        request = requests[0]
        assert request.headers["x-api-key"] == "sk-ant-1"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in request.headers
        assert response.content == "pong"
        assert response.usage == {"prompt_tokens": 4, "completion_tokens": 6, "total_tokens": 10}

    @pytest.mark.asyncio
    async def test_error(self):
        transport, _ = _transport(lambda r: httpx.Response(529, text="overloaded"))
        with pytest.raises(ProviderAPIError, match="Anthropic API error: overloaded"):
            await AnthropicProvider(transport=transport).complete("sk", "ping", None, 32)


# =============================================================================
# Factory
# =============================================================================

class TestGetProviderClient:
    """Tests for provider selection by tag."""

    @pytest.mark.parametrize(
        "tag,cls",
        [("openai", OpenAIProvider), ("anthropic", AnthropicProvider), ("mistral", MistralProvider)],
    )
    def test_real_clients(self, tag, cls):
        assert isinstance(get_provider_client(tag), cls)

    def test_tag_is_case_insensitive(self):
        assert isinstance(get_provider_client("OpenAI"), OpenAIProvider)

    def test_custom_uses_endpoint(self):
        client = get_provider_client("custom", custom_endpoint="https://llm.internal/v1")
        assert isinstance(client, CustomProvider)
        assert client.endpoint == "https://llm.internal/v1"

    def test_simulated_mode(self):
        assert isinstance(get_provider_client("openai", mode="simulated"), SimulatedProvider)

    def test_unknown_provider(self):
        with pytest.raises(ProviderAPIError, match="Unsupported provider: cohere"):
            get_provider_client("cohere")

    def test_unknown_provider_rejected_in_simulated_mode(self):
        with pytest.raises(ProviderAPIError):
            get_provider_client("cohere", mode="simulated")
