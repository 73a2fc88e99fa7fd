"""
Upstream AI provider clients used by the oracle inside the TEE.

Each provider has its own request/response shape; the oracle only sees
ProviderClient.complete(). Adding a provider means adding one subclass and
one entry in PROVIDER_CLIENTS.

The decrypted credential is passed per call and is never stored on the
client instance.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Type

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class ProviderAPIError(Exception):
    """Raised when an upstream provider call fails. Carries the upstream text verbatim."""

    pass


@dataclass
class ProviderResponse:
    """Normalized upstream completion."""

    content: str
    model_used: str
    usage: Dict[str, int] = field(default_factory=dict)


def _normalize_usage(prompt_tokens: int, completion_tokens: int) -> Dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


class ProviderClient(ABC):
    """Capability to run a single-turn completion against an upstream API."""

    name: str = ""
    endpoint: str = ""
    default_model: str = ""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._transport = transport

    @abstractmethod
    async def complete(
        self,
        credential: str,
        prompt: str,
        model: Optional[str],
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> ProviderResponse:
        """Send the prompt upstream and return the normalized completion."""
        pass

    async def _post(self, url: str, headers: Dict[str, str], payload: dict) -> dict:
        """POST JSON and return the decoded body, mapping failures to ProviderAPIError."""
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise ProviderAPIError(f"{self.name} API error: {e}") from e

            if response.status_code >= 400:
                raise ProviderAPIError(f"{self.name} API error: {response.text}")

            try:
                return response.json()
            except ValueError as e:
                raise ProviderAPIError(f"{self.name} API error: invalid JSON response") from e


class OpenAICompatibleProvider(ProviderClient):
    """Chat-completions style API with bearer auth."""

    async def complete(self, credential, prompt, model, max_tokens, temperature=None):
        payload = {
            "model": model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            payload["temperature"] = temperature

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential}",
        }
        data = await self._post(self.endpoint, headers, payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderAPIError(f"{self.name} API error: unexpected response shape") from e

        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            model_used=data.get("model", payload["model"]),
            usage=_normalize_usage(
                int(usage.get("prompt_tokens", 0)),
                int(usage.get("completion_tokens", 0)),
            ),
        )


class OpenAIProvider(OpenAICompatibleProvider):
    name = "OpenAI"
    endpoint = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4o-mini"


class MistralProvider(OpenAICompatibleProvider):
    name = "Mistral"
    endpoint = "https://api.mistral.ai/v1/chat/completions"
    default_model = "mistral-large-latest"


class CustomProvider(OpenAICompatibleProvider):
    """Any OpenAI-compatible endpoint configured by URL."""

    name = "Custom"
    default_model = "default"

    def __init__(self, endpoint: str, timeout: float = DEFAULT_TIMEOUT, transport=None):
        super().__init__(timeout=timeout, transport=transport)
        if not endpoint:
            raise ProviderAPIError("Custom provider endpoint is not configured")
        self.endpoint = endpoint


class AnthropicProvider(ProviderClient):
    name = "Anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"
    default_model = "claude-3-opus-20240229"
    api_version = "2023-06-01"

    async def complete(self, credential, prompt, model, max_tokens, temperature=None):
        payload = {
            "model": model or self.default_model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if temperature is not None:
            payload["temperature"] = temperature

        headers = {
            "Content-Type": "application/json",
            "x-api-key": credential,
            "anthropic-version": self.api_version,
        }
        data = await self._post(self.endpoint, headers, payload)

        try:
            content = "".join(
                block.get("text", "") for block in data["content"] if block.get("type", "text") == "text"
            )
        except (KeyError, TypeError) as e:
            raise ProviderAPIError(f"{self.name} API error: unexpected response shape") from e

        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            model_used=data.get("model", payload["model"]),
            usage=_normalize_usage(
                int(usage.get("input_tokens", 0)),
                int(usage.get("output_tokens", 0)),
            ),
        )


class SimulatedProvider(ProviderClient):
    """Canned replies for demos and tests. Makes no network calls."""

    name = "Simulated"
    default_model = "simulated"

    def __init__(self, reply: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self._reply = reply

    async def complete(self, credential, prompt, model, max_tokens, temperature=None):
        model_name = model or self.default_model
        content = self._reply or (
            f"[Simulated] Your prompt ({len(prompt)} chars) would be answered by "
            f"{model_name} inside a Trusted Execution Environment."
        )
        return ProviderResponse(
            content=content,
            model_used=f"{model_name} (simulated)",
            usage=_normalize_usage(len(prompt) // 4, len(content) // 4),
        )


PROVIDER_CLIENTS: Dict[str, Type[ProviderClient]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "mistral": MistralProvider,
    "custom": CustomProvider,
}


def get_provider_client(
    provider: str,
    mode: str = "real",
    timeout: float = DEFAULT_TIMEOUT,
    custom_endpoint: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderClient:
    """
    Resolve a provider client by tag.

    Args:
        provider: "openai", "anthropic", "mistral" or "custom"
        mode: "real" to call the upstream API, "simulated" for canned replies
        timeout: Request timeout in seconds
        custom_endpoint: Endpoint URL for the "custom" provider
        transport: Optional httpx transport (tests)

    Raises:
        ProviderAPIError: If the provider tag is unknown
    """
    key = provider.lower()
    if key not in PROVIDER_CLIENTS:
        raise ProviderAPIError(f"Unsupported provider: {provider}")

    if mode == "simulated":
        return SimulatedProvider(timeout=timeout, transport=transport)

    if key == "custom":
        return CustomProvider(custom_endpoint, timeout=timeout, transport=transport)
    return PROVIDER_CLIENTS[key](timeout=timeout, transport=transport)
