"""
LLM provider implementations.

This module provides the provider interface used by ``LLMRunner`` and two
implementations:

- OpenAICompatibleProvider: any OpenAI-compatible chat-completions API
  (OpenAI itself, vLLM, llama.cpp server, LiteLLM proxies)
- StubLLMProvider: canned per-role replies for tests and offline runs
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections import deque
from typing import Any

import httpx
import structlog

from patchflow.config.settings import LLMConfig
from patchflow.exceptions import ConfigurationError, ProviderError
from patchflow.llm.types import LLMRequest, ProviderReply, TokenUsage

log = structlog.get_logger(__name__)

# Cents per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[int, int]] = {
    "gpt-4o": (250, 1000),
    "gpt-4o-mini": (15, 60),
    "gpt-4-turbo": (1000, 3000),
    "gpt-4": (3000, 6000),
    "gpt-3.5-turbo": (50, 150),
    "o1": (1500, 6000),
    "o1-mini": (300, 1200),
}
DEFAULT_PRICING = MODEL_PRICING["gpt-4o"]


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> int:
    """Estimated cost in cents, rounded up."""
    price_in, price_out = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return math.ceil(input_tokens / 1_000_000 * price_in + output_tokens / 1_000_000 * price_out)


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    A provider turns one ``LLMRequest`` into one ``ProviderReply``. It does
    not retry, validate or enforce budgets; ``LLMRunner`` does that.
    """

    name: str = "provider"

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model identifier reported in response metadata."""
        ...

    @abstractmethod
    async def call(self, request: LLMRequest) -> ProviderReply:
        """Send a request and return the raw completion.

        Raises:
            ProviderError: On transport or API failures
        """
        ...

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate, about four characters per token."""
        return math.ceil(len(text) / 4)

    async def close(self) -> None:
        """Release provider resources."""
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Provider for OpenAI-compatible chat-completions APIs.

    Attributes:
        base_url: The API base URL.
        api_key: Optional API key for authentication.
        model: Model requested in every call.
        timeout: Request timeout in seconds.

    Example:
        provider = OpenAICompatibleProvider(
            base_url="https://api.openai.com/v1",
            api_key="sk-...",  # pragma: allowlist secret
            model="gpt-4o-mini",
        )
        reply = await provider.call(request)
    """

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str = "http://localhost:8000/v1",
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def model_id(self) -> str:
        return self.model

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _get_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def call(self, request: LLMRequest) -> ProviderReply:
        """Send the request to ``/chat/completions``.

        Raises:
            ProviderError: On HTTP errors (with status code), timeouts,
                connection failures or OpenAI-style error bodies
        """
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers=self._get_headers(),
                json={
                    "model": self.model,
                    "messages": request.messages,
                    "temperature": request.temperature,
                    "max_tokens": request.budget.max_output_tokens,
                },
            )
            response.raise_for_status()
            result: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error("openai_chat_failed", status_code=status, model=self.model)
            raise ProviderError(
                f"Chat completion failed: {e.response.text[:200]}",
                status_code=status,
                role=str(request.role),
            ) from e
        except httpx.TimeoutException as e:
            log.error("openai_chat_timeout", model=self.model)
            raise ProviderError("Request timed out", role=str(request.role)) from e
        except httpx.HTTPError as e:
            log.error("openai_chat_failed", error=str(e), model=self.model)
            raise ProviderError(f"Request failed: {e}", role=str(request.role)) from e

        # Handle OpenAI-style error responses
        if "error" in result:
            error_msg = result["error"].get("message", "Unknown error")
            log.error("openai_chat_error", error=error_msg, model=self.model)
            raise ProviderError(f"OpenAI API error: {error_msg}", role=str(request.role))

        try:
            content = result["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Malformed chat completion response", role=str(request.role)) from e

        usage_data = result.get("usage") or {}
        input_tokens = usage_data.get("prompt_tokens", 0)
        output_tokens = usage_data.get("completion_tokens", 0)
        usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=usage_data.get("total_tokens", input_tokens + output_tokens),
            estimated_cost=estimate_cost(self.model, input_tokens, output_tokens),
        )
        return ProviderReply(raw_content=content, usage=usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


StubReply = str | Exception


class StubLLMProvider(LLMProvider):
    """Provider returning canned replies per role.

    A role maps to a single reply or a list of replies consumed in order (the
    last one repeats). Exceptions in the list are raised instead of returned.

    Example:
        provider = StubLLMProvider({"diagnoser": [ProviderError("busy", 503), '{"root_cause": "x"}']})
    """

    name = "stub"

    def __init__(
        self,
        responses: dict[str, StubReply | list[StubReply]] | None = None,
        default: str = "{}",
        model: str = "stub-model",
        cost_per_call: float = 0,
    ):
        self._responses = {
            role: deque(reply if isinstance(reply, list) else [reply]) for role, reply in (responses or {}).items()
        }
        self.default = default
        self.model = model
        self.cost_per_call = cost_per_call
        self.requests: list[LLMRequest] = []

    @property
    def model_id(self) -> str:
        return self.model

    def _next_reply(self, role: str) -> StubReply:
        queue = self._responses.get(role)
        if not queue:
            return self.default
        return queue.popleft() if len(queue) > 1 else queue[0]

    async def call(self, request: LLMRequest) -> ProviderReply:
        self.requests.append(request)
        reply = self._next_reply(str(request.role))
        if isinstance(reply, Exception):
            raise reply

        input_tokens = self.estimate_tokens("".join(m["content"] for m in request.messages))
        output_tokens = self.estimate_tokens(reply)
        usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost=self.cost_per_call,
        )
        return ProviderReply(raw_content=reply, usage=usage)


def create_provider(config: LLMConfig, client: httpx.AsyncClient | None = None) -> LLMProvider:
    """Create the provider named by ``config.provider``.

    Raises:
        ConfigurationError: If the provider type is not recognized
    """
    if config.provider == "openai-compatible":
        return OpenAICompatibleProvider(
            base_url=config.base_url,
            api_key=config.api_key,
            model=config.model,
            timeout=config.timeout_seconds,
            client=client,
        )
    if config.provider == "stub":
        return StubLLMProvider(model=config.model)
    raise ConfigurationError(f"Unknown LLM provider: {config.provider}. Supported: stub, openai-compatible")
