"""Tests for patchflow/llm/backends.py - LLM providers."""

import json

import httpx
import pytest

from patchflow.config.settings import LLMConfig, TokenBudget
from patchflow.exceptions import ProviderError
from patchflow.llm.backends import (
    OpenAICompatibleProvider,
    StubLLMProvider,
    create_provider,
    estimate_cost,
)
from patchflow.llm.types import AgentRole, LLMRequest


@pytest.fixture
def request_obj():
    """A minimal coder request."""
    return LLMRequest(
        role=AgentRole.CODER,
        prompt_version="v1",
        messages=[{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
        budget=TokenBudget(max_output_tokens=256),
        temperature=0.2,
    )


def make_provider(handler, **kwargs) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleProvider(
        base_url="http://llm.local/v1/",
        api_key="sk-test",  # pragma: allowlist secret
        model="gpt-4o-mini",
        client=client,
        **kwargs,
    )


def chat_body(content: str, prompt_tokens: int = 12, completion_tokens: int = 8) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


class TestEstimateCost:
    def test_known_model(self):
        assert estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000) == 75

    def test_unknown_model_uses_default_pricing(self):
        assert estimate_cost("mystery-model", 1000, 1000) == 2

    def test_rounds_up(self):
        assert estimate_cost("gpt-4o-mini", 1, 0) == 1

    def test_zero_tokens(self):
        assert estimate_cost("gpt-4o", 0, 0) == 0


class TestOpenAICompatibleProvider:
    """Tests for OpenAICompatibleProvider.call."""

    @pytest.mark.asyncio
    async def test_successful_call(self, request_obj):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=chat_body("hello"))

        provider = make_provider(handler)

        reply = await provider.call(request_obj)

        assert reply.raw_content == "hello"
        assert reply.usage.input_tokens == 12
        assert reply.usage.output_tokens == 8
        assert reply.usage.total_tokens == 20
        assert reply.usage.estimated_cost == 1
        assert seen["url"] == "http://llm.local/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"] == {
            "model": "gpt-4o-mini",
            "messages": request_obj.messages,
            "temperature": 0.2,
            "max_tokens": 256,
        }

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self, request_obj):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=chat_body("ok"))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAICompatibleProvider(base_url="http://llm.local/v1", client=client)

        await provider.call(request_obj)

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_rate_limited(self, request_obj):
        provider = make_provider(lambda request: httpx.Response(429, text="slow down"))

        with pytest.raises(ProviderError) as exc_info:
            await provider.call(request_obj)

        assert exc_info.value.status_code == 429
        assert "slow down" in exc_info.value.message
        assert exc_info.value.role == "coder"

    @pytest.mark.asyncio
    async def test_error_body(self, request_obj):
        provider = make_provider(
            lambda request: httpx.Response(200, json={"error": {"message": "model not loaded"}})
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.call(request_obj)

        assert exc_info.value.message == "OpenAI API error: model not loaded"

    @pytest.mark.asyncio
    async def test_malformed_body(self, request_obj):
        provider = make_provider(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderError) as exc_info:
            await provider.call(request_obj)

        assert exc_info.value.message == "Malformed chat completion response"

    @pytest.mark.asyncio
    async def test_timeout(self, request_obj):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        provider = make_provider(handler)

        with pytest.raises(ProviderError) as exc_info:
            await provider.call(request_obj)

        assert exc_info.value.message == "Request timed out"

    @pytest.mark.asyncio
    async def test_connection_error(self, request_obj):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(handler)

        with pytest.raises(ProviderError) as exc_info:
            await provider.call(request_obj)

        assert exc_info.value.message.startswith("Request failed:")

    @pytest.mark.asyncio
    async def test_null_content_becomes_empty(self, request_obj):
        body = chat_body("")
        body["choices"][0]["message"]["content"] = None
        provider = make_provider(lambda request: httpx.Response(200, json=body))

        reply = await provider.call(request_obj)

        assert reply.raw_content == ""

    @pytest.mark.asyncio
    async def test_close(self, request_obj):
        provider = make_provider(lambda request: httpx.Response(200, json=chat_body("ok")))
        client = provider.client

        await provider.close()

        assert client.is_closed
        assert provider._client is None


class TestStubLLMProvider:
    @pytest.mark.asyncio
    async def test_replies_in_order_and_last_repeats(self, request_obj):
        provider = StubLLMProvider({"coder": ["first", "second"]})

        replies = [(await provider.call(request_obj)).raw_content for _ in range(3)]

        assert replies == ["first", "second", "second"]
        assert len(provider.requests) == 3

    @pytest.mark.asyncio
    async def test_default_reply(self, request_obj):
        provider = StubLLMProvider(default='{"ok": true}')

        reply = await provider.call(request_obj)

        assert reply.raw_content == '{"ok": true}'

    @pytest.mark.asyncio
    async def test_exception_entries_are_raised(self, request_obj):
        provider = StubLLMProvider({"coder": [ProviderError("busy", 503), "ok"]})

        with pytest.raises(ProviderError):
            await provider.call(request_obj)
        assert (await provider.call(request_obj)).raw_content == "ok"

    def test_estimate_tokens(self):
        assert StubLLMProvider().estimate_tokens("abcde") == 2


class TestCreateProvider:
    def test_stub(self):
        provider = create_provider(LLMConfig(model="local-model"))

        assert isinstance(provider, StubLLMProvider)
        assert provider.model_id == "local-model"

    def test_openai_compatible(self):
        config = LLMConfig(
            provider="openai-compatible",
            base_url="https://api.example.com/v1/",
            api_key="sk-x",  # pragma: allowlist secret
            model="gpt-4o",
            timeout_seconds=5,
        )

        provider = create_provider(config)

        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.base_url == "https://api.example.com/v1"
        assert provider.timeout == 5
        assert provider.model_id == "gpt-4o"
