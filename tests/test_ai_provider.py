"""Tests for the AI provider implementations."""

import json

import httpx
import numpy as np
import pytest

from cognitive_workflow.core.ai_provider import HashingEmbeddingProvider, HttpAIProvider
from cognitive_workflow.core.exceptions import ProviderError


def http_provider(handler):
    """HttpAIProvider whose client is served by ``handler``."""
    client = httpx.AsyncClient(base_url="https://ai.test/v1", transport=httpx.MockTransport(handler))
    return HttpAIProvider("https://ai.test/v1", api_key="secret", client=client)


class TestHttpAIProvider:
    """OpenAI-compatible request and response handling."""

    async def test_embed_parses_vector_and_usage(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={
                "data": [{"embedding": [0.1, 0.2, 0.3]}],
                "usage": {"prompt_tokens": 4},
            })

        provider = http_provider(handler)
        response = await provider.embed("hello there")
        await provider.aclose()

        assert response.vector == [0.1, 0.2, 0.3]
        assert response.token_usage.prompt_tokens == 4
        assert seen == [{"model": "text-embedding-3-small", "input": "hello there"}]

    async def test_complete_sends_messages_and_json_format(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "{\"ok\": true}"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 2},
            })

        provider = http_provider(handler)
        response = await provider.complete(
            "Classify this",
            context={"system_prompt": "You classify.", "response_format": "json"},
            model="small-model",
        )

        assert response.value == "{\"ok\": true}"
        assert response.token_usage.total_tokens == 12
        assert seen[0]["model"] == "small-model"
        assert seen[0]["messages"][0] == {"role": "system", "content": "You classify."}
        assert seen[0]["response_format"] == {"type": "json_object"}

    @pytest.mark.parametrize("status_code,transient", [(429, True), (503, True), (400, False), (401, False)])
    async def test_http_errors_carry_transience(self, status_code, transient):
        provider = http_provider(lambda request: httpx.Response(status_code, json={"error": "nope"}))

        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("text")

        assert exc_info.value.transient is transient
        assert exc_info.value.details["status_code"] == status_code

    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError) as exc_info:
            await http_provider(handler).embed("text")

        assert exc_info.value.transient is True

    async def test_malformed_response(self):
        provider = http_provider(lambda request: httpx.Response(200, json={"unexpected": []}))

        with pytest.raises(ProviderError) as exc_info:
            await provider.embed("text")

        assert exc_info.value.transient is False


class TestHashingEmbeddingProvider:
    """Deterministic local embeddings."""

    def test_encoding_is_deterministic_and_normalized(self):
        provider = HashingEmbeddingProvider(dim=64)

        first = provider.encode("Summarize this text")
        second = provider.encode("summarize this text!")

        assert np.allclose(first, second)
        assert np.linalg.norm(first) == pytest.approx(1.0)

    def test_shared_words_are_closer(self):
        provider = HashingEmbeddingProvider()

        base = provider.encode("summarize this long text")
        related = provider.encode("summarize this text")
        unrelated = provider.encode("weather forecast tomorrow")

        assert float(base @ related) > float(base @ unrelated)

    async def test_completions_are_unsupported(self):
        with pytest.raises(ProviderError):
            await HashingEmbeddingProvider().complete("prompt")
