"""AI provider capability: embeddings and completions.

The engine only depends on the ``AIProvider`` protocol. Two implementations
ship with the package:

* ``HttpAIProvider`` talks to an OpenAI-compatible HTTP endpoint.
* ``HashingEmbeddingProvider`` produces deterministic hash-based embeddings
  for local development; it has no completion support.

Failures are raised as ``ProviderError`` with ``transient`` set for network
errors, timeouts, rate limits and 5xx responses.
"""

import hashlib
import json
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
import numpy as np
from pydantic import BaseModel, Field

from ..models.core import TokenUsage
from .exceptions import ProviderError
from .logging import get_logger

logger = get_logger(__name__)


class EmbeddingResponse(BaseModel):
    vector: List[float] = Field(..., description="Embedding vector")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class CompletionResponse(BaseModel):
    value: Any = Field(..., description="Generated value, usually text")
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


@runtime_checkable
class AIProvider(Protocol):
    """Request/response contract of the external AI capability."""

    async def embed(self, text: str) -> EmbeddingResponse:
        ...

    async def complete(
        self,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> CompletionResponse:
        ...


class HttpAIProvider:
    """Provider for OpenAI-compatible ``/embeddings`` and ``/chat/completions`` endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        embedding_model: str = "text-embedding-3-small",
        completion_model: str = "gpt-4o-mini",
        request_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.completion_model = completion_model
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=request_timeout,
        )

    async def embed(self, text: str) -> EmbeddingResponse:
        body = await self._post("/embeddings", {"model": self.embedding_model, "input": text})
        try:
            vector = body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed embedding response: {e}", provider=self.base_url)

        usage = body.get("usage") or {}
        return EmbeddingResponse(
            vector=vector,
            token_usage=TokenUsage(prompt_tokens=usage.get("prompt_tokens", 0)),
        )

    async def complete(
        self,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> CompletionResponse:
        messages = []
        system_prompt = (context or {}).get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {"model": model or self.completion_model, "messages": messages}
        if (context or {}).get("response_format") == "json":
            payload["response_format"] = {"type": "json_object"}

        body = await self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed completion response: {e}", provider=self.base_url)

        usage = body.get("usage") or {}
        return CompletionResponse(
            value=content,
            token_usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            ),
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            transient = status_code == 429 or status_code >= 500
            logger.warning(f"Provider returned HTTP {status_code} for {path}")
            raise ProviderError(
                f"Provider request to {path} failed with HTTP {status_code}",
                transient=transient,
                provider=self.base_url,
                status_code=status_code,
            )
        except httpx.TransportError as e:
            logger.warning(f"Provider transport error for {path}: {e}")
            raise ProviderError(
                f"Provider request to {path} failed: {e}",
                transient=True,
                provider=self.base_url,
            )
        except json.JSONDecodeError as e:
            raise ProviderError(f"Provider returned invalid JSON for {path}: {e}", provider=self.base_url)

    async def aclose(self) -> None:
        await self._client.aclose()


class HashingEmbeddingProvider:
    """Deterministic bag-of-words hashing embeddings. Not semantic, but stable.

    Texts sharing words land close together, which is enough to exercise the
    router without a model server.
    """

    def __init__(self, dim: int = 256):
        self.dim = dim

    def encode(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float64)
        for token in text.lower().split():
            token = token.strip(".,;:!?\"'()[]{}")
            if not token:
                continue
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dim
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[index] += sign
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector

    async def embed(self, text: str) -> EmbeddingResponse:
        return EmbeddingResponse(
            vector=self.encode(text).tolist(),
            token_usage=TokenUsage(prompt_tokens=len(text.split())),
        )

    async def complete(
        self,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> CompletionResponse:
        raise ProviderError("HashingEmbeddingProvider does not support completions", provider="hashing")
