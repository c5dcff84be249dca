"""Embedding gateway: provider calls with caching, retries and a fallback.

The gateway is the only place that talks to the embedding provider. It
caches vectors by content hash, shares one provider call between
concurrent requests for the same text, retries transient failures with
exponential backoff and, once retries are exhausted, degrades to a
deterministic hash-derived vector so the pipeline keeps moving.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Protocol

import httpx

from chatmem.errors import DimensionMismatch, EmbeddingUnavailable, ValidationError
from chatmem.memory.vectors import fallback_embedding
from chatmem.retry import retry_async

logger = logging.getLogger(__name__)

# Provider failures that degrade to the fallback vector once retries run out.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    EmbeddingUnavailable,
    TimeoutError,
    OSError,
    httpx.HTTPError,
)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class HttpEmbeddingProvider:
    """Calls an OpenAI-compatible ``/embeddings`` endpoint over httpx."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        dimension: int | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._model = model
        self._dimension = dimension
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def embed(self, text: str) -> list[float]:
        payload: dict = {"model": self._model, "input": text}
        if self._dimension:
            payload["dimensions"] = self._dimension
        try:
            response = await self._client.post(
                self._api_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.RequestError as exc:
            raise EmbeddingUnavailable(str(exc)) from exc

        if response.status_code >= 400:
            raise EmbeddingUnavailable(f"status {response.status_code}")

        try:
            return [float(x) for x in response.json()["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingUnavailable(f"malformed embedding response: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def _content_key(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EmbeddingGateway:
    """Turns text into vectors of a fixed dimension.

    Args:
        provider: Anything with ``async embed(text)``. None means every
            call uses the fallback vector.
        dimension: Required vector length. A provider returning any other
            length is a hard error.
        max_retries: Retries after the first failed provider call.
        backoff_seconds: Base delay for exponential backoff.
        cache_size: Maximum number of cached vectors (LRU).
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None,
        dimension: int,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        cache_size: int = 1000,
    ) -> None:
        self._provider = provider
        self._dimension = dimension
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task[list[float]]] = {}
        self.fallback_count = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def embed(self, text: str) -> list[float]:
        """Return the embedding for *text*, using the cache when possible."""
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")

        key = _content_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return list(cached)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._compute(key, text))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        return list(await asyncio.shield(task))

    def clear_cache(self) -> None:
        self._cache.clear()

    # -- Internal --------------------------------------------------------------

    async def _compute(self, key: str, text: str) -> list[float]:
        if self._provider is None:
            self.fallback_count += 1
            return fallback_embedding(text, self._dimension)

        provider = self._provider

        async def attempt() -> list[float]:
            return await provider.embed(text)

        try:
            vector = await retry_async(
                attempt,
                retries=self._max_retries,
                base_seconds=self._backoff_seconds,
                retry_on=TRANSIENT_ERRORS,
                label="Embedding request",
            )
        except TRANSIENT_ERRORS:
            self.fallback_count += 1
            logger.warning("Embedding provider unavailable, using fallback vector")
            return fallback_embedding(text, self._dimension)

        if len(vector) != self._dimension:
            logger.error(
                "Embedding provider returned dimension %d, expected %d",
                len(vector),
                self._dimension,
            )
            raise DimensionMismatch(self._dimension, len(vector))

        self._cache[key] = vector
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return vector
