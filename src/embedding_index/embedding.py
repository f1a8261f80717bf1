"""Embedding provider boundary.

The index cannot operate without a vector, so every query or import that
starts from text goes through an `EmbeddingClient`. Supports the OpenAI API
and a deterministic hash-based mock; `GuardedEmbedding` wraps any client
with a timeout and falls back to the mock so a vector is always produced.
"""

import asyncio
import hashlib
import math
from typing import Protocol

import httpx
import numpy as np
from loguru import logger
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)
from pydantic import BaseModel, Field

from embedding_index.errors import InvalidDimensionError, ProviderError


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation.

    Attributes:
        model: Model identifier (e.g., "openai/text-embedding-3-small", "mock/sha256")
        version: Version tag stored alongside persisted collections
        dimensions: Expected embedding dimensionality
        batch_size: Number of texts to embed per API call
        max_retries: Maximum retry attempts for transient failures
        timeout_seconds: Per-call timeout
        api_key: API key for external services (set via env var)
        mock_fallback: Substitute a deterministic vector when the provider fails
    """

    model: str = "mock/sha256"
    version: str = "v1"
    dimensions: int = Field(default=512, ge=1, le=4096)
    batch_size: int = Field(default=100, ge=1, le=500)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=15.0, gt=0.0, le=300.0)
    api_key: str | None = None
    mock_fallback: bool = True


class EmbeddingClient(Protocol):
    """Protocol for embedding client implementations."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: List of input texts (max batch_size)

        Returns:
            List of embedding vectors (same order as inputs)
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        ...


class OpenAIEmbedding:
    """OpenAI embedding client with retry logic and batching."""

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        # Retries are handled here, with logging, instead of inside the SDK
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            timeout=httpx.Timeout(config.timeout_seconds, connect=5.0),
            max_retries=0,
        )
        self.model_name = config.model.removeprefix("openai/")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, retrying timeouts and rate limits with backoff.

        Raises:
            ValueError: If batch size exceeds config limit
            InvalidDimensionError: If the model returns vectors of the wrong length
            ProviderError: For API errors, or transient failures after all retries
        """
        if len(texts) > self.config.batch_size:
            raise ValueError(f"Batch size {len(texts)} exceeds limit {self.config.batch_size}")
        if not texts:
            return []

        attempts = self.config.max_retries
        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.embeddings.create(model=self.model_name, input=texts)
            except (APITimeoutError, APIConnectionError, RateLimitError) as e:
                if attempt == attempts:
                    raise ProviderError(
                        f"Embedding request failed after {attempts} attempts: {e}",
                        context={"model": self.model_name},
                    ) from e
                delay = 2**attempt if isinstance(e, RateLimitError) else 2 ** (attempt - 1)
                logger.warning(
                    f"{type(e).__name__} from {self.model_name} "
                    f"(attempt {attempt}/{attempts}), retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                continue
            except APIStatusError as e:
                logger.error(f"Embedding request rejected with HTTP {e.status_code}: {e}")
                raise ProviderError(
                    f"Embedding request rejected: {e}",
                    context={"model": self.model_name, "status": e.status_code},
                ) from e

            vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
            for vector in vectors:
                if len(vector) != self.config.dimensions:
                    raise InvalidDimensionError(
                        expected=self.config.dimensions, actual=len(vector), what="embedding"
                    )
            logger.debug(f"Embedded {len(texts)} texts with {self.model_name}")
            return vectors

        raise ProviderError(f"No embedding attempts made (max_retries={attempts})")

    async def embed_single(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


def mock_embedding(text: str, dimensions: int = 512, seed: int = 0) -> list[float]:
    """Deterministic unit-length pseudo-embedding derived from SHA-256.

    The same (text, seed, dimensions) always yields the same vector.
    """
    digest = hashlib.sha256(f"{text}:{seed}".encode()).digest()
    positions = np.arange(dimensions)
    # Hash bytes mapped to [-1, 1], with a position-dependent wave so long
    # vectors do not simply repeat the 32-byte digest
    base = np.frombuffer(digest, dtype=np.uint8)[positions % len(digest)] / 127.5 - 1.0
    vector = base + 0.1 * np.sin(positions * 0.1 + digest[0])
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not math.isfinite(norm):
        return [1.0 / math.sqrt(dimensions)] * dimensions
    return (vector / norm).tolist()


class MockEmbedding:
    """Offline embedding client producing deterministic hash-based vectors."""

    def __init__(self, config: EmbeddingConfig, seed: int = 0):
        self.config = config
        self.seed = seed

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [mock_embedding(text, self.config.dimensions, self.seed) for text in texts]

    async def embed_single(self, text: str) -> list[float]:
        return mock_embedding(text, self.config.dimensions, self.seed)


class GuardedEmbedding:
    """Wraps a client with a timeout and a deterministic fallback.

    When `mock_fallback` is enabled, provider failures and timeouts are logged
    and replaced by mock vectors of the configured dimensionality. Otherwise
    they surface as `ProviderError`.
    """

    def __init__(self, inner: EmbeddingClient, config: EmbeddingConfig):
        self.inner = inner
        self.config = config
        self._fallback = MockEmbedding(config)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            return await asyncio.wait_for(
                self.inner.embed_batch(texts), timeout=self.config.timeout_seconds
            )
        except TimeoutError as e:
            return await self._recover(texts, f"timed out after {self.config.timeout_seconds}s", e)
        except Exception as e:
            return await self._recover(texts, str(e), e)

    async def embed_single(self, text: str) -> list[float]:
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def _recover(self, texts: list[str], reason: str, error: Exception) -> list[list[float]]:
        if not self.config.mock_fallback:
            raise ProviderError(f"Embedding provider failed: {reason}") from error
        logger.warning(f"Embedding provider failed ({reason}); using deterministic fallback")
        return await self._fallback.embed_batch(texts)


def create_embedding_client(config: EmbeddingConfig) -> EmbeddingClient:
    """Factory function to create an embedding client based on the model prefix.

    Example:
        >>> config = EmbeddingConfig(model="mock/sha256", dimensions=64)
        >>> client = create_embedding_client(config)
    """
    if config.model.startswith("openai/"):
        return GuardedEmbedding(OpenAIEmbedding(config), config)
    elif config.model.startswith("mock/"):
        return MockEmbedding(config)
    else:
        raise ValueError(
            f"Unknown model prefix in {config.model!r}. Expected 'openai/' or 'mock/'"
        )
