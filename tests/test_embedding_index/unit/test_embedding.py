"""Unit tests for embedding generation."""

import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest
import respx
from httpx import Response

from embedding_index.embedding import (
    EmbeddingConfig,
    GuardedEmbedding,
    MockEmbedding,
    OpenAIEmbedding,
    create_embedding_client,
    mock_embedding,
)
from embedding_index.errors import InvalidDimensionError, ProviderError


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Standard OpenAI embedding configuration for tests."""
    return EmbeddingConfig(
        model="openai/text-embedding-3-small",
        version="v1",
        dimensions=1536,
        batch_size=100,
        max_retries=3,
        timeout_seconds=10.0,
        api_key="sk-test-key",
    )


class TestEmbeddingConfig:
    """Tests for EmbeddingConfig validation."""

    def test_defaults(self):
        config = EmbeddingConfig()
        assert config.model.startswith("mock/")
        assert config.dimensions == 512
        assert config.timeout_seconds == 15.0
        assert config.mock_fallback is True

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            EmbeddingConfig(dimensions=0)

        with pytest.raises(ValueError):
            EmbeddingConfig(dimensions=5000)

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            EmbeddingConfig(batch_size=0)


class TestOpenAIEmbedding:
    """Tests for OpenAI embedding client."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_single_success(self, embedding_config):
        respx.post("https://api.openai.com/v1/embeddings").mock(
            return_value=Response(
                200,
                json={
                    "data": [{"embedding": [0.1] * 1536, "index": 0}],
                    "model": "text-embedding-3-small",
                    "usage": {"prompt_tokens": 5, "total_tokens": 5},
                },
            )
        )

        client = OpenAIEmbedding(embedding_config)
        vector = await client.embed_single("Test text")

        assert len(vector) == 1536
        assert all(isinstance(v, float) for v in vector)

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_batch_keeps_order(self, embedding_config):
        respx.post("https://api.openai.com/v1/embeddings").mock(
            return_value=Response(
                200,
                json={
                    "data": [
                        {"embedding": [0.1] * 1536, "index": 0},
                        {"embedding": [0.2] * 1536, "index": 1},
                    ],
                    "model": "text-embedding-3-small",
                    "usage": {"prompt_tokens": 10, "total_tokens": 10},
                },
            )
        )

        client = OpenAIEmbedding(embedding_config)
        vectors = await client.embed_batch(["Text 1", "Text 2"])

        assert [v[0] for v in vectors] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_batch_size_exceeded(self, embedding_config):
        client = OpenAIEmbedding(embedding_config)

        with pytest.raises(ValueError, match="Batch size .* exceeds limit"):
            await client.embed_batch(["text"] * 101)

    @pytest.mark.asyncio
    @respx.mock
    async def test_dimension_mismatch_raises(self, embedding_config):
        respx.post("https://api.openai.com/v1/embeddings").mock(
            return_value=Response(
                200,
                json={
                    "data": [{"embedding": [0.1] * 768, "index": 0}],
                    "model": "text-embedding-3-small",
                    "usage": {"prompt_tokens": 5, "total_tokens": 5},
                },
            )
        )

        client = OpenAIEmbedding(embedding_config)

        with pytest.raises(InvalidDimensionError, match="expected 1536, got 768"):
            await client.embed_single("Test")

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_retried(self, embedding_config, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr("embedding_index.embedding.asyncio.sleep", sleep)
        respx.post("https://api.openai.com/v1/embeddings").mock(
            side_effect=[
                Response(429, json={"error": {"message": "slow down"}}),
                Response(
                    200,
                    json={
                        "data": [{"embedding": [0.3] * 1536, "index": 0}],
                        "model": "text-embedding-3-small",
                        "usage": {"prompt_tokens": 5, "total_tokens": 5},
                    },
                ),
            ]
        )

        vector = await OpenAIEmbedding(embedding_config).embed_single("Retry me")

        assert vector[0] == pytest.approx(0.3)
        sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_not_retried(self, embedding_config):
        route = respx.post("https://api.openai.com/v1/embeddings").mock(
            return_value=Response(400, json={"error": {"message": "bad input"}})
        )

        with pytest.raises(ProviderError, match="rejected"):
            await OpenAIEmbedding(embedding_config).embed_single("Test")
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_empty_batch_returns_empty(self, embedding_config):
        client = OpenAIEmbedding(embedding_config)
        assert await client.embed_batch([]) == []


class TestMockEmbedding:
    """Tests for deterministic hash-based embeddings."""

    def test_deterministic(self):
        assert mock_embedding("hello", 64) == mock_embedding("hello", 64)

    def test_distinct_texts_differ(self):
        assert mock_embedding("hello", 64) != mock_embedding("world", 64)

    def test_seed_changes_vector(self):
        assert mock_embedding("hello", 64, seed=1) != mock_embedding("hello", 64, seed=2)

    @pytest.mark.parametrize("dimensions", [1, 8, 512, 1536])
    def test_unit_length(self, dimensions):
        vector = mock_embedding("some text", dimensions)
        assert len(vector) == dimensions
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_client(self):
        client = MockEmbedding(EmbeddingConfig(dimensions=32))
        batch = await client.embed_batch(["a", "b"])
        assert batch[0] == await client.embed_single("a")
        assert len(batch[1]) == 32


class TestGuardedEmbedding:
    """Tests for timeout and fallback behavior."""

    @pytest.mark.asyncio
    async def test_passes_through_on_success(self):
        inner = AsyncMock()
        inner.embed_batch.return_value = [[1.0, 0.0]]
        guarded = GuardedEmbedding(inner, EmbeddingConfig(dimensions=2))

        assert await guarded.embed_single("x") == [1.0, 0.0]
        inner.embed_batch.assert_awaited_once_with(["x"])

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_mock(self):
        inner = AsyncMock()
        inner.embed_batch.side_effect = RuntimeError("provider down")
        config = EmbeddingConfig(dimensions=16)
        guarded = GuardedEmbedding(inner, config)

        vector = await guarded.embed_single("query")

        assert vector == mock_embedding("query", 16)

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_mock(self):
        async def slow(texts):
            await asyncio.sleep(10)

        inner = AsyncMock()
        inner.embed_batch.side_effect = slow
        guarded = GuardedEmbedding(inner, EmbeddingConfig(dimensions=8, timeout_seconds=0.05))

        vectors = await guarded.embed_batch(["a", "b"])

        assert vectors == [mock_embedding("a", 8), mock_embedding("b", 8)]

    @pytest.mark.asyncio
    async def test_failure_without_fallback_raises(self):
        inner = AsyncMock()
        inner.embed_batch.side_effect = RuntimeError("provider down")
        guarded = GuardedEmbedding(inner, EmbeddingConfig(dimensions=8, mock_fallback=False))

        with pytest.raises(ProviderError, match="provider down"):
            await guarded.embed_single("query")


class TestCreateEmbeddingClient:
    """Tests for factory function."""

    def test_create_openai_client(self, embedding_config):
        client = create_embedding_client(embedding_config)

        assert isinstance(client, GuardedEmbedding)
        assert isinstance(client.inner, OpenAIEmbedding)
        assert client.inner.model_name == "text-embedding-3-small"

    def test_create_mock_client(self):
        client = create_embedding_client(EmbeddingConfig(model="mock/sha256"))
        assert isinstance(client, MockEmbedding)

    def test_unknown_model_prefix_raises(self):
        config = EmbeddingConfig(model="unknown/model")

        with pytest.raises(ValueError, match="Unknown model prefix"):
            create_embedding_client(config)
