"""Unit tests for Pydantic models.

Tests validate:
- Field constraints
- Custom validators (weight clamping, bounds, finite embeddings)
- Fail-fast behavior for invalid data
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from embedding_index.errors import (
    CollectionNotFoundError,
    EmbeddingIndexError,
    InvalidDimensionError,
    MissingQuantizationParamsError,
    NotFoundError,
)
from embedding_index.models import (
    CollectionMeta,
    Node,
    QuantizationParams,
    ReductionStrategy,
    SearchProgress,
    clamp_weight,
)


class TestQuantizationParams:
    """Tests for QuantizationParams validation."""

    def test_valid_params(self):
        params = QuantizationParams(dims=2, bits=4, mins=[0.0, -1.0], maxs=[1.0, 1.0])
        assert params.key_bits == 8
        assert params.hex_width == 2
        assert params.max_level == 15
        assert params.reduction == ReductionStrategy.TRUNCATE

    def test_hex_width_rounds_up(self):
        params = QuantizationParams(dims=3, bits=3, mins=[0.0] * 3, maxs=[1.0] * 3)
        assert params.hex_width == 3  # 9 bits

    def test_bounds_length_mismatch(self):
        with pytest.raises(ValidationError, match="must have 2 entries"):
            QuantizationParams(dims=2, bits=4, mins=[0.0], maxs=[1.0, 1.0])

    def test_degenerate_range_rejected(self):
        with pytest.raises(ValidationError, match="Degenerate range"):
            QuantizationParams(dims=1, bits=4, mins=[1.0], maxs=[1.0])

    def test_non_finite_bounds_rejected(self):
        with pytest.raises(ValidationError, match="Non-finite"):
            QuantizationParams(dims=1, bits=4, mins=[float("-inf")], maxs=[1.0])

    @pytest.mark.parametrize("dims,bits", [(0, 4), (17, 4), (2, 0), (2, 33)])
    def test_out_of_range_shape(self, dims, bits):
        with pytest.raises(ValidationError):
            size = max(dims, 1)
            QuantizationParams(dims=dims, bits=bits, mins=[0.0] * size, maxs=[1.0] * size)

    def test_reduction_from_string(self):
        params = QuantizationParams(
            dims=1, bits=4, mins=[0.0], maxs=[1.0], reduction="block_average"
        )
        assert params.reduction is ReductionStrategy.BLOCK_AVERAGE

    def test_json_round_trip(self):
        params = QuantizationParams(
            dims=2, bits=8, mins=[0.0, 0.5], maxs=[1.0, 2.5], embedding_dimensions=64
        )
        assert QuantizationParams.model_validate_json(params.model_dump_json()) == params


class TestNode:
    """Tests for Node validation."""

    def test_payload_is_opaque(self):
        payload = {"nested": [1, {"a": None}], "text": "hello"}
        node = Node(id="n1", embedding=[0.1, 0.2], payload=payload)
        assert node.payload == payload
        assert node.ordering_key is None

    def test_empty_embedding_rejected(self):
        with pytest.raises(ValidationError):
            Node(id="n1", embedding=[])

    def test_non_finite_embedding_rejected(self):
        with pytest.raises(ValidationError, match="non-finite value at index 1"):
            Node(id="n1", embedding=[0.1, float("nan")])

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Node(id="", embedding=[0.1])

    def test_frozen(self):
        node = Node(id="n1", embedding=[0.1])
        with pytest.raises(ValidationError):
            node.id = "n2"


class TestCollectionMeta:
    """Tests for CollectionMeta validation."""

    @pytest.mark.parametrize(
        "weight,expected", [(5.0, 2.0), (0.0, 0.1), (-3.0, 0.1), (1.3, 1.3), (2.0, 2.0)]
    )
    def test_weight_clamped_not_rejected(self, weight, expected):
        meta = CollectionMeta(id="c1", name="Collection", weight=weight)
        assert meta.weight == pytest.approx(expected)

    def test_non_finite_weight_rejected(self):
        with pytest.raises(ValidationError, match="finite"):
            CollectionMeta(id="c1", name="Collection", weight=float("nan"))

    def test_naive_timestamps_become_utc(self):
        meta = CollectionMeta(
            id="c1", name="Collection", last_accessed=datetime(2025, 1, 1, 12, 0, 0)
        )
        assert meta.last_accessed.tzinfo is UTC
        assert meta.last_accessed.hour == 12

    def test_aware_timestamps_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        meta = CollectionMeta(
            id="c1", name="Collection", created_at=datetime(2025, 1, 1, 12, 0, tzinfo=plus_two)
        )
        assert meta.created_at == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

    def test_defaults(self):
        meta = CollectionMeta(id="c1", name="Collection")
        assert meta.active is True
        assert meta.weight == 1.0
        assert meta.node_count == 0
        assert meta.tags == []


def test_clamp_weight_bounds():
    assert clamp_weight(0.05) == 0.1
    assert clamp_weight(3) == 2.0
    assert clamp_weight(0.7) == 0.7


def test_search_progress_event_validated():
    with pytest.raises(ValidationError):
        SearchProgress(event="exploded")


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_str_includes_code(self):
        error = CollectionNotFoundError("c1")
        assert str(error) == "Collection 'c1' not found (Code: 2001)"
        assert error.context == {"collection_id": "c1"}

    def test_hierarchy(self):
        assert issubclass(InvalidDimensionError, ValueError)
        assert issubclass(CollectionNotFoundError, NotFoundError)
        assert issubclass(NotFoundError, LookupError)
        assert issubclass(MissingQuantizationParamsError, RuntimeError)
        assert issubclass(MissingQuantizationParamsError, EmbeddingIndexError)

    def test_message_without_code(self):
        assert str(EmbeddingIndexError("plain")) == "plain"
