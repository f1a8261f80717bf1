"""Pydantic models for the embedding index data structures.

All data crossing a module boundary is validated against these schemas, so
malformed vectors or parameters fail fast instead of corrupting an index.
"""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_WEIGHT = 0.1
MAX_WEIGHT = 2.0


def clamp_weight(weight: float) -> float:
    """Clamp a collection weight into [MIN_WEIGHT, MAX_WEIGHT]."""
    return min(MAX_WEIGHT, max(MIN_WEIGHT, float(weight)))


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ReductionStrategy(str, Enum):
    """How an embedding is reduced to the quantized coordinate space."""

    TRUNCATE = "truncate"
    BLOCK_AVERAGE = "block_average"


class QuantizationParams(BaseModel):
    """Per-collection quantization parameters.

    Computed once from a representative sample and persisted with the
    collection. Every OrderingKey of the collection depends on them.

    Attributes:
        dims: Number of reduced dimensions D
        bits: Bit-width B of each quantized coordinate
        mins: Lower bound per reduced dimension
        maxs: Upper bound per reduced dimension (strictly greater than min)
        reduction: Reduction strategy tag
        embedding_dimensions: Length of the full embeddings of the collection
    """

    model_config = ConfigDict(frozen=True)

    dims: int = Field(ge=1, le=16)
    bits: int = Field(ge=1, le=32)
    mins: list[float]
    maxs: list[float]
    reduction: ReductionStrategy = ReductionStrategy.TRUNCATE
    embedding_dimensions: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> "QuantizationParams":
        """Ensure one finite, non-degenerate (min, max) pair per dimension."""
        if len(self.mins) != self.dims or len(self.maxs) != self.dims:
            raise ValueError(
                f"mins/maxs must have {self.dims} entries, "
                f"got {len(self.mins)}/{len(self.maxs)}"
            )
        for i, (lo, hi) in enumerate(zip(self.mins, self.maxs, strict=True)):
            if not (math.isfinite(lo) and math.isfinite(hi)):
                raise ValueError(f"Non-finite bounds at dimension {i}: ({lo}, {hi})")
            if hi <= lo:
                raise ValueError(f"Degenerate range at dimension {i}: ({lo}, {hi})")
        return self

    @property
    def key_bits(self) -> int:
        return self.dims * self.bits

    @property
    def hex_width(self) -> int:
        """Number of hex characters in a serialized OrderingKey."""
        return (self.key_bits + 3) // 4

    @property
    def max_level(self) -> int:
        return (1 << self.bits) - 1


class Node(BaseModel):
    """A record owned by exactly one collection.

    The payload is opaque: the index stores and returns it but never inspects it.

    Attributes:
        id: Node identifier, unique within its collection
        embedding: Full embedding vector (immutable once attached)
        payload: Arbitrary caller data (must be JSON-serializable to persist)
        ordering_key: Cached OrderingKey, set by the index on insert
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    embedding: list[float] = Field(min_length=1)
    payload: Any = None
    ordering_key: str | None = None

    @field_validator("embedding")
    @classmethod
    def validate_embedding_values(cls, v: list[float]) -> list[float]:
        """Ensure embedding contains only finite floats."""
        for i, val in enumerate(v):
            if not math.isfinite(val):
                raise ValueError(f"Embedding contains non-finite value at index {i}: {val}")
        return v


class NeighborHit(BaseModel):
    """A single-collection search hit, scored by cosine similarity."""

    node_id: str
    score: float
    ordering_key: str | None = None


class CollectionMeta(BaseModel):
    """Registry entry describing one collection.

    Attributes:
        id: Collection identifier
        name: Human-readable name
        weight: Ranking multiplier, clamped into [0.1, 2.0]
        active: Whether the collection takes part in federated search
        last_accessed: Last time a query returned hits from this collection
        created_at: Creation time (first import)
        node_count: Number of nodes currently indexed
        description: Optional free-form description
        tags: Optional user-defined tags
    """

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    weight: float = 1.0
    active: bool = True
    last_accessed: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    node_count: int = Field(default=0, ge=0)
    description: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("weight")
    @classmethod
    def clamp_weight_value(cls, v: float) -> float:
        """Out-of-range weights are clamped, never rejected."""
        if not math.isfinite(v):
            raise ValueError(f"weight must be finite, got {v}")
        return clamp_weight(v)

    @field_validator("last_accessed", "created_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)


class FederatedHit(BaseModel):
    """A merged cross-collection hit.

    Attributes:
        collection_id: Collection the node belongs to
        node_id: Node identifier
        score: Final score (normalized x weight x freshness boost)
        raw_score: Cosine similarity from the collection's neighbor search
        normalized_score: raw_score divided by the collection's best raw score
        weight: Collection weight applied
        freshness_boost: Recency multiplier applied
    """

    collection_id: str
    node_id: str
    score: float
    raw_score: float
    normalized_score: float
    weight: float = 1.0
    freshness_boost: float = 1.0


class CollectionStats(BaseModel):
    """Point-in-time statistics for one collection index."""

    collection_id: str
    node_count: int = Field(ge=0)
    key_count: int = Field(ge=0)
    fitted: bool
    dims: int | None = None
    bits: int | None = None
    reduction: ReductionStrategy | None = None


class RegistryStats(BaseModel):
    """Aggregate statistics over all registered collections."""

    total_collections: int = Field(ge=0)
    active_collections: int = Field(ge=0)
    total_nodes: int = Field(ge=0)
    average_weight: float
    oldest_created: datetime | None = None
    newest_created: datetime | None = None


class SearchProgress(BaseModel):
    """Event published on a federated search progress channel."""

    event: Literal["started", "completed", "failed", "timed_out", "finished"]
    collection_id: str | None = None
    completed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    hits: int = Field(default=0, ge=0)
    detail: str | None = None
