"""Approximate nearest-neighbor search over one collection index.

Implements Morton-range -> cosine re-rank search:
1. Reduce, quantize and encode the query into a center key
2. Range scan around the center with a small initial radius
3. While fewer than k distinct candidates are found, multiply the radius
   and rescan (bounded number of widenings); candidates accumulate
4. If still short after the last widening, score the whole collection
5. Re-rank candidates by cosine similarity on full embeddings, return top k
"""

from collections.abc import Sequence

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field

from embedding_index.errors import InvalidDimensionError
from embedding_index.index import CollectionIndex
from embedding_index.models import NeighborHit, Node


class SearchConfig(BaseModel):
    """Range-scan tuning for neighbor search.

    Attributes:
        radius_power: Initial radius is 2**radius_power key units
        growth_factor: Radius multiplier applied on each widening
        max_widenings: Maximum number of widenings after the first scan
        candidate_multiplier: Scan limit is max(k * candidate_multiplier, min_candidates)
        min_candidates: Lower bound on the scan limit
        linear_scan_fallback: Score every node when widening leaves fewer
            than min(k, node count) candidates
    """

    radius_power: int = Field(default=12, ge=0, le=512)
    growth_factor: int = Field(default=4, ge=2, le=16)
    max_widenings: int = Field(default=3, ge=0, le=16)
    candidate_multiplier: int = Field(default=4, ge=1, le=100)
    min_candidates: int = Field(default=50, ge=1, le=100_000)
    linear_scan_fallback: bool = True

    @property
    def initial_radius(self) -> int:
        return 1 << self.radius_power

    def candidate_limit(self, k: int) -> int:
        return max(k * self.candidate_multiplier, self.min_candidates)


def _as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64).ravel()
    if vector.size == 0:
        raise ValueError("Query embedding is empty")
    if not np.all(np.isfinite(vector)):
        raise ValueError("Query embedding contains non-finite values")
    return vector


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm.

    Raises:
        InvalidDimensionError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise InvalidDimensionError(expected=va.shape[0], actual=vb.shape[0])
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def rank_by_cosine(query: Sequence[float] | np.ndarray, nodes: Sequence[Node]) -> list[NeighborHit]:
    """Score nodes against the query, descending by score then ascending by node id."""
    if not nodes:
        return []

    q = _as_vector(query)
    for node in nodes:
        if len(node.embedding) != q.shape[0]:
            raise InvalidDimensionError(
                expected=q.shape[0], actual=len(node.embedding), what="node embedding"
            )

    matrix = np.asarray([node.embedding for node in nodes], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    hits = [
        NeighborHit(node_id=node.id, score=float(score), ordering_key=node.ordering_key)
        for node, score in zip(nodes, scores, strict=True)
    ]
    hits.sort(key=lambda hit: (-hit.score, hit.node_id))
    return hits


class NeighborSearch:
    """Radius-adaptive range-scan search over one collection."""

    def __init__(self, index: CollectionIndex, config: SearchConfig | None = None):
        self.index = index
        self.config = config or SearchConfig()

    async def search(
        self, query_embedding: Sequence[float] | np.ndarray, k: int
    ) -> list[NeighborHit]:
        """Find the k nodes most similar to the query.

        Returns fewer than k hits only when the collection holds fewer than
        k nodes. An empty collection yields an empty list.

        Args:
            query_embedding: Full-length query embedding
            k: Number of results wanted (>= 1)

        Raises:
            ValueError: If k < 1 or the query is empty or non-finite
            InvalidDimensionError: If the query length does not match the collection
            MissingQuantizationParamsError: If a populated collection has no params
        """
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")

        query = _as_vector(query_embedding)
        total = len(self.index)
        if total == 0:
            return []

        center = self.index.ordering_key(query.tolist())
        candidate_ids = await self._scan_candidates(center, k, total)

        if len(candidate_ids) < min(k, total) and self.config.linear_scan_fallback:
            logger.debug(
                f"Collection {self.index.collection_id!r}: {len(candidate_ids)} candidates "
                f"after {self.config.max_widenings} widenings, falling back to linear scan"
            )
            candidates = await self.index.nodes()
        else:
            candidates = await self.index.get_many(candidate_ids)

        hits = rank_by_cosine(query, candidates)[:k]
        logger.debug(
            f"Collection {self.index.collection_id!r}: {len(hits)} hits "
            f"from {len(candidates)} candidates"
        )
        return hits

    async def _scan_candidates(self, center: str, k: int, total: int) -> list[str]:
        """Widen the scan radius until enough distinct candidates are collected."""
        limit = self.config.candidate_limit(k)
        wanted = min(k, total)
        radius = self.config.initial_radius
        # Insertion-ordered set of node ids, unioned across widenings
        found: dict[str, None] = {}

        for attempt in range(self.config.max_widenings + 1):
            for _, node_id in await self.index.range_scan(center, radius, limit):
                found.setdefault(node_id, None)

            if len(found) >= wanted:
                break
            if attempt < self.config.max_widenings:
                radius *= self.config.growth_factor
                logger.debug(
                    f"Widening search radius to {radius:#x} "
                    f"(attempt {attempt + 1}/{self.config.max_widenings})"
                )

        return list(found)
