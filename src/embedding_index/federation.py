"""Federated search across independently indexed collections.

Each active collection is searched concurrently with its own Neighbor
Search; a slow or failing collection contributes zero hits instead of
failing the query. Per-collection scores are normalized by that
collection's best score, multiplied by the collection weight and a
recency-decaying freshness boost, then merged into one ranking.
"""

import asyncio
import math
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field

from embedding_index.errors import InvariantViolationError, NotFoundError
from embedding_index.index import CollectionIndex
from embedding_index.models import CollectionMeta, FederatedHit, NeighborHit, SearchProgress, utcnow
from embedding_index.registry import CollectionRegistry
from embedding_index.search import NeighborSearch, SearchConfig

SECONDS_PER_DAY = 86_400.0


class FederationConfig(BaseModel):
    """Federated search configuration.

    Attributes:
        default_k: Result count when the caller does not pass k
        min_collections: Responding collections below which a warning is logged
        collection_timeout_seconds: Per-collection search timeout
        freshness_amplitude: Maximum extra boost for a just-accessed collection
        freshness_decay_days: Time constant of the freshness decay
        apply_weights: Multiply scores by collection weight
        apply_freshness: Multiply scores by the freshness boost
    """

    default_k: int = Field(default=20, ge=1, le=1000)
    min_collections: int = Field(default=1, ge=0)
    collection_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    freshness_amplitude: float = Field(default=0.2, ge=0.0, le=10.0)
    freshness_decay_days: float = Field(default=30.0, gt=0.0)
    apply_weights: bool = True
    apply_freshness: bool = True


def freshness_boost(
    last_accessed: datetime,
    now: datetime,
    *,
    amplitude: float = 0.2,
    decay_days: float = 30.0,
) -> float:
    """1 + amplitude * exp(-days_since_access / decay_days).

    Access times in the future count as zero days.
    """
    days = max(0.0, (now - last_accessed).total_seconds() / SECONDS_PER_DAY)
    return 1.0 + amplitude * math.exp(-days / decay_days)


def final_score(normalized: float, weight: float, boost: float) -> float:
    return normalized * weight * boost


def normalize_scores(scores: Sequence[float]) -> list[float]:
    """Divide by the best score; returned unchanged when the best is <= 0."""
    if not scores:
        return []
    best = max(scores)
    if best <= 0:
        return [float(s) for s in scores]
    return (np.asarray(scores, dtype=np.float64) / best).tolist()


def merge_hits(hits: Iterable[FederatedHit], k: int) -> list[FederatedHit]:
    """Sort by final score descending, then collection id and node id ascending."""
    ranked = sorted(hits, key=lambda h: (-h.score, h.collection_id, h.node_id))
    return ranked[:k]


class FederatedSearch:
    """Fan-out search over the active collections of a registry."""

    def __init__(
        self,
        registry: CollectionRegistry,
        indexes: Mapping[str, CollectionIndex],
        *,
        search_config: SearchConfig | None = None,
        config: FederationConfig | None = None,
        searcher_factory: Callable[[CollectionIndex], NeighborSearch] | None = None,
    ):
        """Initialize federated search.

        Args:
            registry: Collection registry (source of weights, activity, access times)
            indexes: Live collection indexes keyed by collection id
            search_config: Neighbor search tuning shared by all collections
            config: Federation settings
            searcher_factory: Builds the per-collection searcher (defaults to NeighborSearch)
        """
        self.registry = registry
        self.indexes = indexes
        self.search_config = search_config or SearchConfig()
        self.config = config or FederationConfig()
        self._searcher_factory = searcher_factory or (
            lambda index: NeighborSearch(index, self.search_config)
        )

    async def search(
        self,
        query_embedding: Sequence[float],
        *,
        k: int | None = None,
        min_collections: int | None = None,
        collection_ids: Iterable[str] | None = None,
        timeout_seconds: float | None = None,
        progress: asyncio.Queue | None = None,
        now: datetime | None = None,
    ) -> list[FederatedHit]:
        """Search every active collection and merge the results.

        Args:
            query_embedding: Full-length query embedding
            k: Number of merged results (default from config)
            min_collections: Responding collections expected; fewer only logs a warning
            collection_ids: Optional allow-list, intersected with the active set
            timeout_seconds: Per-collection timeout (default from config)
            progress: Optional queue receiving SearchProgress events
            now: Reference time for freshness and access updates

        Returns:
            Up to k hits, best first. Zero active collections yields [].

        Raises:
            ValueError: If k < 1
            InvariantViolationError: If any collection breaches an index invariant
        """
        k = k if k is not None else self.config.default_k
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        min_collections = (
            min_collections if min_collections is not None else self.config.min_collections
        )
        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else self.config.collection_timeout_seconds
        )
        now = now or utcnow()

        targets = self._select_collections(collection_ids)
        total = len(targets)
        await self._publish(progress, SearchProgress(event="started", total=total))

        if not targets:
            logger.info("Federated search: no active collections")
            await self._publish(progress, SearchProgress(event="finished"))
            return []

        counter = {"completed": 0}
        tasks = [
            asyncio.create_task(
                self._search_one(meta, query_embedding, k, timeout, progress, counter, total)
            )
            for meta in targets
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        responded = sum(1 for _, hits in outcomes if hits is not None)
        if responded < min_collections:
            logger.warning(
                f"Federated search: only {responded}/{total} collections responded "
                f"(wanted at least {min_collections})"
            )

        scored: list[FederatedHit] = []
        contributors: list[str] = []
        for meta, hits in outcomes:
            if hits:
                scored.extend(self._score_collection(meta, hits, now))
                contributors.append(meta.id)
        results = merge_hits(scored, k)

        for collection_id in sorted(contributors):
            try:
                self.registry.touch(collection_id, now)
            except NotFoundError:
                logger.warning(f"Collection {collection_id!r} was removed during the search")

        logger.info(
            f"Federated search: {len(results)} hits from {responded}/{total} collections"
        )
        await self._publish(
            progress,
            SearchProgress(event="finished", completed=total, total=total, hits=len(results)),
        )
        return results

    def _select_collections(self, collection_ids: Iterable[str] | None) -> list[CollectionMeta]:
        active = self.registry.list_active()
        if collection_ids is None:
            return active
        allowed = set(collection_ids)
        selected = [meta for meta in active if meta.id in allowed]
        skipped = allowed - {meta.id for meta in selected}
        if skipped:
            logger.debug(f"Ignoring unknown or inactive collections: {sorted(skipped)}")
        return selected

    async def _search_one(
        self,
        meta: CollectionMeta,
        query_embedding: Sequence[float],
        k: int,
        timeout: float,
        progress: asyncio.Queue | None,
        counter: dict[str, int],
        total: int,
    ) -> tuple[CollectionMeta, list[NeighborHit] | None]:
        """Search one collection; None marks a collection that did not respond."""
        index = self.indexes.get(meta.id)
        if index is None:
            logger.debug(f"Collection {meta.id!r} has no loaded index, treating as empty")
            hits: list[NeighborHit] | None = []
            event = "completed"
            detail = None
        else:
            try:
                searcher = self._searcher_factory(index)
                hits = await asyncio.wait_for(searcher.search(query_embedding, k), timeout=timeout)
                event, detail = "completed", None
            except TimeoutError:
                logger.warning(f"Collection {meta.id!r} timed out after {timeout}s")
                hits, event, detail = None, "timed_out", f"timeout after {timeout}s"
            except InvariantViolationError:
                raise
            except Exception as e:
                logger.warning(f"Collection {meta.id!r} search failed: {e}")
                hits, event, detail = None, "failed", str(e)

        counter["completed"] += 1
        await self._publish(
            progress,
            SearchProgress(
                event=event,
                collection_id=meta.id,
                completed=counter["completed"],
                total=total,
                hits=len(hits or []),
                detail=detail,
            ),
        )
        return meta, hits

    def _score_collection(
        self, meta: CollectionMeta, hits: list[NeighborHit], now: datetime
    ) -> list[FederatedHit]:
        normalized = normalize_scores([hit.score for hit in hits])
        weight = meta.weight if self.config.apply_weights else 1.0
        boost = (
            freshness_boost(
                meta.last_accessed,
                now,
                amplitude=self.config.freshness_amplitude,
                decay_days=self.config.freshness_decay_days,
            )
            if self.config.apply_freshness
            else 1.0
        )
        return [
            FederatedHit(
                collection_id=meta.id,
                node_id=hit.node_id,
                score=final_score(norm, weight, boost),
                raw_score=hit.score,
                normalized_score=norm,
                weight=weight,
                freshness_boost=boost,
            )
            for hit, norm in zip(hits, normalized, strict=True)
        ]

    @staticmethod
    async def _publish(progress: asyncio.Queue | None, event: SearchProgress) -> None:
        if progress is not None:
            await progress.put(event)
