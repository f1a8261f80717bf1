"""Collection lifecycle orchestration.

A `Workspace` ties together the registry, one `CollectionIndex` per
collection, the embedding client and local persistence:
1. Import: create the registry entry and fit params on first import,
   embed text when needed, insert nodes, update the node count
2. Query: single-collection, federated or batched search from text or a vector,
   plus node lookup and paged listing
3. Delete: cascade over index, registry entry and snapshot files
4. Save/load: snapshot everything to disk and restore it
"""

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from loguru import logger

from embedding_index.config import EmbeddingIndexConfig
from embedding_index.embedding import EmbeddingClient, create_embedding_client
from embedding_index.errors import InvariantViolationError, MissingQuantizationParamsError
from embedding_index.federation import FederatedSearch
from embedding_index.index import CollectionIndex
from embedding_index.models import (
    CollectionMeta,
    CollectionStats,
    FederatedHit,
    NeighborHit,
    Node,
    QuantizationParams,
    ReductionStrategy,
)
from embedding_index.persistence import LocalPersistence
from embedding_index.registry import CollectionRegistry
from embedding_index.search import NeighborSearch

Query = str | Sequence[float]


class Workspace:
    """Registry, collection indexes and providers for one deployment."""

    def __init__(
        self,
        config: EmbeddingIndexConfig | None = None,
        *,
        registry: CollectionRegistry | None = None,
        embedding_client: EmbeddingClient | None = None,
        persistence: LocalPersistence | None = None,
    ):
        """Initialize a workspace.

        Args:
            config: Configuration (defaults if None)
            registry: Collection registry (a fresh in-memory one if None)
            embedding_client: Client used for text inputs (built from config if None)
            persistence: Snapshot store (built from config on first save/load if None)
        """
        self.config = config or EmbeddingIndexConfig()
        self.registry = registry or CollectionRegistry()
        self.embedding_client = embedding_client or create_embedding_client(self.config.embedding)
        self._persistence = persistence
        self.indexes: dict[str, CollectionIndex] = {}
        self.federation = FederatedSearch(
            self.registry,
            self.indexes,
            search_config=self.config.search,
            config=self.config.federation,
        )
        # Serializes collection creation, deletion and first-time fitting
        self._lifecycle_lock = asyncio.Lock()

    @property
    def persistence(self) -> LocalPersistence:
        if self._persistence is None:
            storage = self.config.storage
            self._persistence = LocalPersistence(storage.base_path, storage.version)
        return self._persistence

    async def embed(self, query: Query) -> list[float]:
        """Return the query as a vector, embedding it first if it is text."""
        if isinstance(query, str):
            return await self.embedding_client.embed_single(query)
        return [float(x) for x in query]

    def get_index(self, collection_id: str) -> CollectionIndex:
        """Return the index of a registered collection, creating an empty one if needed.

        Raises:
            CollectionNotFoundError: If the collection is not registered
        """
        self.registry.get(collection_id)
        index = self.indexes.get(collection_id)
        if index is None:
            index = CollectionIndex(collection_id)
            self.indexes[collection_id] = index
        return index

    async def import_nodes(
        self,
        collection_id: str,
        nodes: Iterable[Node | Mapping[str, Any]],
        *,
        name: str | None = None,
        weight: float = 1.0,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> CollectionMeta:
        """Insert nodes into a collection, creating it on first import.

        Quantization params are fitted from the first batch imported into an
        empty, unfitted collection.

        Returns:
            The updated collection metadata
        """
        batch = [node if isinstance(node, Node) else Node.model_validate(node) for node in nodes]

        async with self._lifecycle_lock:
            if collection_id not in self.registry:
                self.registry.create(
                    name or collection_id,
                    collection_id=collection_id,
                    weight=weight,
                    description=description,
                    tags=tags,
                )
            index = self.get_index(collection_id)

            if batch and not index.is_fitted:
                settings = self.config.index
                index.fit(
                    [node.embedding for node in batch],
                    dims=settings.reduced_dims,
                    bits=settings.bits,
                    reduction=settings.reduction,
                    sample_size=settings.sample_size,
                )

        if batch:
            await index.insert_many(batch)
        logger.info(f"Imported {len(batch)} nodes into collection {collection_id!r}")
        return self.registry.set_node_count(collection_id, len(index))

    async def import_texts(
        self,
        collection_id: str,
        documents: Iterable[Mapping[str, Any]],
        **collection_fields: Any,
    ) -> CollectionMeta:
        """Embed and import documents of the form {"id", "text", "payload"?}.

        Documents without a payload keep their text as the payload.
        """
        documents = list(documents)
        texts = [doc["text"] for doc in documents]
        batch_size = self.config.embedding.batch_size

        embeddings: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            embeddings.extend(await self.embedding_client.embed_batch(batch))

        nodes = [
            Node(
                id=str(doc["id"]),
                embedding=embedding,
                payload=doc.get("payload", {"text": doc["text"]}),
            )
            for doc, embedding in zip(documents, embeddings, strict=True)
        ]
        return await self.import_nodes(collection_id, nodes, **collection_fields)

    async def remove_node(self, collection_id: str, node_id: str) -> Node:
        """Remove one node from a collection.

        Raises:
            CollectionNotFoundError: If the collection is not registered
            NodeNotFoundError: If the node is not in the collection
        """
        index = self.get_index(collection_id)
        node = await index.remove(node_id)
        self.registry.set_node_count(collection_id, len(index))
        return node

    async def delete_collection(self, collection_id: str) -> bool:
        """Delete a collection with its index and snapshot files.

        Idempotent: returns False when there was nothing to delete.
        """
        async with self._lifecycle_lock:
            index = self.indexes.pop(collection_id, None)
            if index is not None:
                await index.clear()
            removed = self.registry.delete(collection_id)
            if self._persistence is not None:
                removed = self._persistence.delete_collection(collection_id) or removed
        removed = removed or index is not None
        if removed:
            logger.info(f"Deleted collection {collection_id!r}")
        return removed

    async def search_collection(
        self, collection_id: str, query: Query, k: int = 10
    ) -> list[NeighborHit]:
        """Nearest-neighbor search within one collection.

        Raises:
            CollectionNotFoundError: If the collection is not registered
        """
        index = self.get_index(collection_id)
        embedding = await self.embed(query)
        hits = await NeighborSearch(index, self.config.search).search(embedding, k)
        if hits:
            self.registry.touch(collection_id)
        return hits

    async def federated_search(
        self,
        query: Query,
        *,
        k: int | None = None,
        min_collections: int | None = None,
        collection_ids: Iterable[str] | None = None,
        progress: asyncio.Queue | None = None,
    ) -> list[FederatedHit]:
        """Search all active collections (optionally restricted to an allow-list)."""
        embedding = await self.embed(query)
        return await self.federation.search(
            embedding,
            k=k,
            min_collections=min_collections,
            collection_ids=collection_ids,
            progress=progress,
        )

    async def batch_search(
        self,
        queries: Sequence[str],
        *,
        k: int | None = None,
        collection_ids: Iterable[str] | None = None,
    ) -> dict[str, list[FederatedHit]]:
        """Run a federated search per query, in order.

        A query that fails maps to an empty result instead of failing the batch.
        Invariant violations still propagate.

        Returns:
            Mapping of query text to its hits (duplicate queries run once)
        """
        allowed = list(collection_ids) if collection_ids is not None else None
        results: dict[str, list[FederatedHit]] = {}
        for query in queries:
            if query in results:
                continue
            try:
                results[query] = await self.federated_search(
                    query, k=k, collection_ids=allowed
                )
            except InvariantViolationError:
                raise
            except Exception as e:
                logger.warning(f"Batch search failed for query {query!r}: {e}")
                results[query] = []
        return results

    async def get_node(self, collection_id: str, node_id: str) -> Node:
        """Fetch one node.

        Raises:
            CollectionNotFoundError: If the collection is not registered
            NodeNotFoundError: If the node is not in the collection
        """
        return await self.get_index(collection_id).get(node_id)

    async def list_nodes(
        self, collection_id: str, *, limit: int = 100, offset: int = 0
    ) -> list[Node]:
        """Page through a collection's nodes in node-id order."""
        if limit < 0 or offset < 0:
            raise ValueError(f"limit and offset must be non-negative, got {limit}, {offset}")
        nodes = await self.get_index(collection_id).nodes()
        return nodes[offset : offset + limit]

    async def refit(
        self,
        collection_id: str,
        *,
        dims: int | None = None,
        bits: int | None = None,
        reduction: ReductionStrategy | str | None = None,
    ) -> QuantizationParams:
        """Re-fit a collection's params from its stored embeddings and re-encode it."""
        index = self.get_index(collection_id)
        return await index.refit(
            dims=dims,
            bits=bits,
            reduction=reduction,
            sample_size=self.config.index.sample_size,
        )

    async def collection_stats(self, collection_id: str) -> CollectionStats:
        return await self.get_index(collection_id).stats()

    async def save(self) -> int:
        """Snapshot the registry and every collection. Returns collections saved."""
        persistence = self.persistence
        saved = 0
        for meta in self.registry.snapshot():
            index = self.get_index(meta.id)
            persistence.save_collection(meta.id, index.params, await index.nodes())
            saved += 1
        persistence.save_registry(self.registry.snapshot())
        logger.info(f"Saved {saved} collections to {persistence.version_path}")
        return saved

    def save_registry(self) -> None:
        """Snapshot only the registry, leaving collection files untouched."""
        self.persistence.save_registry(self.registry.snapshot())

    async def load(self) -> int:
        """Replace in-memory state with the on-disk snapshot. Returns collections loaded."""
        persistence = self.persistence
        metas = persistence.load_registry()

        async with self._lifecycle_lock:
            self.indexes.clear()
            self.registry.load(metas)
            for meta in metas:
                index = CollectionIndex(meta.id)
                self.indexes[meta.id] = index
                try:
                    params, nodes = persistence.load_collection(meta.id)
                except FileNotFoundError:
                    logger.warning(f"No snapshot for registered collection {meta.id!r}")
                    continue
                if params is not None:
                    index.set_params(params)
                    await index.restore(nodes)
                elif nodes:
                    raise MissingQuantizationParamsError(meta.id)
                self.registry.set_node_count(meta.id, len(index))

        logger.info(f"Loaded {len(metas)} collections from {persistence.version_path}")
        return len(metas)

