"""Collection index: OrderingKey -> node ids, kept in key order.

Each collection owns one `CollectionIndex`, one set of quantization
parameters and two ordered stores:
    - entries: OrderingKey -> sorted tuple of node ids sharing that key
    - records: node id -> Node (with its OrderingKey cached for removal)

Writes and range scans on one collection are serialized by an asyncio lock,
so a scan observes a key either before or after a concurrent write, never
half-applied.
"""

import asyncio
from collections.abc import Iterable, Sequence

import numpy as np
from loguru import logger

from embedding_index.errors import (
    InvalidDimensionError,
    InvariantViolationError,
    MissingQuantizationParamsError,
    NodeNotFoundError,
)
from embedding_index.models import CollectionStats, Node, QuantizationParams, ReductionStrategy
from embedding_index.morton import encode, key_range, key_to_int
from embedding_index.quantizer import fit_embeddings, quantize
from embedding_index.reduction import reduce_embedding
from embedding_index.store import InMemoryOrderedStore, OrderedKVStore


def sample_evenly(items: Sequence, size: int | None) -> list:
    """Deterministically pick up to `size` items spread across the sequence."""
    if size is None or size >= len(items):
        return list(items)
    positions = np.unique(np.linspace(0, len(items) - 1, num=size).astype(int))
    return [items[i] for i in positions]


class CollectionIndex:
    """Spatial index over the nodes of a single collection."""

    def __init__(
        self,
        collection_id: str,
        params: QuantizationParams | None = None,
        *,
        entries: OrderedKVStore | None = None,
        records: OrderedKVStore | None = None,
    ):
        """Initialize an empty collection index.

        Args:
            collection_id: Owning collection id
            params: Previously fitted quantization parameters, if any
            entries: Store for OrderingKey -> node ids (in-memory if None)
            records: Store for node id -> Node (in-memory if None)
        """
        self.collection_id = collection_id
        self._params = params
        self._entries: OrderedKVStore = entries if entries is not None else InMemoryOrderedStore()
        self._records: OrderedKVStore = records if records is not None else InMemoryOrderedStore()
        self._lock = asyncio.Lock()

    @property
    def params(self) -> QuantizationParams | None:
        return self._params

    @property
    def is_fitted(self) -> bool:
        return self._params is not None

    @property
    def key_count(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._records

    # ------------------------------------------------------------------
    # Quantization parameters
    # ------------------------------------------------------------------

    def fit(
        self,
        embeddings: Sequence[Sequence[float]],
        *,
        dims: int,
        bits: int,
        reduction: ReductionStrategy | str = ReductionStrategy.TRUNCATE,
        sample_size: int | None = None,
    ) -> QuantizationParams:
        """Fit quantization parameters before the first node is indexed.

        Raises:
            InvariantViolationError: If the collection already holds nodes
                (use `refit` to re-encode them)
        """
        sample = sample_evenly(embeddings, sample_size)
        self.set_params(fit_embeddings(sample, dims=dims, bits=bits, reduction=reduction))
        return self._params  # type: ignore[return-value]

    def set_params(self, params: QuantizationParams) -> None:
        """Install parameters on an empty collection."""
        if len(self._records) > 0:
            raise InvariantViolationError(
                f"Collection {self.collection_id!r} already holds {len(self._records)} nodes; "
                "replacing its quantization params would invalidate their keys. Use refit().",
                code=3002,
                context={"collection_id": self.collection_id},
            )
        self._params = params
        logger.info(
            f"Collection {self.collection_id!r} quantization params set "
            f"(dims={params.dims}, bits={params.bits}, reduction={params.reduction.value})"
        )

    def _require_params(self) -> QuantizationParams:
        if self._params is None:
            raise MissingQuantizationParamsError(self.collection_id)
        return self._params

    def ordering_key(self, embedding: Sequence[float]) -> str:
        """Compute the OrderingKey of an embedding under this collection's params.

        Raises:
            MissingQuantizationParamsError: If params were never fitted
            InvalidDimensionError: If the embedding length differs from the
                collection's embedding dimensionality
            InsufficientDimensionsError: If the embedding is shorter than D
        """
        params = self._require_params()
        return self._ordering_key(embedding, params)

    @staticmethod
    def _ordering_key(embedding: Sequence[float], params: QuantizationParams) -> str:
        expected = params.embedding_dimensions
        if expected is not None and len(embedding) != expected:
            raise InvalidDimensionError(
                expected=expected, actual=len(embedding), what="embedding"
            )
        reduced = reduce_embedding(embedding, params.dims, params.reduction)
        return encode(quantize(reduced, params), params.bits)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, node: Node) -> Node:
        """Insert or replace a node.

        The key is computed before the lock is taken, so a malformed
        embedding rejects the call without touching the index.

        Returns:
            The stored node, with `ordering_key` populated
        """
        stored = node.model_copy(update={"ordering_key": self.ordering_key(node.embedding)})
        async with self._lock:
            self._upsert(stored)
        return stored

    async def insert_many(self, nodes: Iterable[Node]) -> list[Node]:
        """Insert a batch of nodes; a malformed node rejects the whole batch."""
        params = self._require_params()
        stored = [
            node.model_copy(update={"ordering_key": self._ordering_key(node.embedding, params)})
            for node in nodes
        ]
        async with self._lock:
            for node in stored:
                self._upsert(node)
        logger.debug(f"Inserted {len(stored)} nodes into collection {self.collection_id!r}")
        return stored

    async def remove(self, node_id: str) -> Node:
        """Remove a node and its index entry.

        Raises:
            NodeNotFoundError: If the node is not in this collection
        """
        async with self._lock:
            node = self._records.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id, self.collection_id)
            if node.ordering_key is None:
                raise InvariantViolationError(
                    f"Node {node_id!r} has no cached ordering key",
                    code=3003,
                    context={"collection_id": self.collection_id, "node_id": node_id},
                )
            self._unlink(node_id, node.ordering_key)
            self._records.delete(node_id)
        return node

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._records.clear()

    async def restore(self, nodes: Iterable[Node]) -> int:
        """Bulk-load persisted nodes, reusing cached keys when they fit the params."""
        params = self._require_params()
        restored = []
        for node in nodes:
            key = node.ordering_key
            if key is None or len(key) != params.hex_width:
                key = self._ordering_key(node.embedding, params)
                node = node.model_copy(update={"ordering_key": key})
            restored.append(node)

        async with self._lock:
            for node in restored:
                self._upsert(node)
        return len(restored)

    async def refit(
        self,
        *,
        dims: int | None = None,
        bits: int | None = None,
        reduction: ReductionStrategy | str | None = None,
        sample_size: int | None = None,
    ) -> QuantizationParams:
        """Re-fit parameters from the stored embeddings and re-encode every node.

        Unspecified settings are carried over from the current parameters.
        All new keys are computed before the index is swapped, so a failure
        leaves the previous state intact.

        Raises:
            ValueError: If the collection is empty, or it has no params and
                dims/bits are not given
        """
        async with self._lock:
            nodes = [node for _, node in self._records.items()]
            if not nodes:
                raise ValueError(f"Cannot refit empty collection {self.collection_id!r}")

            current = self._params
            if current is not None:
                dims = dims if dims is not None else current.dims
                bits = bits if bits is not None else current.bits
                reduction = reduction if reduction is not None else current.reduction
            if dims is None or bits is None:
                raise ValueError("dims and bits are required to refit an unfitted collection")

            params = fit_embeddings(
                sample_evenly([node.embedding for node in nodes], sample_size),
                dims=dims,
                bits=bits,
                reduction=reduction or ReductionStrategy.TRUNCATE,
            )
            rekeyed = [
                node.model_copy(update={"ordering_key": self._ordering_key(node.embedding, params)})
                for node in nodes
            ]

            self._entries.clear()
            self._records.clear()
            self._params = params
            for node in rekeyed:
                self._upsert(node)

        logger.info(f"Re-encoded {len(rekeyed)} nodes of collection {self.collection_id!r}")
        return params

    def _upsert(self, node: Node) -> None:
        previous = self._records.get(node.id)
        if previous is not None and previous.ordering_key is not None:
            self._unlink(previous.id, previous.ordering_key)

        key = node.ordering_key
        ids = set(self._entries.get(key, ()))
        ids.add(node.id)
        self._entries.put(key, tuple(sorted(ids)))
        self._records.put(node.id, node)

    def _unlink(self, node_id: str, key: str) -> None:
        remaining = tuple(i for i in self._entries.get(key, ()) if i != node_id)
        if remaining:
            self._entries.put(key, remaining)
        else:
            self._entries.delete(key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, node_id: str) -> Node:
        async with self._lock:
            node = self._records.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, self.collection_id)
        return node

    async def get_many(self, node_ids: Iterable[str]) -> list[Node]:
        """Fetch nodes by id, skipping ids removed since they were scanned."""
        async with self._lock:
            found = [self._records.get(node_id) for node_id in node_ids]
        return [node for node in found if node is not None]

    async def nodes(self) -> list[Node]:
        """Snapshot of every node, in node-id order."""
        async with self._lock:
            return [node for _, node in self._records.items()]

    async def range_scan(
        self, center_key: str, radius: int | str, limit: int | None = None
    ) -> list[tuple[str, str]]:
        """Return (key, node_id) pairs with key in [center - radius, center + radius].

        Results are ascending by key, then node id, truncated at `limit`.

        Args:
            center_key: Hex OrderingKey at the center of the scan
            radius: Non-negative radius, as an int or hex string
            limit: Maximum number of pairs to return (None for no limit)
        """
        params = self._require_params()
        if isinstance(radius, str):
            radius = key_to_int(radius)
        low, high = key_range(center_key, radius, params.dims, params.bits)

        results: list[tuple[str, str]] = []
        async with self._lock:
            for key, node_ids in self._entries.range(low, high):
                for node_id in node_ids:
                    if limit is not None and len(results) >= limit:
                        return results
                    results.append((key, node_id))
        return results

    async def stats(self) -> CollectionStats:
        async with self._lock:
            params = self._params
            return CollectionStats(
                collection_id=self.collection_id,
                node_count=len(self._records),
                key_count=len(self._entries),
                fitted=params is not None,
                dims=params.dims if params else None,
                bits=params.bits if params else None,
                reduction=params.reduction if params else None,
            )
