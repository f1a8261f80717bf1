"""Collection registry: catalog of collections taking part in federation.

The registry is an explicit object holding an injected ordered store of
`CollectionMeta` records keyed by collection id. It is constructed once and
passed by reference to whatever needs it (workspace, federation, CLI).
"""

import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from loguru import logger

from embedding_index.errors import CollectionNotFoundError
from embedding_index.models import CollectionMeta, RegistryStats, clamp_weight, utcnow
from embedding_index.store import InMemoryOrderedStore, OrderedKVStore

_MUTABLE_FIELDS = frozenset(CollectionMeta.model_fields) - {"id"}


class CollectionRegistry:
    """CRUD over collection metadata.

    Reads and updates of unknown ids raise `CollectionNotFoundError`;
    `delete` is idempotent. Weights are clamped into [0.1, 2.0] on write.
    """

    def __init__(
        self,
        store: OrderedKVStore | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store: OrderedKVStore = store if store is not None else InMemoryOrderedStore()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, collection_id: object) -> bool:
        return collection_id in self._store

    def register(self, meta: CollectionMeta) -> CollectionMeta:
        """Insert or replace a collection record."""
        self._store.put(meta.id, meta)
        return meta

    def create(
        self,
        name: str,
        *,
        collection_id: str | None = None,
        weight: float = 1.0,
        active: bool = True,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> CollectionMeta:
        """Register a new collection.

        Raises:
            ValueError: If `collection_id` is already registered
        """
        collection_id = collection_id or f"col-{uuid.uuid4().hex[:12]}"
        if collection_id in self._store:
            raise ValueError(f"Collection {collection_id!r} already exists")

        now = self._clock()
        meta = CollectionMeta(
            id=collection_id,
            name=name,
            weight=weight,
            active=active,
            last_accessed=now,
            created_at=now,
            description=description,
            tags=tags or [],
        )
        logger.info(f"Registered collection {collection_id!r} ({name})")
        return self.register(meta)

    def get(self, collection_id: str) -> CollectionMeta:
        meta = self._store.get(collection_id)
        if meta is None:
            raise CollectionNotFoundError(collection_id)
        return meta

    def list_collections(self, *, active_only: bool = False) -> list[CollectionMeta]:
        """List collections, most recently accessed first (ties by id)."""
        metas = [meta for _, meta in self._store.items() if meta.active or not active_only]
        metas.sort(key=lambda m: m.id)
        metas.sort(key=lambda m: m.last_accessed, reverse=True)
        return metas

    def list_active(self) -> list[CollectionMeta]:
        """Collections included in federated search."""
        return self.list_collections(active_only=True)

    def update(self, collection_id: str, **changes: Any) -> CollectionMeta:
        """Apply a partial update; the id is never changed.

        Raises:
            CollectionNotFoundError: If the collection is unknown
            ValueError: If a change names an unknown field
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or immutable collection fields: {sorted(unknown)}")

        current = self.get(collection_id)
        updated = CollectionMeta.model_validate({**current.model_dump(), **changes})
        return self.register(updated)

    def set_weight(self, collection_id: str, weight: float) -> CollectionMeta:
        clamped = clamp_weight(weight)
        if clamped != weight:
            logger.debug(f"Clamped weight {weight} to {clamped} for {collection_id!r}")
        return self.update(collection_id, weight=clamped)

    def set_active(self, collection_id: str, active: bool) -> CollectionMeta:
        return self.update(collection_id, active=active)

    def set_node_count(self, collection_id: str, node_count: int) -> CollectionMeta:
        return self.update(collection_id, node_count=node_count)

    def touch(self, collection_id: str, now: datetime | None = None) -> CollectionMeta:
        """Set last_accessed to now."""
        return self.update(collection_id, last_accessed=now or self._clock())

    def delete(self, collection_id: str) -> bool:
        """Remove a collection record. Returns False if it was not registered."""
        removed = self._store.delete(collection_id)
        if removed:
            logger.info(f"Removed collection {collection_id!r} from registry")
        return removed

    def clear(self) -> None:
        self._store.clear()

    def snapshot(self) -> list[CollectionMeta]:
        """All records in id order, for persistence."""
        return [meta for _, meta in self._store.items()]

    def load(self, metas: Iterable[CollectionMeta]) -> int:
        """Replace the registry contents with the given records."""
        self._store.clear()
        count = 0
        for meta in metas:
            self.register(meta)
            count += 1
        return count

    def stats(self) -> RegistryStats:
        metas = self.snapshot()
        if not metas:
            return RegistryStats(
                total_collections=0, active_collections=0, total_nodes=0, average_weight=1.0
            )
        return RegistryStats(
            total_collections=len(metas),
            active_collections=sum(1 for m in metas if m.active),
            total_nodes=sum(m.node_count for m in metas),
            average_weight=sum(m.weight for m in metas) / len(metas),
            oldest_created=min(m.created_at for m in metas),
            newest_created=max(m.created_at for m in metas),
        )
