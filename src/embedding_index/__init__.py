"""Locality-preserving embedding index with federated semantic search.

Embeddings are reduced to a few coordinates, quantized, and interleaved into
Morton (Z-order) keys, so nearest-neighbor search becomes a range scan over
an ordered key-value store followed by cosine re-ranking. Independently
indexed collections are merged into one weighted, recency-boosted ranking.

Architecture:
    - reduction / quantizer / morton: embedding -> OrderingKey pipeline
    - store / index: per-collection ordered index with range scans
    - search: radius-adaptive neighbor search
    - registry / federation: collection catalog and cross-collection search
    - embedding / persistence / workspace: providers, snapshots, lifecycle

Usage:
    >>> from embedding_index import Workspace
    >>> workspace = Workspace()
    >>> await workspace.import_texts("notes", [{"id": "n1", "text": "fly lines"}])
    >>> hits = await workspace.federated_search("which fly lines", k=5)
"""

__version__ = "0.1.0"

from embedding_index.federation import FederatedSearch
from embedding_index.index import CollectionIndex
from embedding_index.models import (
    CollectionMeta,
    FederatedHit,
    NeighborHit,
    Node,
    QuantizationParams,
    ReductionStrategy,
)
from embedding_index.registry import CollectionRegistry
from embedding_index.search import NeighborSearch
from embedding_index.workspace import Workspace

__all__ = [
    "CollectionIndex",
    "CollectionMeta",
    "CollectionRegistry",
    "FederatedHit",
    "FederatedSearch",
    "NeighborHit",
    "NeighborSearch",
    "Node",
    "QuantizationParams",
    "ReductionStrategy",
    "Workspace",
]
