"""Local on-disk snapshots of collections and the collection registry.

Layout under `<base_path>/<version>/`:
    <collection_id>.parquet       nodes (id, embedding, ordering_key, payload JSON)
    <collection_id>.params.json   QuantizationParams of the collection
    registry.json                 CollectionRegistry records
    .<collection_id>.lock         per-collection write lock
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from filelock import FileLock
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from embedding_index.errors import ProviderError
from embedding_index.models import CollectionMeta, Node, QuantizationParams, utcnow

NODE_COLUMNS = ["id", "embedding", "ordering_key", "payload"]
LOCK_TIMEOUT_SECONDS = 30


class RegistrySnapshot(BaseModel):
    """Serialized form of the collection registry."""

    saved_at: datetime = Field(default_factory=utcnow)
    collections: list[CollectionMeta] = Field(default_factory=list)


def _check_collection_id(collection_id: str) -> str:
    if collection_id in {"", ".", ".."} or any(sep in collection_id for sep in "/\\"):
        raise ValueError(f"Collection id {collection_id!r} cannot be used as a file name")
    return collection_id


def _atomic_write_text(path: Path, text: str) -> None:
    """Write via temp file + fsync + rename so readers never see a partial file."""
    temp_file = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(path)
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        if temp_file.exists():
            temp_file.unlink()
        raise ProviderError(f"Failed to write {path}: {e}", context={"path": str(path)}) from e


class LocalPersistence:
    """Parquet/JSON persistence with per-collection file locking.

    Multiple processes can write different collections simultaneously; writes
    to the same collection are serialized by its lock. Reads take no lock.
    """

    def __init__(self, base_path: Path | str, version: str = "v1"):
        """Initialize local persistence layer.

        Args:
            base_path: Base directory for snapshots (e.g., data/index/)
            version: Snapshot version, used as a subdirectory
        """
        self.base_path = Path(base_path)
        self.version = version
        self.version_path = self.base_path / version
        self.version_path.mkdir(parents=True, exist_ok=True)

    @property
    def registry_path(self) -> Path:
        return self.version_path / "registry.json"

    def _collection_paths(self, collection_id: str) -> tuple[Path, Path, Path]:
        _check_collection_id(collection_id)
        return (
            self.version_path / f"{collection_id}.parquet",
            self.version_path / f"{collection_id}.params.json",
            self.version_path / f".{collection_id}.lock",
        )

    def save_collection(
        self,
        collection_id: str,
        params: QuantizationParams | None,
        nodes: list[Node],
    ) -> Path:
        """Save a collection's nodes and quantization parameters.

        Returns:
            Path to the saved Parquet file
        """
        nodes_path, params_path, lock_path = self._collection_paths(collection_id)

        records: list[dict[str, Any]] = [
            {
                "id": node.id,
                "embedding": [float(x) for x in node.embedding],
                "ordering_key": node.ordering_key,
                "payload": json.dumps(node.payload),
            }
            for node in nodes
        ]
        df = pd.DataFrame(records, columns=NODE_COLUMNS)

        with FileLock(lock_path, timeout=LOCK_TIMEOUT_SECONDS):
            df.to_parquet(nodes_path, engine="pyarrow", compression="snappy", index=False)
            if params is not None:
                _atomic_write_text(params_path, params.model_dump_json(indent=2))
            elif params_path.exists():
                params_path.unlink()

        logger.debug(f"Saved {len(nodes)} nodes of collection {collection_id!r} to {nodes_path}")
        return nodes_path

    def load_collection(self, collection_id: str) -> tuple[QuantizationParams | None, list[Node]]:
        """Load a collection's parameters and nodes.

        Raises:
            FileNotFoundError: If the collection has no snapshot
        """
        nodes_path, params_path, _ = self._collection_paths(collection_id)

        if not nodes_path.exists():
            raise FileNotFoundError(
                f"Collection {collection_id!r} not found in {self.version_path}"
            )

        params = None
        if params_path.exists():
            params = QuantizationParams.model_validate_json(params_path.read_text(encoding="utf-8"))

        df = pd.read_parquet(nodes_path, engine="pyarrow")
        if df.empty:
            return params, []

        nodes = []
        for row in df.to_dict("records"):
            # Parquet hands list columns back as numpy arrays
            ordering_key = row["ordering_key"]
            nodes.append(
                Node(
                    id=row["id"],
                    embedding=[float(x) for x in row["embedding"]],
                    payload=json.loads(row["payload"]),
                    ordering_key=ordering_key if isinstance(ordering_key, str) else None,
                )
            )
        return params, nodes

    def delete_collection(self, collection_id: str) -> bool:
        """Remove a collection's snapshot files. Returns False if none existed."""
        nodes_path, params_path, lock_path = self._collection_paths(collection_id)
        removed = False
        with FileLock(lock_path, timeout=LOCK_TIMEOUT_SECONDS):
            for path in (nodes_path, params_path):
                if path.exists():
                    path.unlink()
                    removed = True
        if lock_path.exists():
            lock_path.unlink()
        return removed

    def list_collections(self) -> list[str]:
        """List collection ids with saved snapshots."""
        return sorted(f.stem for f in self.version_path.glob("*.parquet"))

    def save_registry(self, collections: list[CollectionMeta]) -> Path:
        snapshot = RegistrySnapshot(collections=collections)
        _atomic_write_text(self.registry_path, snapshot.model_dump_json(indent=2))
        logger.debug(f"Saved {len(collections)} registry records to {self.registry_path}")
        return self.registry_path

    def load_registry(self) -> list[CollectionMeta]:
        """Load registry records; an unreadable file is backed up and treated as empty."""
        if not self.registry_path.exists():
            return []

        try:
            snapshot = RegistrySnapshot.model_validate_json(
                self.registry_path.read_text(encoding="utf-8")
            )
        except (ValidationError, ValueError) as e:
            backup_path = self.registry_path.with_suffix(".json.corrupt")
            logger.warning(f"Corrupted registry backed up to {backup_path}: {e}")
            self.registry_path.replace(backup_path)
            return []
        return snapshot.collections
