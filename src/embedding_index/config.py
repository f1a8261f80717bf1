"""Configuration management for the embedding index using Hydra.

All configuration is loaded from YAML files in conf/embedding_index/.
This module provides typed config objects and validation.
"""

from pathlib import Path

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

from embedding_index.embedding import EmbeddingConfig
from embedding_index.federation import FederationConfig
from embedding_index.models import ReductionStrategy
from embedding_index.search import SearchConfig


class IndexConfig(BaseModel):
    """Quantization settings applied to newly created collections.

    Attributes:
        reduced_dims: Number of reduced dimensions D
        bits: Bit-width B per quantized coordinate
        reduction: Reduction strategy
        sample_size: Optional cap on the number of embeddings used to fit params
    """

    reduced_dims: int = Field(default=8, ge=1, le=16)
    bits: int = Field(default=16, ge=1, le=32)
    reduction: ReductionStrategy = ReductionStrategy.TRUNCATE
    sample_size: int | None = Field(default=None, ge=1)


class StorageConfig(BaseModel):
    """Snapshot location.

    Attributes:
        base_path: Base directory for collection snapshots and the registry
        version: Snapshot version subdirectory
    """

    base_path: str = "data/index"
    version: str = "v1"


class EmbeddingIndexConfig(BaseModel):
    """Top-level configuration."""

    index: IndexConfig = Field(default_factory=IndexConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    federation: FederationConfig = Field(default_factory=FederationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


def default_config_path() -> Path:
    # conf/embedding_index/ relative to repo root
    return Path(__file__).parent.parent.parent / "conf" / "embedding_index"


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> EmbeddingIndexConfig:
    """Load configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/embedding_index/)
        overrides: List of config overrides (e.g., ["index.bits=8"])

    Returns:
        Validated configuration object

    Raises:
        FileNotFoundError: If the config directory does not exist
        pydantic.ValidationError: If a value is out of range

    Example:
        >>> config = load_config("default", overrides=["federation.default_k=5"])
        >>> config.federation.default_k
        5
    """
    config_path = Path(config_path or default_config_path()).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\nCreate it with: mkdir -p {config_path}"
        )

    with initialize_config_dir(
        config_dir=str(config_path), version_base=None, job_name="embedding_index"
    ):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return EmbeddingIndexConfig(**config_dict)  # type: ignore


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Returns:
        Dictionary suitable for writing to YAML
    """
    return {
        "index": {
            "reduced_dims": 8,
            "bits": 16,
            "reduction": "truncate",
            "sample_size": None,
        },
        "search": {
            "radius_power": 12,
            "growth_factor": 4,
            "max_widenings": 3,
            "candidate_multiplier": 4,
            "min_candidates": 50,
            "linear_scan_fallback": True,
        },
        "federation": {
            "default_k": 20,
            "min_collections": 1,
            "collection_timeout_seconds": 30.0,
            "freshness_amplitude": 0.2,
            "freshness_decay_days": 30.0,
            "apply_weights": True,
            "apply_freshness": True,
        },
        "storage": {
            "base_path": "data/index",
            "version": "v1",
        },
        "embedding": {
            "model": "mock/sha256",
            "version": "v1",
            "dimensions": 512,
            "batch_size": 100,
            "max_retries": 3,
            "timeout_seconds": 15.0,
            "api_key": "${oc.env:OPENAI_API_KEY,null}",
            "mock_fallback": True,
        },
    }
