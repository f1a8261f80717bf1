"""Dimensionality reduction from full embeddings to quantizer coordinates.

Two strategies, fixed per collection:
    - truncate: keep the first D components
    - block_average: split into D near-equal contiguous blocks, average each

Both are deterministic and O(len(embedding)).
"""

from collections.abc import Callable, Sequence

import numpy as np

from embedding_index.errors import InsufficientDimensionsError
from embedding_index.models import ReductionStrategy

Reducer = Callable[[np.ndarray, int], np.ndarray]


def truncate(embedding: np.ndarray, dims: int) -> np.ndarray:
    return embedding[:dims].copy()


def block_average(embedding: np.ndarray, dims: int) -> np.ndarray:
    # array_split keeps block sizes within one element of each other
    blocks = np.array_split(embedding, dims)
    return np.array([block.mean() for block in blocks], dtype=np.float64)


REDUCERS: dict[ReductionStrategy, Reducer] = {
    ReductionStrategy.TRUNCATE: truncate,
    ReductionStrategy.BLOCK_AVERAGE: block_average,
}


def reduce_embedding(
    embedding: Sequence[float] | np.ndarray,
    dims: int,
    strategy: ReductionStrategy | str = ReductionStrategy.TRUNCATE,
) -> np.ndarray:
    """Reduce an embedding to `dims` coordinates.

    Args:
        embedding: Full embedding vector
        dims: Number of reduced dimensions D
        strategy: Reduction strategy (enum member or its string value)

    Returns:
        Float64 array of length `dims`

    Raises:
        InsufficientDimensionsError: If the embedding has fewer than `dims` components
        ValueError: If `dims` is not positive or the strategy is unknown

    Example:
        >>> reduce_embedding([1.0, 2.0, 3.0, 4.0], 2, "block_average").tolist()
        [1.5, 3.5]
    """
    if dims <= 0:
        raise ValueError(f"dims must be positive, got {dims}")

    vector = np.asarray(embedding, dtype=np.float64).ravel()
    if vector.shape[0] < dims:
        raise InsufficientDimensionsError(required=dims, actual=int(vector.shape[0]))

    try:
        reducer = REDUCERS[ReductionStrategy(strategy)]
    except ValueError as e:
        raise ValueError(f"Unknown reduction strategy: {strategy!r}") from e

    return reducer(vector, dims)


def reduce_many(
    embeddings: Sequence[Sequence[float]],
    dims: int,
    strategy: ReductionStrategy | str = ReductionStrategy.TRUNCATE,
) -> np.ndarray:
    """Reduce a batch of embeddings into a (n, dims) array."""
    if len(embeddings) == 0:
        return np.empty((0, dims), dtype=np.float64)
    return np.vstack([reduce_embedding(e, dims, strategy) for e in embeddings])
