"""Scalar quantization of reduced vectors into fixed-width integers.

Pipeline position: embedding -> reduction -> quantization -> Morton encoding.

`fit` derives per-dimension (min, max) bounds from a sample once per
collection. `quantize` is a pure linear map of each coordinate into
[0, 2^bits - 1]. Out-of-range inputs are clamped into the fitted bounds,
never rejected, so every vector still receives a position in the order.
"""

from collections.abc import Sequence

import numpy as np
from loguru import logger

from embedding_index.errors import InvalidDimensionError
from embedding_index.models import QuantizationParams, ReductionStrategy
from embedding_index.reduction import reduce_many

# Width given to a dimension whose sample has a single value
DEGENERATE_RANGE_EPSILON = 1e-6


def fit(
    sample_vectors: Sequence[Sequence[float]] | np.ndarray,
    *,
    bits: int,
    reduction: ReductionStrategy | str = ReductionStrategy.TRUNCATE,
    embedding_dimensions: int | None = None,
) -> QuantizationParams:
    """Compute quantization parameters from a sample of reduced vectors.

    Args:
        sample_vectors: Reduced vectors, all of the same length D
        bits: Bit-width B of each quantized coordinate
        reduction: Reduction strategy the vectors were produced with
        embedding_dimensions: Length of the source embeddings, if known

    Returns:
        Validated quantization parameters

    Raises:
        ValueError: If the sample is empty
        InvalidDimensionError: If sample vectors differ in length
    """
    if len(sample_vectors) == 0:
        raise ValueError("Need at least one vector to fit quantization params")

    dims = len(sample_vectors[0])
    for row in sample_vectors:
        if len(row) != dims:
            raise InvalidDimensionError(expected=dims, actual=len(row), what="sample vector")

    matrix = np.asarray(sample_vectors, dtype=np.float64)
    mins = matrix.min(axis=0)
    maxs = matrix.max(axis=0)

    degenerate = (maxs - mins) < 1e-9
    if degenerate.any():
        logger.debug(f"Widening {int(degenerate.sum())} degenerate dimension(s) by epsilon")
        maxs = np.where(degenerate, mins + DEGENERATE_RANGE_EPSILON, maxs)

    return QuantizationParams(
        dims=dims,
        bits=bits,
        mins=mins.tolist(),
        maxs=maxs.tolist(),
        reduction=ReductionStrategy(reduction),
        embedding_dimensions=embedding_dimensions,
    )


def fit_embeddings(
    embeddings: Sequence[Sequence[float]],
    *,
    dims: int,
    bits: int,
    reduction: ReductionStrategy | str = ReductionStrategy.TRUNCATE,
) -> QuantizationParams:
    """Reduce full embeddings and fit quantization parameters on the result.

    Raises:
        ValueError: If no embeddings are given
        InvalidDimensionError: If embeddings differ in length
        InsufficientDimensionsError: If embeddings are shorter than `dims`
    """
    if len(embeddings) == 0:
        raise ValueError("Need at least one embedding to fit quantization params")

    length = len(embeddings[0])
    for emb in embeddings:
        if len(emb) != length:
            raise InvalidDimensionError(expected=length, actual=len(emb), what="embedding")

    reduced = reduce_many(embeddings, dims, reduction)
    params = fit(reduced, bits=bits, reduction=reduction, embedding_dimensions=length)
    logger.debug(
        f"Fitted quantization params on {len(embeddings)} embeddings "
        f"(dims={dims}, bits={bits}, reduction={params.reduction.value})"
    )
    return params


def quantize(vector: Sequence[float] | np.ndarray, params: QuantizationParams) -> list[int]:
    """Map a reduced vector onto integer levels in [0, 2^bits - 1].

    Args:
        vector: Reduced vector of length params.dims
        params: Fitted quantization parameters

    Returns:
        One integer per dimension

    Raises:
        InvalidDimensionError: If len(vector) != params.dims

    Example:
        >>> p = QuantizationParams(dims=2, bits=4, mins=[0.0, 0.0], maxs=[1.0, 1.0])
        >>> quantize([0.0, 1.0], p)
        [0, 15]
    """
    values = np.asarray(vector, dtype=np.float64).ravel()
    if values.shape[0] != params.dims:
        raise InvalidDimensionError(expected=params.dims, actual=int(values.shape[0]))

    mins = np.asarray(params.mins, dtype=np.float64)
    maxs = np.asarray(params.maxs, dtype=np.float64)

    clipped = np.clip(values, mins, maxs)
    normalized = (clipped - mins) / (maxs - mins)  # [0, 1]
    levels = np.floor(normalized * params.max_level)

    # Guard against float rounding pushing a level out of range
    levels = np.clip(levels, 0, params.max_level)
    return [int(level) for level in levels]
