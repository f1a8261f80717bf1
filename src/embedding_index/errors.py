"""Exception hierarchy for the embedding index.

Every error raised by this package derives from `EmbeddingIndexError`, which
carries an optional numeric code and a context object for diagnostics.

Error kinds:
    - InvalidDimensionError / InsufficientDimensionsError: malformed vector.
      Rejects the single operation; the index is never modified.
    - NotFoundError: unknown collection or node.
    - ProviderError: embedding or storage collaborator failed.
    - InvariantViolationError: contract breach (e.g. a populated collection
      without quantization parameters). Never swallowed.
"""


class EmbeddingIndexError(Exception):
    """Base exception for all embedding index errors.

    Args:
        message: Human-readable error description
        code: Optional numeric error code for programmatic handling
        context: Optional diagnostic object (ids, lengths, bounds, ...)
    """

    def __init__(self, message: str, code: int | None = None, context: object | None = None):
        self.message = message
        self.code = code
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.message} (Code: {self.code})"
        return self.message


class InvalidDimensionError(EmbeddingIndexError, ValueError):
    """Vector length does not match the dimensionality the operation expects."""

    def __init__(self, expected: int, actual: int, what: str = "vector"):
        super().__init__(
            f"Invalid {what} dimension: expected {expected}, got {actual}",
            code=1001,
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class InsufficientDimensionsError(EmbeddingIndexError, ValueError):
    """Embedding is shorter than the number of reduced dimensions requested."""

    def __init__(self, required: int, actual: int):
        super().__init__(
            f"Embedding has {actual} dimensions, at least {required} required for reduction",
            code=1002,
            context={"required": required, "actual": actual},
        )
        self.required = required
        self.actual = actual


class NotFoundError(EmbeddingIndexError, LookupError):
    """Base class for lookups of unknown entities."""


class CollectionNotFoundError(NotFoundError):
    """Unknown collection id."""

    def __init__(self, collection_id: str):
        super().__init__(
            f"Collection {collection_id!r} not found",
            code=2001,
            context={"collection_id": collection_id},
        )
        self.collection_id = collection_id


class NodeNotFoundError(NotFoundError):
    """Unknown node id within a collection."""

    def __init__(self, node_id: str, collection_id: str | None = None):
        where = f" in collection {collection_id!r}" if collection_id else ""
        super().__init__(
            f"Node {node_id!r} not found{where}",
            code=2002,
            context={"node_id": node_id, "collection_id": collection_id},
        )
        self.node_id = node_id
        self.collection_id = collection_id


class ProviderError(EmbeddingIndexError):
    """An external collaborator (embedding model, storage) failed."""


class InvariantViolationError(EmbeddingIndexError, RuntimeError):
    """Unrecoverable contract breach inside the index."""


class MissingQuantizationParamsError(InvariantViolationError):
    """A collection needs quantization parameters that were never fitted."""

    def __init__(self, collection_id: str):
        super().__init__(
            f"Collection {collection_id!r} has no quantization parameters; "
            "fit them before indexing or searching",
            code=3001,
            context={"collection_id": collection_id},
        )
        self.collection_id = collection_id
