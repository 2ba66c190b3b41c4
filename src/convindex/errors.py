"""Exception types raised by the indexing pipeline."""


class ConvIndexError(Exception):
    """Base class for convindex errors."""


class StorageError(ConvIndexError):
    """The local conversation store could not be read."""


class CheckpointError(ConvIndexError):
    """The indexing checkpoint could not be persisted."""


class EmbeddingError(ConvIndexError):
    """A single embedding request failed."""


class VectorIndexError(ConvIndexError):
    """An upsert or lookup against the vector index failed."""
