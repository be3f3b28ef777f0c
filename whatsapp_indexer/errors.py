"""Error taxonomy for the indexer core.

Extraction and query normalization never raise; everything below is raised by
the stores, the embedding backend or argument validation.
"""


class IndexerError(Exception):
    """Base class for errors surfaced by the indexer."""


class ValidationError(IndexerError):
    """Malformed or unparseable query arguments. Never retried."""


class NotReadyError(IndexerError):
    """The indexer was used before init() finished loading the stores."""


class PersistenceError(IndexerError):
    """Underlying store or index read/write failure."""


class EmbeddingError(PersistenceError):
    """The embedding backend failed or returned an unusable vector."""
