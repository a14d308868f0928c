"""
Exception types raised by the retrieval pipeline.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for retrieval pipeline errors."""


class InputError(RetrievalError, ValueError):
    """Invalid caller input: empty text, bad sizes, mismatched vectors."""


class EmbeddingError(RetrievalError):
    """Embedding provider failed and no fallback applied."""


class RerankError(RetrievalError):
    """Rerank provider failed (only raised in strict mode)."""


class QueryExpansionError(RetrievalError):
    """The generator could not produce query variants."""


class StoreError(RetrievalError):
    """The vector store could not be reached or rejected the request."""
