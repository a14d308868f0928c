"""
RAG (Retrieval-Augmented Generation) module.

Provides retrieval components for knowledge-base search:
- Sliding-window chunking
- Embedding with a deterministic offline fallback
- Thresholded similarity search over a vector store
- Reranking with neutral degradation
- Multi-query (hybrid) search with content deduplication
"""

from .chunker import Chunk, TextChunker, split_into_chunks
from .config import RAGSettings, RetrievalConfig
from .embedder import (
    Embedder,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
    cosine_similarity,
    fallback_embedding,
)
from .errors import (
    EmbeddingError,
    InputError,
    QueryExpansionError,
    RerankError,
    RetrievalError,
    StoreError,
)
from .hybrid import MultiQueryRetriever, dedupe_by_content
from .index import AccessTracker, InMemoryVectorStore, VectorMatch, VectorStore
from .query_rewriter import QueryExpander, TextGenerator
from .reranker import CrossEncoderRerankProvider, Reranker, RerankProvider, RerankResult
from .retriever import Retriever, ScoredCandidate, SimilaritySearch

__all__ = [
    "AccessTracker",
    "Chunk",
    "CrossEncoderRerankProvider",
    "Embedder",
    "EmbeddingError",
    "EmbeddingProvider",
    "InMemoryVectorStore",
    "InputError",
    "MultiQueryRetriever",
    "OpenAIEmbeddingProvider",
    "QueryExpander",
    "QueryExpansionError",
    "RAGSettings",
    "RerankError",
    "RerankProvider",
    "RerankResult",
    "Reranker",
    "RetrievalConfig",
    "RetrievalError",
    "Retriever",
    "ScoredCandidate",
    "SentenceTransformerEmbeddingProvider",
    "SimilaritySearch",
    "StoreError",
    "TextChunker",
    "TextGenerator",
    "VectorMatch",
    "VectorStore",
    "cosine_similarity",
    "dedupe_by_content",
    "fallback_embedding",
    "split_into_chunks",
]
