"""
Build the RAG pipeline from environment settings.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.generation import AnswerGenerator, ContextAssembler
from src.llm import ChatClient, create_client
from src.rag.chunker import TextChunker
from src.rag.config import RAGSettings
from src.rag.embedder import (
    Embedder,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
)
from src.rag.hybrid import MultiQueryRetriever
from src.rag.index import InMemoryVectorStore, VectorStore
from src.rag.query_rewriter import QueryExpander
from src.rag.reranker import CrossEncoderRerankProvider, Reranker
from src.rag.retriever import SimilaritySearch

from .pipeline import RAGPipeline

logger = logging.getLogger(__name__)


def build_embedding_provider(settings: RAGSettings) -> Optional[EmbeddingProvider]:
    """Provider named by EMBEDDING_PROVIDER; None means offline fallback only."""
    kind = settings.embedding_provider.strip().lower()
    if kind == "openai":
        return OpenAIEmbeddingProvider(
            model=settings.embedding_model, dimension=settings.embedding_dimension
        )
    if kind in ("sentence-transformers", "sbert", "local"):
        return SentenceTransformerEmbeddingProvider(settings.embedding_model)
    if kind in ("none", "fallback", "offline"):
        return None
    raise ValueError(f"Unsupported embedding provider {kind!r}")


def build_pipeline(
    settings: Optional[RAGSettings] = None,
    *,
    store: Optional[VectorStore] = None,
    chat_client: Optional[ChatClient] = None,
) -> RAGPipeline:
    """
    Construct every component explicitly from settings.

    Components that cannot be initialised (no API key, model download fails)
    are disabled with a warning rather than failing startup, except the
    embedder, which falls back to offline mode.
    """
    settings = settings or RAGSettings.from_env()

    try:
        provider = build_embedding_provider(settings)
    except Exception as e:
        logger.warning("Embedding provider disabled (initialization failed): %s", e)
        provider = None

    dimension = settings.embedding_dimension
    if isinstance(provider, SentenceTransformerEmbeddingProvider):
        dimension = provider.dimension

    embedder = Embedder(
        provider,
        dimension=dimension,
        batch_size=settings.embedding_batch_size,
        batch_delay=settings.embedding_batch_delay,
        timeout=settings.provider_timeout,
        model_name=settings.embedding_model if provider is not None else "",
    )

    if store is None:
        store = InMemoryVectorStore(dimension=dimension, namespace=settings.vector_namespace)
    search = SimilaritySearch(
        embedder,
        store,
        access_tracker=store if hasattr(store, "record_access") else None,  # type: ignore[arg-type]
        threshold=settings.similarity_threshold,
    )

    rerank_provider = None
    if settings.use_reranking:
        try:
            rerank_provider = CrossEncoderRerankProvider(settings.reranker_model)
        except Exception as e:
            logger.warning("Cross-encoder reranker disabled (initialization failed): %s", e)
    reranker = Reranker(rerank_provider, timeout=settings.provider_timeout)

    if chat_client is None:
        try:
            chat_client = create_client()
        except Exception as e:
            logger.warning("Chat client disabled (initialization failed): %s", e)

    hybrid = None
    generator = None
    if chat_client is not None:
        expander = QueryExpander(chat_client, timeout=settings.provider_timeout)
        hybrid = MultiQueryRetriever(
            search,
            expander,
            # no provider: merged set is returned unreranked
            reranker=reranker if rerank_provider is not None else None,
            per_query_top_k=settings.per_query_top_k,
        )
        generator = AnswerGenerator(chat_client)

    return RAGPipeline(
        embedder=embedder,
        store=store,
        search=search,
        reranker=reranker,
        hybrid=hybrid,
        chunker=TextChunker(
            chunk_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            min_length=settings.min_chunk_length,
        ),
        assembler=ContextAssembler(
            max_chunks=settings.max_context_chunks,
            max_tokens=settings.max_context_tokens,
        ),
        generator=generator,
        default_config=settings.retrieval_config(),
    )
