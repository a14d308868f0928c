"""
RAG pipeline: document ingestion, context retrieval and answer generation.
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.generation import (
    AnswerGenerator,
    AssembledContext,
    ContextAssembler,
    GeneratedAnswer,
    GenerationConfig,
)
from src.rag.chunker import TextChunker
from src.rag.config import RetrievalConfig
from src.rag.embedder import Embedder
from src.rag.errors import InputError, StoreError
from src.rag.hybrid import MultiQueryRetriever
from src.rag.index import VectorStore
from src.rag.reranker import Reranker
from src.rag.retriever import ScoredCandidate, SimilaritySearch

logger = logging.getLogger(__name__)

STORED_CONTENT_CHARS = 1000
PREVIEW_CHARS = 100


@dataclass
class ChunkResult:
    """Where one chunk of an ingested document was stored."""

    chunk_index: int
    embedding_id: str
    chunk_preview: str


@dataclass
class ProcessedDocument:
    """Outcome of ingesting one document."""

    chunk_count: int
    chunk_results: List[ChunkResult] = field(default_factory=list)
    embedding_model: str = ""


def new_embedding_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"vec_{int(time.time() * 1000)}_{suffix}"


class RAGPipeline:
    """Wires chunking, embedding, search, reranking and context assembly together."""

    def __init__(
        self,
        *,
        embedder: Embedder,
        store: VectorStore,
        search: SimilaritySearch,
        reranker: Optional[Reranker] = None,
        hybrid: Optional[MultiQueryRetriever] = None,
        chunker: Optional[TextChunker] = None,
        assembler: Optional[ContextAssembler] = None,
        generator: Optional[AnswerGenerator] = None,
        default_config: Optional[RetrievalConfig] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.similarity_search = search
        self.reranker = reranker
        self.hybrid = hybrid
        self.chunker = chunker or TextChunker()
        self.assembler = assembler or ContextAssembler()
        self.generator = generator
        self.default_config = default_config or RetrievalConfig()

    async def _candidates(self, query: str, config: RetrievalConfig) -> List[ScoredCandidate]:
        if config.use_hybrid and self.hybrid is not None:
            # Hybrid search already reranks its merged set.
            return await self.hybrid.search(
                query, config.top_k, config.filter, config.similarity_threshold
            )

        fetch_k = config.top_k * 2 if config.use_reranking else config.top_k
        candidates = await self.similarity_search.search(
            query, fetch_k, config.filter, config.similarity_threshold
        )
        if not config.use_reranking or self.reranker is None or len(candidates) <= 1:
            return candidates[: config.top_k]

        reranked = await self.reranker.rerank(
            query, [c.content for c in candidates], top_n=config.top_k
        )
        if all(r.fallback for r in reranked):
            logger.warning("Reranker degraded; keeping vector-search order")
            return candidates[: config.top_k]

        threshold = config.effective_rerank_threshold
        return [
            replace(candidates[r.index], rerank_score=r.relevance_score)
            for r in reranked
            if r.relevance_score >= threshold
        ]

    async def retrieve_context(
        self,
        query: str,
        config: Optional[RetrievalConfig] = None,
    ) -> AssembledContext:
        """
        Retrieve and assemble context for a query.

        Returns an empty AssembledContext when nothing clears the thresholds.
        Vector store failures propagate as StoreError.
        """
        if not query or not query.strip():
            raise InputError("Query must be a non-empty string")
        config = config or self.default_config

        candidates = await self._candidates(query, config)
        if not candidates:
            logger.info("No relevant context found for query")
            return AssembledContext()

        context = self.assembler.assemble(
            candidates, max_chunks=config.max_chunks, max_tokens=config.max_tokens
        )
        logger.info("Retrieved %s context chunks for query", len(context.references))
        return context

    async def hybrid_search(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[ScoredCandidate]:
        if not query or not query.strip():
            raise InputError("Query must be a non-empty string")
        if self.hybrid is None:
            return await self.similarity_search.search(query, top_k, filter)
        return await self.hybrid.search(query, top_k, filter)

    async def process_document(
        self,
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ProcessedDocument:
        """Chunk, embed and store a document; one vector per chunk."""
        if not isinstance(text, str) or not text.strip():
            raise InputError("Document text must be a non-empty string")
        metadata = dict(metadata or {})

        chunks = self.chunker.split(text)
        logger.info("Document split into %s chunks", len(chunks))
        if not chunks:
            return ProcessedDocument(chunk_count=0, embedding_model=self.embedder.model_name)

        vectors = await self.embedder.embed_batch(
            [c.text for c in chunks], mode_hint="search_document"
        )

        results: List[ChunkResult] = []
        for chunk, vector in zip(chunks, vectors):
            embedding_id = new_embedding_id()
            record = {
                **metadata,
                "content": chunk.text[:STORED_CONTENT_CHARS],
                "chunk_index": chunk.index,
                "total_chunks": chunk.total_chunks,
                "embedding_model": self.embedder.model_name,
            }
            try:
                await self.store.upsert(embedding_id, vector, record)
            except Exception as e:
                logger.error("Store embedding error: %s", e)
                raise StoreError(f"Failed to store chunk {chunk.index}: {e}") from e
            preview = chunk.text[:PREVIEW_CHARS]
            if len(chunk.text) > PREVIEW_CHARS:
                preview += "..."
            results.append(
                ChunkResult(chunk_index=chunk.index, embedding_id=embedding_id, chunk_preview=preview)
            )

        logger.info("Document processed: %s embeddings stored", len(results))
        return ProcessedDocument(
            chunk_count=len(chunks),
            chunk_results=results,
            embedding_model=self.embedder.model_name,
        )

    async def delete_embedding(self, embedding_id: str) -> None:
        try:
            await self.store.delete(embedding_id)
        except Exception as e:
            logger.error("Delete embedding error: %s", e)
            raise StoreError(f"Failed to delete {embedding_id}: {e}") from e
        logger.info("Embedding deleted: %s", embedding_id)

    async def get_stats(self) -> Dict[str, Any]:
        try:
            return await self.store.describe_stats()
        except Exception as e:
            logger.error("Get vector stats error: %s", e)
            raise StoreError(f"Failed to read store stats: {e}") from e

    async def generate_answer(
        self,
        query: str,
        history: Optional[Sequence[Mapping[str, str]]] = None,
        config: Optional[RetrievalConfig] = None,
        generation_config: Optional[GenerationConfig] = None,
    ) -> GeneratedAnswer:
        """Retrieve context (unless disabled) and ask the generator for an answer."""
        if self.generator is None:
            raise RuntimeError("RAGPipeline was built without an AnswerGenerator")
        config = config or self.default_config
        generation_config = generation_config or GenerationConfig()

        context = AssembledContext()
        if generation_config.use_rag:
            context = await self.retrieve_context(query, config)

        answer = await self.generator.generate(query, context, history, generation_config)
        answer.used_reranking = config.use_reranking
        return answer
