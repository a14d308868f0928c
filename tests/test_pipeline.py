"""
Tests for the RAG pipeline: ingestion, context retrieval, reranking, answer generation, factory.
"""

from __future__ import annotations

import pytest

from src.generation import AnswerGenerator, GenerationConfig
from src.llm import Generation
from src.orchestrator import RAGPipeline, build_embedding_provider, build_pipeline
from src.rag import (
    Embedder,
    InMemoryVectorStore,
    InputError,
    RAGSettings,
    Reranker,
    RerankResult,
    RetrievalConfig,
    ScoredCandidate,
    SimilaritySearch,
    StoreError,
    fallback_embedding,
)

DIM = 64

DOCUMENT = " ".join(
    f"Topic {i} covers {word} in depth, including examples and common pitfalls for {word}."
    for i, word in enumerate(
        ["deadlock", "paging", "scheduling", "semaphores", "indexes", "transactions",
         "handshakes", "routing", "caching", "sharding", "replication", "hashing"]
    )
)


class FakeSearch:
    """Similarity search stand-in with canned candidates."""

    def __init__(self, candidates: list[ScoredCandidate]):
        self.candidates = candidates
        self.calls: list[tuple] = []

    async def search(self, query, top_k=5, filter=None, threshold=None):
        self.calls.append((query, top_k, dict(filter or {}), threshold))
        return self.candidates[:top_k]


class FakeHybrid(FakeSearch):
    pass


class KeywordProvider:
    async def rerank(self, query, documents, top_n):
        words = set(query.lower().split())
        scored = [
            RerankResult(index=i, relevance_score=len(words & set(d.lower().split())) / len(words))
            for i, d in enumerate(documents)
        ]
        scored.sort(key=lambda r: r.relevance_score, reverse=True)
        return scored[:top_n]


class BrokenProvider:
    async def rerank(self, query, documents, top_n):
        raise RuntimeError("rerank down")


class FailingStore(InMemoryVectorStore):
    async def upsert(self, id, vector, metadata):
        raise ConnectionError("index offline")

    async def query(self, vector, top_k, filter=None):
        raise ConnectionError("index offline")


class FakeClient:
    def __init__(self, answer: str = "Deadlock is mutual waiting [1]."):
        self.answer = answer
        self.contexts: list[str] = []

    async def generate(self, messages, context="", **kwargs):
        self.contexts.append(context)
        return Generation(content=self.answer, token_count=17)


def _cand(id: str, content: str, score: float = 0.8) -> ScoredCandidate:
    return ScoredCandidate(id=id, score=score, content=content, metadata={"content": content})


def _pipeline(store=None, **kwargs) -> RAGPipeline:
    embedder = Embedder(dimension=DIM)
    if store is None:
        store = InMemoryVectorStore(dimension=DIM, namespace="test")
    search = kwargs.pop("search", None)
    if search is None:
        search = SimilaritySearch(embedder, store, access_tracker=store)
    return RAGPipeline(embedder=embedder, store=store, search=search, **kwargs)


# --- ingestion ---


@pytest.mark.anyio
async def test_process_document_stores_one_vector_per_chunk():
    store = InMemoryVectorStore(dimension=DIM)
    pipeline = _pipeline(store)

    result = await pipeline.process_document(DOCUMENT, {"source_id": "os-notes", "source_type": "manual"})

    assert result.chunk_count > 1
    assert len(result.chunk_results) == result.chunk_count
    assert [r.chunk_index for r in result.chunk_results] == list(range(result.chunk_count))
    assert len({r.embedding_id for r in result.chunk_results}) == result.chunk_count
    assert all(r.embedding_id.startswith("vec_") for r in result.chunk_results)
    assert all(len(r.chunk_preview) <= 103 for r in result.chunk_results)
    assert (await pipeline.get_stats())["total_vectors"] == result.chunk_count


@pytest.mark.anyio
async def test_processed_chunks_carry_metadata():
    store = InMemoryVectorStore(dimension=DIM)
    pipeline = _pipeline(store)
    result = await pipeline.process_document(DOCUMENT, {"source_id": "os-notes", "source_type": "manual"})

    chunks = pipeline.chunker.split(DOCUMENT)
    hits = await store.query(fallback_embedding(chunks[0].text, DIM), top_k=1)
    meta = hits[0].metadata
    assert hits[0].id == result.chunk_results[0].embedding_id
    assert meta["content"] == chunks[0].text
    assert meta["chunk_index"] == 0
    assert meta["total_chunks"] == result.chunk_count
    assert meta["source_id"] == "os-notes"
    assert meta["source_type"] == "manual"


@pytest.mark.anyio
@pytest.mark.parametrize("text", ["", "   ", None])
async def test_process_document_rejects_blank_text(text):
    with pytest.raises(InputError):
        await _pipeline().process_document(text)


@pytest.mark.anyio
async def test_process_document_store_failure():
    pipeline = _pipeline(FailingStore(dimension=DIM))
    with pytest.raises(StoreError):
        await pipeline.process_document(DOCUMENT)


@pytest.mark.anyio
async def test_delete_embedding():
    pipeline = _pipeline()
    result = await pipeline.process_document(DOCUMENT)
    await pipeline.delete_embedding(result.chunk_results[0].embedding_id)
    assert (await pipeline.get_stats())["total_vectors"] == result.chunk_count - 1


# --- retrieval ---


@pytest.mark.anyio
async def test_retrieve_context_finds_ingested_chunk():
    pipeline = _pipeline()
    await pipeline.process_document(DOCUMENT, {"source_id": "os-notes", "source_type": "manual"})
    target = pipeline.chunker.split(DOCUMENT)[1].text

    context = await pipeline.retrieve_context(target, RetrievalConfig(similarity_threshold=0.99))

    assert context.has_context
    assert context.text.startswith("[Source 1 (Relevance: 100.0%)]:\n" + target)
    assert context.references[0].source_id == "os-notes"


@pytest.mark.anyio
async def test_retrieve_context_empty_when_nothing_relevant():
    pipeline = _pipeline(search=FakeSearch([]))
    context = await pipeline.retrieve_context("unknown topic")
    assert context.text == ""
    assert context.references == []


@pytest.mark.anyio
@pytest.mark.parametrize("query", ["", "   "])
async def test_retrieve_context_rejects_blank_query(query):
    with pytest.raises(InputError):
        await _pipeline().retrieve_context(query)


@pytest.mark.anyio
async def test_retrieve_context_store_failure():
    pipeline = _pipeline(FailingStore(dimension=DIM))
    with pytest.raises(StoreError):
        await pipeline.retrieve_context("deadlock")


@pytest.mark.anyio
async def test_reranking_fetches_more_and_applies_rerank_threshold():
    search = FakeSearch(
        [
            _cand("t1", "tcp handshake uses syn and ack"),
            _cand("d1", "deadlock avoidance with the banker algorithm"),
            _cand("t2", "tcp congestion window growth"),
        ]
    )
    pipeline = _pipeline(search=search, reranker=Reranker(KeywordProvider()))
    config = RetrievalConfig(top_k=2, use_reranking=True, rerank_threshold=0.5, filter={"kb": "net"})

    candidates = await pipeline._candidates("tcp handshake", config)

    assert search.calls[0] == ("tcp handshake", 4, {"kb": "net"}, 0.7)
    assert [c.id for c in candidates] == ["t1", "t2"]
    assert candidates[0].rerank_score == pytest.approx(1.0)
    assert candidates[1].rerank_score == pytest.approx(0.5)


@pytest.mark.anyio
async def test_degraded_reranker_keeps_vector_order():
    search = FakeSearch([_cand("a", "first passage"), _cand("b", "second passage"), _cand("c", "third")])
    pipeline = _pipeline(search=search, reranker=Reranker(BrokenProvider()))

    context = await pipeline.retrieve_context("q", RetrievalConfig(top_k=2, use_reranking=True))

    assert [r.chunk_id for r in context.references] == ["a", "b"]


@pytest.mark.anyio
async def test_hybrid_config_routes_to_hybrid_retriever():
    hybrid = FakeHybrid([_cand("h", "hybrid passage")])
    search = FakeSearch([_cand("p", "plain passage")])
    pipeline = _pipeline(search=search, hybrid=hybrid)

    context = await pipeline.retrieve_context("q", RetrievalConfig(top_k=3, use_hybrid=True))

    assert [r.chunk_id for r in context.references] == ["h"]
    assert hybrid.calls[0][1] == 3
    assert search.calls == []


@pytest.mark.anyio
async def test_hybrid_search_without_hybrid_retriever_is_plain_search():
    search = FakeSearch([_cand("p", "plain passage")])
    results = await _pipeline(search=search).hybrid_search("q", top_k=2)
    assert [r.id for r in results] == ["p"]


# --- answer generation ---


@pytest.mark.anyio
async def test_generate_answer_uses_retrieved_context():
    client = FakeClient()
    search = FakeSearch([_cand("a", "Deadlock is when processes wait on each other.", 0.9)])
    pipeline = _pipeline(search=search, reranker=Reranker(), generator=AnswerGenerator(client))

    answer = await pipeline.generate_answer("what is deadlock?", config=RetrievalConfig(use_reranking=True))

    assert "[Source 1 (Relevance: 90.0%)]" in client.contexts[0]
    assert answer.has_context
    assert answer.used_reranking
    assert [c.chunk_id for c in answer.citations] == ["a"]
    assert answer.tokens == 17


@pytest.mark.anyio
async def test_generate_answer_without_rag():
    client = FakeClient("plain answer")
    search = FakeSearch([_cand("a", "ignored")])
    pipeline = _pipeline(search=search, generator=AnswerGenerator(client))

    answer = await pipeline.generate_answer("q", generation_config=GenerationConfig(use_rag=False))

    assert client.contexts == [""]
    assert not answer.has_context
    assert search.calls == []


@pytest.mark.anyio
async def test_generate_answer_requires_generator():
    with pytest.raises(RuntimeError):
        await _pipeline().generate_answer("q")


# --- factory ---


def test_build_embedding_provider_choices():
    assert build_embedding_provider(RAGSettings(embedding_provider="none")) is None
    assert build_embedding_provider(RAGSettings(embedding_provider="Offline")) is None
    with pytest.raises(ValueError):
        build_embedding_provider(RAGSettings(embedding_provider="bogus"))


@pytest.mark.anyio
async def test_build_pipeline_offline_end_to_end():
    settings = RAGSettings(embedding_provider="none", embedding_dimension=DIM, embedding_batch_delay=0)
    pipeline = build_pipeline(settings, chat_client=FakeClient())

    assert pipeline.hybrid is not None
    assert pipeline.generator is not None

    await pipeline.process_document(DOCUMENT)
    target = pipeline.chunker.split(DOCUMENT)[0].text
    context = await pipeline.retrieve_context(target)
    assert context.has_context


@pytest.mark.anyio
@pytest.mark.parametrize("query", ["", "   "])
async def test_hybrid_search_rejects_blank_query(query):
    pipeline = _pipeline(hybrid=FakeHybrid([_cand("h", "hybrid passage")]))
    with pytest.raises(InputError):
        await pipeline.hybrid_search(query)


PAGING_DOC = "Paging maps virtual pages onto physical frames of memory."
TLB_DOC = "A translation lookaside buffer caches recent page table entries."
SCHED_DOC = "Round robin scheduling gives each process an equal time slice."


class ExpandingClient(FakeClient):
    """Expands any query into two variants that match ingested documents verbatim."""

    async def generate(self, messages, context="", **kwargs):
        return Generation(content=f"1. {PAGING_DOC}\n2. {TLB_DOC}", token_count=5)


@pytest.mark.anyio
async def test_built_pipeline_hybrid_merges_variants_without_rerank_provider():
    settings = RAGSettings(
        embedding_provider="none",
        embedding_dimension=DIM,
        embedding_batch_delay=0,
        similarity_threshold=0.99,
        use_reranking=False,
    )
    pipeline = build_pipeline(settings, chat_client=ExpandingClient())
    for doc in (PAGING_DOC, TLB_DOC, SCHED_DOC):
        await pipeline.process_document(doc)

    # The bare query matches nothing at this threshold; only the variants do.
    assert await pipeline.similarity_search.search("paging") == []
    results = await pipeline.hybrid_search("paging")

    assert sorted(r.content for r in results) == sorted([PAGING_DOC, TLB_DOC])
    assert all(r.rerank_score is None for r in results)
