"""
Tests for retrieval configuration and environment settings.
"""

from __future__ import annotations

import dataclasses

import pytest

from src.rag import RAGSettings, RetrievalConfig

ENV_VARS = [
    "EMBEDDING_PROVIDER",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSION",
    "EMBEDDING_BATCH_SIZE",
    "EMBEDDING_BATCH_DELAY",
    "PROVIDER_TIMEOUT",
    "RERANKER_MODEL",
    "SIMILARITY_THRESHOLD",
    "MAX_CONTEXT_CHUNKS",
    "MAX_CONTEXT_TOKENS",
    "USE_RERANKING",
    "VECTOR_NAMESPACE",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_retrieval_config_defaults():
    config = RetrievalConfig()
    assert config.top_k == 5
    assert config.similarity_threshold == 0.7
    assert config.use_reranking is False
    assert dict(config.filter) == {}
    assert config.effective_rerank_threshold == 0.7


def test_retrieval_config_is_immutable():
    source = {"source_type": "faq"}
    config = RetrievalConfig(filter=source)
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.top_k = 10  # type: ignore[misc]
    with pytest.raises(TypeError):
        config.filter["source_type"] = "manual"  # type: ignore[index]
    # Mutating the caller's dict does not leak into the config.
    source["source_type"] = "manual"
    assert config.filter["source_type"] == "faq"


def test_retrieval_config_overrides_and_rerank_threshold():
    config = RetrievalConfig().with_overrides(use_reranking=True, rerank_threshold=0.3)
    assert config.use_reranking
    assert config.effective_rerank_threshold == 0.3
    assert config.similarity_threshold == 0.7


@pytest.mark.parametrize("kwargs", [{"top_k": 0}, {"top_k": -1}, {"max_chunks": -1}])
def test_retrieval_config_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        RetrievalConfig(**kwargs)


def test_settings_from_env_defaults(clean_env: pytest.MonkeyPatch):
    settings = RAGSettings.from_env()
    assert settings == RAGSettings()


def test_settings_from_env_reads_values(clean_env: pytest.MonkeyPatch):
    clean_env.setenv("EMBEDDING_PROVIDER", "sentence-transformers")
    clean_env.setenv("EMBEDDING_DIMENSION", "384")
    clean_env.setenv("SIMILARITY_THRESHOLD", "0.55")
    clean_env.setenv("USE_RERANKING", "yes")
    clean_env.setenv("MAX_CONTEXT_CHUNKS", "3")
    clean_env.setenv("PROVIDER_TIMEOUT", "0")
    clean_env.setenv("CHUNK_SIZE", "not-a-number")

    settings = RAGSettings.from_env()

    assert settings.embedding_provider == "sentence-transformers"
    assert settings.embedding_dimension == 384
    assert settings.similarity_threshold == 0.55
    assert settings.use_reranking is True
    assert settings.max_context_chunks == 3
    assert settings.provider_timeout is None
    assert settings.chunk_size == 500


def test_settings_build_retrieval_config():
    settings = RAGSettings(similarity_threshold=0.6, max_context_chunks=4, max_context_tokens=900)
    config = settings.retrieval_config(use_hybrid=True)
    assert config.top_k == 4
    assert config.max_chunks == 4
    assert config.max_tokens == 900
    assert config.similarity_threshold == 0.6
    assert config.use_hybrid
