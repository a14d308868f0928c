"""
Configuration for RAG retrieval pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

# Load .env file if it exists
project_root = Path(__file__).resolve().parents[2]
env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class RetrievalConfig:
    """Per-call retrieval settings. Build a new one instead of mutating."""

    top_k: int = 5
    similarity_threshold: float = 0.7
    use_reranking: bool = False
    filter: Mapping[str, Any] = field(default_factory=dict)
    # None means reuse similarity_threshold for rerank scores
    rerank_threshold: Optional[float] = None
    max_chunks: int = 5
    max_tokens: int = 2000
    use_hybrid: bool = False

    def __post_init__(self) -> None:
        if self.top_k <= 0:
            raise ValueError("top_k must be positive")
        if self.max_chunks < 0:
            raise ValueError("max_chunks must be non-negative")
        object.__setattr__(self, "filter", MappingProxyType(dict(self.filter or {})))

    @property
    def effective_rerank_threshold(self) -> float:
        if self.rerank_threshold is None:
            return self.similarity_threshold
        return self.rerank_threshold

    def with_overrides(self, **changes: Any) -> "RetrievalConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass
class RAGSettings:
    """Process-level settings used to construct providers and components."""

    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    embedding_batch_size: int = 5
    embedding_batch_delay: float = 1.0
    provider_timeout: Optional[float] = 30.0
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    similarity_threshold: float = 0.7
    max_context_chunks: int = 5
    max_context_tokens: int = 2000
    use_reranking: bool = False
    vector_namespace: str = "chat-ai"
    chunk_size: int = 500
    chunk_overlap: int = 50
    min_chunk_length: int = 20
    per_query_top_k: int = 3

    @classmethod
    def from_env(cls) -> "RAGSettings":
        """Read settings from environment variables, keeping defaults for unset ones."""
        default = cls()
        timeout = _env_float("PROVIDER_TIMEOUT", default.provider_timeout or 0.0)
        return cls(
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", default.embedding_provider),
            embedding_model=os.getenv("EMBEDDING_MODEL", default.embedding_model),
            embedding_dimension=_env_int("EMBEDDING_DIMENSION", default.embedding_dimension),
            embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", default.embedding_batch_size),
            embedding_batch_delay=_env_float("EMBEDDING_BATCH_DELAY", default.embedding_batch_delay),
            provider_timeout=timeout if timeout > 0 else None,
            reranker_model=os.getenv("RERANKER_MODEL", default.reranker_model),
            similarity_threshold=_env_float("SIMILARITY_THRESHOLD", default.similarity_threshold),
            max_context_chunks=_env_int("MAX_CONTEXT_CHUNKS", default.max_context_chunks),
            max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", default.max_context_tokens),
            use_reranking=_env_bool("USE_RERANKING", default.use_reranking),
            vector_namespace=os.getenv("VECTOR_NAMESPACE", default.vector_namespace),
            chunk_size=_env_int("CHUNK_SIZE", default.chunk_size),
            chunk_overlap=_env_int("CHUNK_OVERLAP", default.chunk_overlap),
        )

    def retrieval_config(self, **overrides: Any) -> RetrievalConfig:
        """Default per-call config derived from these settings."""
        base = RetrievalConfig(
            top_k=self.max_context_chunks,
            similarity_threshold=self.similarity_threshold,
            use_reranking=self.use_reranking,
            max_chunks=self.max_context_chunks,
            max_tokens=self.max_context_tokens,
        )
        return base.with_overrides(**overrides) if overrides else base
