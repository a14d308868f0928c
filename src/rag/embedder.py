"""
Embedding layer: primary provider plus a deterministic offline fallback.

The Embedder calls an external provider (OpenAI embeddings or a local
sentence-transformers model). Rate-limit, quota and timeout failures fall back
to a hash-based embedding that needs no network, so ingestion and retrieval
keep working, with lower quality, while the provider is unavailable.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import List, Optional, Protocol, Sequence

import numpy as np
from openai import APIConnectionError, AsyncOpenAI

from src.llm.client import is_rate_limit_error

from .errors import EmbeddingError, InputError

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 1536
DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_DELAY = 1.0

FALLBACK_NEIGHBORS = 3
# Buckets wrap at this value so repeated words cannot blow up one dimension.
FALLBACK_BUCKET_MODULUS = 8.0


class EmbeddingProvider(Protocol):
    """External embedding service."""

    async def embed_many(self, texts: Sequence[str], mode_hint: str) -> List[List[float]]:
        ...


def _stable_hash(token: str) -> int:
    """64-bit hash that is identical across processes (unlike built-in hash())."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def fallback_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> List[float]:
    """
    Deterministic bag-of-words embedding.

    Each lowercase whitespace token lands on ``abs(hash) % dimension`` and
    spills decreasing weight onto the next FALLBACK_NEIGHBORS buckets. The
    result is L2-normalised; a zero vector is returned unchanged.
    """
    if dimension <= 0:
        raise InputError("dimension must be positive")
    vec = np.zeros(dimension, dtype=np.float64)
    for word in text.lower().split():
        base = abs(_stable_hash(word)) % dimension
        for j in range(FALLBACK_NEIGHBORS + 1):
            idx = (base + j) % dimension
            vec[idx] = (vec[idx] + 1.0 / (j + 1)) % FALLBACK_BUCKET_MODULUS

    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec.tolist()
    return (vec / norm).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float], *, clamp: bool = False) -> float:
    """
    Cosine similarity of two vectors.

    Raises InputError for empty vectors, mismatched dimensions or a zero
    magnitude, since none of those has a meaningful angle.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.size == 0 or vb.size == 0:
        raise InputError("Vectors must be non-empty and one-dimensional")
    if va.shape != vb.shape:
        raise InputError(f"Vector dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        raise InputError("Cannot compute cosine similarity of a zero vector")

    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Floating point can land just outside [-1, 1].
    sim = max(-1.0, min(1.0, sim))
    if clamp:
        return max(0.0, sim)
    return sim


class OpenAIEmbeddingProvider:
    """Embeddings over the OpenAI (or compatible) embeddings endpoint."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimension: int = DEFAULT_DIMENSION,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY not found in environment")
            client = AsyncOpenAI(api_key=api_key, base_url=os.getenv("OPENAI_BASE_URL"))
        self.client = client
        self.model = model
        self.dimension = dimension

    async def embed_many(self, texts: Sequence[str], mode_hint: str = "search_document") -> List[List[float]]:
        # OpenAI embeddings are symmetric; mode_hint only matters for other vendors.
        response = await self.client.embeddings.create(
            model=self.model,
            input=list(texts),
            dimensions=self.dimension,
        )
        return [item.embedding for item in response.data]


class SentenceTransformerEmbeddingProvider:
    """Local sentence-transformers model, run in a worker thread."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        self._model = SentenceTransformer(model_name)

    @property
    def dimension(self) -> int:
        return int(self._model.get_sentence_embedding_dimension())

    async def embed_many(self, texts: Sequence[str], mode_hint: str = "search_document") -> List[List[float]]:
        emb = await asyncio.to_thread(
            self._model.encode,
            list(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return emb.tolist()


class Embedder:
    """Fixed-dimension text embedder with deterministic fallback."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        *,
        dimension: int = DEFAULT_DIMENSION,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        timeout: Optional[float] = None,
        fallback_on_any_failure: bool = False,
        model_name: str = "",
    ):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.provider = provider
        self.dimension = dimension
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.timeout = timeout
        self.fallback_on_any_failure = fallback_on_any_failure
        self.model_name = model_name or ("fallback-hash" if provider is None else type(provider).__name__)

    def fallback(self, text: str) -> List[float]:
        return fallback_embedding(text, self.dimension)

    def is_valid(self, vector: object) -> bool:
        """True for a non-empty numeric sequence of this embedder's dimension."""
        if vector is None or isinstance(vector, (str, bytes)):
            return False
        try:
            values = list(vector)  # type: ignore[call-overload]
        except TypeError:
            return False
        if len(values) != self.dimension:
            return False
        return all(
            isinstance(v, (int, float, np.integer, np.floating)) and not isinstance(v, bool)
            for v in values
        )

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float], *, clamp: bool = False) -> float:
        if len(a) != self.dimension or len(b) != self.dimension:
            raise InputError(
                f"Expected vectors of dimension {self.dimension}, got {len(a)} and {len(b)}"
            )
        return cosine_similarity(a, b, clamp=clamp)

    @staticmethod
    def _check_text(text: object) -> str:
        if not isinstance(text, str) or not text.strip():
            raise InputError("Invalid text input for embedding")
        return text

    async def _call_provider(
        self, texts: Sequence[str], mode_hint: str, timeout: Optional[float]
    ) -> List[List[float]]:
        assert self.provider is not None
        vectors = await asyncio.wait_for(self.provider.embed_many(texts, mode_hint), timeout=timeout)
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Provider returned {len(vectors)} vectors for {len(texts)} texts")
        for vector in vectors:
            if not self.is_valid(vector):
                raise EmbeddingError(
                    f"Provider returned an invalid vector (expected dimension {self.dimension})"
                )
        return [[float(v) for v in vector] for vector in vectors]

    async def embed(
        self,
        text: str,
        *,
        mode_hint: str = "search_query",
        timeout: Optional[float] = None,
    ) -> List[float]:
        """Embed one text; rate limits and timeouts fall back to the hash embedding."""
        text = self._check_text(text)
        if self.provider is None:
            return self.fallback(text)

        try:
            vectors = await self._call_provider([text], mode_hint, timeout or self.timeout)
        except EmbeddingError:
            raise
        except (asyncio.TimeoutError, APIConnectionError) as e:
            # also covers openai APITimeoutError (a subclass)
            logger.warning("Embedding provider unavailable (%s); using fallback embedding", type(e).__name__)
            return self.fallback(text)
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Using fallback embedding due to quota limits: %s", e)
                return self.fallback(text)
            if self.fallback_on_any_failure:
                logger.warning("Embedding provider failed, using fallback: %s", e)
                return self.fallback(text)
            logger.error("Embedding generation error: %s", e)
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e

        logger.debug("Embedding generated for text: %s...", text[:50])
        return vectors[0]

    async def _embed_item(self, text: object, mode_hint: str, timeout: Optional[float]) -> List[float]:
        try:
            return await self.embed(text, mode_hint=mode_hint, timeout=timeout)  # type: ignore[arg-type]
        except Exception as e:
            logger.error("Failed embedding for batch item, using fallback: %s", e)
            return self.fallback(text if isinstance(text, str) else "")

    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        mode_hint: str = "search_document",
        timeout: Optional[float] = None,
    ) -> List[List[float]]:
        """
        Embed many texts, one vector per input, in input order.

        Items run concurrently within a sub-batch of ``batch_size``; sub-batches
        are separated by ``batch_delay`` seconds. A failing item falls back on
        its own without affecting its neighbours, including invalid (blank or
        non-string) items, which get the fallback of their text.
        """
        items = list(texts)
        if not items:
            return []

        results: List[List[float]] = []
        for i in range(0, len(items), self.batch_size):
            batch = items[i : i + self.batch_size]
            results.extend(
                await asyncio.gather(*(self._embed_item(t, mode_hint, timeout) for t in batch))
            )
            if i + self.batch_size < len(items) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        logger.info("Batch embeddings generated: %s texts", len(results))
        return results
