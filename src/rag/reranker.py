"""
Second-stage reranking of retrieved passages.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .errors import RerankError

logger = logging.getLogger(__name__)

DEFAULT_RERANKER_MODEL = os.getenv("RERANKER_MODEL", "cross-encoder/ms-marco-MiniLM-L-6-v2")
NEUTRAL_RELEVANCE = 0.5


@dataclass(frozen=True)
class RerankResult:
    """Relevance of ``documents[index]`` to the query."""

    index: int
    relevance_score: float
    fallback: bool = False


class RerankProvider(Protocol):
    """External reranking service."""

    async def rerank(self, query: str, documents: Sequence[str], top_n: int) -> List[RerankResult]:
        ...


def _sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


class CrossEncoderRerankProvider:
    """Cross-encoder reranker; raw logits are squashed into [0, 1]."""

    def __init__(self, model_name: str = DEFAULT_RERANKER_MODEL, max_chars: int = 512):
        from sentence_transformers import CrossEncoder

        self.model_name = model_name
        self.max_chars = max_chars
        self._model = CrossEncoder(model_name)

    async def rerank(self, query: str, documents: Sequence[str], top_n: int) -> List[RerankResult]:
        pairs = [(query, doc[: self.max_chars].replace("\n", " ")) for doc in documents]
        ce_scores = await asyncio.to_thread(self._model.predict, pairs, batch_size=16)
        scored = [
            RerankResult(index=i, relevance_score=_sigmoid(float(s)))
            for i, s in enumerate(ce_scores)
        ]
        scored.sort(key=lambda r: r.relevance_score, reverse=True)
        return scored[:top_n]


def neutral_ranking(documents: Sequence[str]) -> List[RerankResult]:
    """Every document in original order with a neutral score."""
    return [
        RerankResult(index=i, relevance_score=NEUTRAL_RELEVANCE, fallback=True)
        for i in range(len(documents))
    ]


class Reranker:
    """Reranker that degrades to a neutral ranking instead of failing."""

    def __init__(self, provider: Optional[RerankProvider] = None, *, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        top_n: Optional[int] = None,
        *,
        strict: bool = False,
        timeout: Optional[float] = None,
    ) -> List[RerankResult]:
        """
        Re-rank documents against the query.

        Args:
            query: User query
            documents: Passages to score; results index into this sequence
            top_n: Maximum results to return (default: all)
            strict: Raise RerankError instead of degrading on failure

        Returns:
            Results sorted by provider relevance, or the neutral ranking when
            the provider is missing or fails.
        """
        docs = list(documents)
        if not docs:
            return []
        if top_n is None or top_n <= 0:
            top_n = len(docs)

        if self.provider is None:
            if strict:
                raise RerankError("No rerank provider configured")
            return neutral_ranking(docs)

        try:
            results = await asyncio.wait_for(
                self.provider.rerank(query, docs, top_n),
                timeout=timeout or self.timeout,
            )
            for r in results:
                if not 0 <= r.index < len(docs):
                    raise RerankError(f"Rerank provider returned out-of-range index {r.index}")
        except Exception as e:
            if strict:
                if isinstance(e, RerankError):
                    raise
                raise RerankError(f"Reranking failed: {e}") from e
            logger.warning("Reranking failed, using neutral ranking: %s", e)
            return neutral_ranking(docs)

        return list(results)[:top_n]
