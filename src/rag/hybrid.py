"""
Multi-query ("hybrid") retrieval: expand, search per variant, dedupe, rerank.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Optional, Sequence

from .query_rewriter import QueryExpander
from .reranker import Reranker
from .retriever import ScoredCandidate, SimilaritySearch

logger = logging.getLogger(__name__)

DEFAULT_PER_QUERY_TOP_K = 3
DEDUP_PREFIX_CHARS = 100


def dedupe_by_content(
    candidates: Sequence[ScoredCandidate], prefix_chars: int = DEDUP_PREFIX_CHARS
) -> List[ScoredCandidate]:
    """Keep the first candidate for each content prefix; ids are ignored."""
    seen = set()
    unique: List[ScoredCandidate] = []
    for c in candidates:
        key = c.content[:prefix_chars]
        if key in seen:
            continue
        seen.add(key)
        unique.append(c)
    return unique


@dataclass
class MultiQueryRetriever:
    """Search several phrasings of a query and merge them into one ranking."""

    search_engine: SimilaritySearch
    expander: QueryExpander
    reranker: Optional[Reranker] = None
    per_query_top_k: int = DEFAULT_PER_QUERY_TOP_K
    dedup_prefix_chars: int = DEDUP_PREFIX_CHARS

    async def search(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Mapping[str, Any]] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        """
        Implements the Retriever protocol.

        Any failure in expansion, variant search or reranking degrades to a
        plain similarity search over the original query.
        """
        try:
            return await self._search(query, top_k, filter, threshold)
        except Exception as e:
            logger.error("Hybrid search error, falling back to plain search: %s", e)
            return await self.search_engine.search(query, top_k, filter, threshold)

    async def _search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Mapping[str, Any]],
        threshold: Optional[float],
    ) -> List[ScoredCandidate]:
        variants = await self.expander.expand(query)

        outcomes = await asyncio.gather(
            *(
                self.search_engine.search(v, self.per_query_top_k, filter, threshold)
                for v in variants
            ),
            return_exceptions=True,
        )
        all_results: List[ScoredCandidate] = []
        failures: List[BaseException] = []
        for variant, outcome in zip(variants, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Search for variant %r failed: %s", variant, outcome)
                failures.append(outcome)
                continue
            all_results.extend(outcome)
        if failures and len(failures) == len(variants):
            raise failures[0]

        unique = dedupe_by_content(all_results, self.dedup_prefix_chars)
        if len(unique) <= 1 or self.reranker is None:
            return unique[:top_k]

        documents = [c.content for c in unique]
        reranked = await self.reranker.rerank(query, documents, top_n=top_k, strict=True)
        return [
            replace(unique[r.index], rerank_score=r.relevance_score)
            for r in reranked[:top_k]
        ]
