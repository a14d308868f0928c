"""
Similarity search over the vector store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set

from .embedder import Embedder
from .errors import InputError, StoreError
from .index import AccessTracker, VectorStore

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.7


@dataclass(frozen=True)
class ScoredCandidate:
    """A retrieved passage with its similarity score (clamped to [0, 1])."""

    id: str
    score: float
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    rerank_score: Optional[float] = None


class Retriever(Protocol):
    """Protocol for retrieval implementations."""

    async def search(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Mapping[str, Any]] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        """
        Search for passages matching the query.

        Returns:
            List of ScoredCandidate objects sorted by score (descending)
        """
        ...


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


class SimilaritySearch:
    """Embed a query, ask the store for neighbours, keep those above threshold."""

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        *,
        access_tracker: Optional[AccessTracker] = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        self.embedder = embedder
        self.store = store
        self.access_tracker = access_tracker
        self.threshold = threshold
        self._pending: Set[asyncio.Task] = set()

    async def search(
        self,
        query: str,
        top_k: int = 5,
        filter: Optional[Mapping[str, Any]] = None,
        threshold: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        if top_k <= 0:
            raise InputError("top_k must be positive")
        if threshold is None:
            threshold = self.threshold

        query_vector = await self.embedder.embed(query, mode_hint="search_query")

        try:
            matches = await self.store.query(query_vector, top_k, dict(filter or {}))
        except Exception as e:
            logger.error("Vector search error: %s", e)
            raise StoreError(f"Vector store query failed: {e}") from e

        results: List[ScoredCandidate] = []
        for match in matches:
            score = clamp_score(match.score)
            if score < threshold:
                continue
            metadata = dict(match.metadata or {})
            results.append(
                ScoredCandidate(
                    id=match.id,
                    score=score,
                    content=str(metadata.get("content") or ""),
                    metadata=metadata,
                )
            )

        if results:
            self._notify_access([r.id for r in results])
        logger.info("Search completed: %s results found", len(results))
        return results

    def _notify_access(self, ids: Sequence[str]) -> None:
        if self.access_tracker is None:
            return
        task = asyncio.create_task(self._record_access(list(ids)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_access(self, ids: List[str]) -> None:
        try:
            await self.access_tracker.record_access(ids)  # type: ignore[union-attr]
        except Exception as e:
            logger.error("Update access count error: %s", e)

    async def flush_access_updates(self) -> None:
        """Wait for outstanding access-count notifications."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
