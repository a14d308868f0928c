"""
Vector store interfaces and an in-memory numpy implementation.

Production deployments plug in a hosted nearest-neighbour index behind the
VectorStore protocol; InMemoryVectorStore backs development and tests.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np

from .errors import InputError

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class VectorMatch:
    """One nearest-neighbour hit as reported by the store."""

    id: str
    score: float
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)


class VectorStore(Protocol):
    """Nearest-neighbour store keyed by opaque vector ids."""

    async def upsert(self, id: str, vector: Sequence[float], metadata: Mapping[str, Any]) -> None:
        ...

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorMatch]:
        """Return up to top_k matches, descending by score."""
        ...

    async def delete(self, id: str) -> None:
        ...

    async def describe_stats(self) -> Dict[str, Any]:
        ...


class AccessTracker(Protocol):
    """Receives best-effort "these ids were retrieved" notifications."""

    async def record_access(self, ids: Sequence[str]) -> None:
        ...


@dataclasses.dataclass
class _Entry:
    vector: np.ndarray  # unit-normalised
    metadata: Dict[str, Any]
    access_count: int = 0
    last_accessed: Optional[dt.datetime] = None


def _matches_filter(metadata: Mapping[str, Any], flt: Optional[Mapping[str, Any]]) -> bool:
    if not flt:
        return True
    for key, expected in flt.items():
        if isinstance(expected, Mapping) and "$in" in expected:
            if metadata.get(key) not in expected["$in"]:
                return False
        elif metadata.get(key) != expected:
            return False
    return True


class InMemoryVectorStore:
    """Cosine-similarity store held in memory, one logical namespace."""

    def __init__(self, dimension: int, namespace: str = "default"):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self.namespace = namespace
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _as_unit(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float64)
        if arr.shape != (self.dimension,):
            raise InputError(
                f"Vector dimension mismatch: expected {self.dimension}, got {arr.shape[-1] if arr.ndim else 0}"
            )
        norm = float(np.linalg.norm(arr))
        return arr / norm if norm > 0 else arr

    async def upsert(self, id: str, vector: Sequence[float], metadata: Mapping[str, Any]) -> None:
        previous = self._entries.get(id)
        entry = _Entry(vector=self._as_unit(vector), metadata=dict(metadata))
        if previous is not None:
            entry.access_count = previous.access_count
            entry.last_accessed = previous.last_accessed
        self._entries[id] = entry
        logger.debug("Upserted %s into namespace %s", id, self.namespace)

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorMatch]:
        if top_k <= 0 or not self._entries:
            return []
        q = self._as_unit(vector)
        ids = [eid for eid, e in self._entries.items() if _matches_filter(e.metadata, filter)]
        if not ids:
            return []
        matrix = np.stack([self._entries[eid].vector for eid in ids])
        sims = matrix @ q
        order = np.argsort(-sims, kind="stable")[:top_k]
        return [
            VectorMatch(id=ids[int(i)], score=float(sims[int(i)]), metadata=dict(self._entries[ids[int(i)]].metadata))
            for i in order
        ]

    async def delete(self, id: str) -> None:
        self._entries.pop(id, None)

    async def describe_stats(self) -> Dict[str, Any]:
        most_accessed = sorted(self._entries.items(), key=lambda kv: kv[1].access_count, reverse=True)[:5]
        return {
            "namespace": self.namespace,
            "dimension": self.dimension,
            "total_vectors": len(self._entries),
            "most_accessed": [
                {"id": eid, "access_count": e.access_count} for eid, e in most_accessed
            ],
        }

    async def record_access(self, ids: Sequence[str]) -> None:
        now = dt.datetime.now(dt.timezone.utc)
        for eid in ids:
            entry = self._entries.get(eid)
            if entry is None:
                continue
            entry.access_count += 1
            entry.last_accessed = now

    def access_count(self, id: str) -> int:
        entry = self._entries.get(id)
        return entry.access_count if entry else 0

    def last_accessed(self, id: str) -> Optional[dt.datetime]:
        entry = self._entries.get(id)
        return entry.last_accessed if entry else None
