"""
Query expansion for multi-query retrieval.

Asks the generator for alternative phrasings of the user's question so each
one can be searched independently.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Protocol, Sequence

from src.llm.client import Generation

from .errors import QueryExpansionError

logger = logging.getLogger(__name__)

MAX_QUERY_VARIANTS = 4

EXPANSION_PROMPT = 'Generate 3 different search queries based on this question: "{query}"\n\nQueries:'

_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")


class TextGenerator(Protocol):
    """Black-box generator: messages + context -> text + token count."""

    async def generate(
        self,
        messages: Sequence[Mapping[str, str]],
        context: str = "",
        **kwargs,
    ) -> Generation:
        ...


def parse_queries(raw: str) -> List[str]:
    """Split generator output into one query per line, without list markers or quotes."""
    queries: List[str] = []
    for line in raw.splitlines():
        q = _LIST_MARKER_RE.sub("", line).strip().strip('"').strip()
        if q:
            queries.append(q)
    return queries


def merge_variants(query: str, generated: Sequence[str], limit: int = MAX_QUERY_VARIANTS) -> List[str]:
    """Original query first, then unique generated variants, capped at ``limit``."""
    seen = set()
    merged: List[str] = []
    for q in [query, *generated]:
        if q in seen:
            continue
        seen.add(q)
        merged.append(q)
    return merged[:limit]


@dataclass
class QueryExpander:
    """Generator-backed query expansion."""

    generator: TextGenerator
    max_variants: int = MAX_QUERY_VARIANTS
    temperature: float = 0.8
    timeout: Optional[float] = None

    async def expand(self, query: str, *, timeout: Optional[float] = None) -> List[str]:
        """
        Return up to ``max_variants`` queries, the original always first.

        Raises:
            QueryExpansionError: generator failed, timed out, or produced nothing usable.
        """
        base = query.strip()
        prompt = EXPANSION_PROMPT.format(query=base)
        try:
            response = await asyncio.wait_for(
                self.generator.generate(
                    [{"role": "user", "content": prompt}],
                    "",
                    temperature=self.temperature,
                ),
                timeout=timeout or self.timeout,
            )
        except Exception as e:
            logger.error("Search query generation error: %s", e)
            raise QueryExpansionError(f"Query expansion failed: {e}") from e

        generated = parse_queries(response.content or "")
        if not generated:
            raise QueryExpansionError("Generator returned no queries")
        variants = merge_variants(base, generated, self.max_variants)
        logger.debug("Expanded query into %s variants", len(variants))
        return variants
