"""
Extract [1] / [Source 1] references from generated text and map them to context references.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence

from .context_builder import ContextReference

_CITATION_RE = re.compile(r"\[(?:Source\s+)?(\d+)\]", re.IGNORECASE)


@dataclass
class Citation:
    """A single citation mapping [n] to a context block."""

    index: int
    chunk_id: str
    source_id: str
    source_type: str = "unknown"


def extract_citations(
    answer: str,
    references: Sequence[ContextReference],
) -> List[Citation]:
    """
    Parse [n] references in answer and map to context references.
    references[0] -> [1], references[1] -> [2], etc.
    """
    if not references:
        return []
    indices = set()
    for m in _CITATION_RE.finditer(answer):
        n = int(m.group(1))
        if 1 <= n <= len(references):
            indices.add(n)
    citations: List[Citation] = []
    for n in sorted(indices):
        ref = references[n - 1]
        citations.append(
            Citation(
                index=n,
                chunk_id=ref.chunk_id,
                source_id=ref.source_id,
                source_type=ref.source_type,
            )
        )
    return citations
