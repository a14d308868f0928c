"""
Context builder for RAG answer generation.

Formats ranked candidates into labelled source blocks ("[Source 1 ...]:") so
the model can cite them, and keeps the result within a token budget. Token
counts use the ~4 characters per token approximation, not a real tokenizer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence

from src.llm.client import CHARS_PER_TOKEN, estimate_tokens
from src.rag.retriever import ScoredCandidate

logger = logging.getLogger(__name__)

BLOCK_SEPARATOR = "\n"


@dataclass(frozen=True)
class ContextReference:
    """Provenance of one context block, for citations and conversation logs."""

    source_id: str
    source_type: str
    chunk_id: str
    similarity_score: float


@dataclass
class AssembledContext:
    """Context text plus one reference per included block."""

    text: str = ""
    references: List[ContextReference] = field(default_factory=list)
    token_estimate: int = 0
    truncated: bool = False

    @property
    def has_context(self) -> bool:
        return bool(self.references)


def _meta(metadata: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value:
            return value
    return None


def build_reference(candidate: ScoredCandidate) -> ContextReference:
    meta = candidate.metadata or {}
    return ContextReference(
        source_id=str(_meta(meta, "source_id", "sourceId") or candidate.id),
        source_type=str(_meta(meta, "source_type", "sourceType") or "unknown"),
        chunk_id=candidate.id,
        similarity_score=candidate.score,
    )


def format_label(position: int, candidate: ScoredCandidate, show_relevance: bool = True) -> str:
    relevance = ""
    if show_relevance and candidate.score:
        relevance = f" (Relevance: {candidate.score * 100:.1f}%)"
    return f"[Source {position}{relevance}]:\n"


def format_block(position: int, candidate: ScoredCandidate, show_relevance: bool = True) -> str:
    return f"{format_label(position, candidate, show_relevance)}{candidate.content}\n"


def assemble_context(
    candidates: Sequence[ScoredCandidate],
    max_chunks: int = 5,
    max_tokens: int = 2000,
    *,
    show_relevance: bool = True,
) -> AssembledContext:
    """
    Format the top candidates into a single context string.

    Args:
        candidates: Ranked candidates (order preserved; position = source number).
        max_chunks: How many candidates to include at most.
        max_tokens: Approximate token budget; the text is cut to max_tokens * 4 chars.
        show_relevance: Include the similarity percentage in each label.

    Returns:
        AssembledContext; empty text and no references when nothing was given.
    """
    selected = list(candidates)[: max(0, max_chunks)]
    if not selected:
        return AssembledContext()

    blocks = [format_block(i, c, show_relevance) for i, c in enumerate(selected, 1)]
    text = BLOCK_SEPARATOR.join(blocks)

    # Offset at which each block's label line ends.
    label_ends: List[int] = []
    offset = 0
    for i, (c, block) in enumerate(zip(selected, blocks), 1):
        label_ends.append(offset + len(format_label(i, c, show_relevance)))
        offset += len(block) + len(BLOCK_SEPARATOR)

    truncated = False
    budget_chars = max(0, max_tokens) * CHARS_PER_TOKEN
    if estimate_tokens(text) > max_tokens:
        logger.warning(
            "Context too large (%s est. tokens > %s), truncating to %s chars",
            estimate_tokens(text),
            max_tokens,
            budget_chars,
        )
        text = text[:budget_chars]
        truncated = True

    references = [
        build_reference(c)
        for c, label_end in zip(selected, label_ends)
        if label_end <= len(text)
    ]
    logger.info("Assembled context from %s chunks", len(references))
    return AssembledContext(
        text=text,
        references=references,
        token_estimate=estimate_tokens(text),
        truncated=truncated,
    )


@dataclass
class ContextAssembler:
    """assemble_context with fixed defaults."""

    max_chunks: int = 5
    max_tokens: int = 2000
    show_relevance: bool = True

    def assemble(
        self,
        candidates: Sequence[ScoredCandidate],
        max_chunks: int | None = None,
        max_tokens: int | None = None,
    ) -> AssembledContext:
        return assemble_context(
            candidates,
            max_chunks=self.max_chunks if max_chunks is None else max_chunks,
            max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            show_relevance=self.show_relevance,
        )
