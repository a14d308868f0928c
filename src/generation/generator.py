"""
Answer generator: sends history + query + assembled context to the LLM.
Citations are mapped back to context references after generation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, List, Mapping, Optional, Sequence

from src.rag.query_rewriter import TextGenerator

from .citations import Citation, extract_citations
from .config import GenerationConfig
from .context_builder import AssembledContext, ContextReference
from .prompts import SYSTEM_PROMPT


@dataclass
class GeneratedAnswer:
    """Result of RAG answer generation."""

    answer: str
    references: List[ContextReference] = field(default_factory=list)
    citations: List[Citation] = field(default_factory=list)
    tokens: int = 0
    has_context: bool = False
    used_reranking: bool = False


def build_messages(
    query: str,
    history: Optional[Sequence[Mapping[str, str]]] = None,
) -> List[dict]:
    """System prompt, prior turns (role/content only), then the current query."""
    messages: List[dict] = [{"role": "system", "content": SYSTEM_PROMPT}]
    for msg in history or []:
        messages.append({"role": msg.get("role", "user"), "content": msg.get("content", "")})
    messages.append({"role": "user", "content": query})
    return messages


class AnswerGenerator:
    """Generate answers from a query and an assembled context using the LLM."""

    def __init__(self, client: TextGenerator):
        self.client = client

    async def generate(
        self,
        query: str,
        context: AssembledContext,
        history: Optional[Sequence[Mapping[str, str]]] = None,
        config: Optional[GenerationConfig] = None,
    ) -> GeneratedAnswer:
        config = config or GenerationConfig()
        response = await self.client.generate(
            build_messages(query, history),
            context.text,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
        answer = response.content or ""
        return GeneratedAnswer(
            answer=answer,
            references=list(context.references),
            citations=extract_citations(answer, context.references),
            tokens=response.token_count,
            has_context=context.has_context,
        )

    async def generate_stream(
        self,
        query: str,
        context: AssembledContext,
        history: Optional[Sequence[Mapping[str, str]]] = None,
        config: Optional[GenerationConfig] = None,
    ) -> AsyncIterator[str]:
        """Yield text pieces from the LLM. Caller accumulates and runs extract_citations when done."""
        config = config or GenerationConfig()
        stream = getattr(self.client, "stream", None)
        if stream is None:
            # Generator without streaming support: deliver the full answer at once.
            result = await self.generate(query, context, history, config)
            if result.answer:
                yield result.answer
            return
        async for piece in stream(
            build_messages(query, history),
            context.text,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        ):
            if piece:
                yield piece
