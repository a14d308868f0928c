"""
Answer generation module for RAG pipeline.

- Context assembly from ranked candidates (labelled [Source n] blocks, token budget)
- Answer generation with citations
- Citation extraction from model output
"""

from .citations import Citation, extract_citations
from .config import GenerationConfig
from .context_builder import (
    AssembledContext,
    ContextAssembler,
    ContextReference,
    assemble_context,
)
from .generator import AnswerGenerator, GeneratedAnswer
from .prompts import SYSTEM_PROMPT

__all__ = [
    "assemble_context",
    "AssembledContext",
    "Citation",
    "ContextAssembler",
    "ContextReference",
    "extract_citations",
    "GenerationConfig",
    "SYSTEM_PROMPT",
    "AnswerGenerator",
    "GeneratedAnswer",
]
