"""
Orchestrator: ingestion, retrieval strategy, and answer generation flow.
"""

from .factory import build_embedding_provider, build_pipeline
from .pipeline import ChunkResult, ProcessedDocument, RAGPipeline

__all__ = [
    "ChunkResult",
    "ProcessedDocument",
    "RAGPipeline",
    "build_embedding_provider",
    "build_pipeline",
]
