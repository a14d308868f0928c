"""
Sliding-window text chunker.

Splits raw document text into overlapping character windows, preferring to end
each window on a natural break (sentence end, paragraph, newline, space) so
chunks embed cleanly. Fragments that are too short after trimming are dropped.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Tuple

from .errors import InputError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500
DEFAULT_OVERLAP = 50
MIN_CHUNK_LENGTH = 20

# Checked in order; the first delimiter type with an acceptable position wins.
BREAK_DELIMITERS: Tuple[str, ...] = (". ", "! ", "? ", "\n\n", "\n", " ")

# A break must keep the chunk above this fraction of chunk_size.
MIN_BREAK_RATIO = 0.7


@dataclasses.dataclass(frozen=True)
class Chunk:
    """A contiguous excerpt of a document, ready for embedding."""

    text: str
    index: int
    total_chunks: int
    start: int
    end: int


def _find_break(text: str, start: int, end: int, chunk_size: int) -> int:
    """Return the exclusive end offset for the window [start, end)."""
    floor = start + chunk_size * MIN_BREAK_RATIO
    for delim in BREAK_DELIMITERS:
        pos = text.rfind(delim, start, end)
        if pos > floor:
            return pos + len(delim)

    last_space = text.rfind(" ", start, end)
    if last_space > start:
        return last_space + 1
    return end


def _windows(text: str, chunk_size: int, overlap: int) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    n = len(text)
    start = 0
    while start < n:
        end = start + chunk_size
        if end < n:
            end = _find_break(text, start, end, chunk_size)
        else:
            end = n
        spans.append((start, end))
        if end >= n:
            break
        # Always move forward, even when overlap >= the chunk we just cut.
        start = max(end - overlap, start + 1, 0)
    return spans


def split_into_chunks(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    min_length: int = MIN_CHUNK_LENGTH,
) -> List[Chunk]:
    """
    Split text into overlapping chunks.

    Args:
        text: Raw document text.
        chunk_size: Maximum window size in characters.
        overlap: Characters shared between consecutive windows.
        min_length: Trimmed chunks not longer than this are discarded.

    Returns:
        Chunks in document order; each carries its index and the final count.
    """
    if chunk_size <= 0:
        raise InputError("chunk_size must be positive")
    if overlap < 0:
        raise InputError("overlap must be non-negative")
    if not text or not text.strip():
        return []

    kept: List[Tuple[str, int, int]] = []
    for start, end in _windows(text, chunk_size, overlap):
        piece = text[start:end].strip()
        if len(piece) > min_length:
            kept.append((piece, start, end))

    total = len(kept)
    logger.debug("Split %s chars into %s chunks (size=%s, overlap=%s)", len(text), total, chunk_size, overlap)
    return [
        Chunk(text=piece, index=i, total_chunks=total, start=start, end=end)
        for i, (piece, start, end) in enumerate(kept)
    ]


@dataclasses.dataclass
class TextChunker:
    """Chunker with fixed settings, shared by ingestion code."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    overlap: int = DEFAULT_OVERLAP
    min_length: int = MIN_CHUNK_LENGTH

    def split(self, text: str) -> List[Chunk]:
        return split_into_chunks(
            text,
            chunk_size=self.chunk_size,
            overlap=self.overlap,
            min_length=self.min_length,
        )
