"""
Text chunking for ingestion into a vector store.

Splits long text into overlapping character windows so each chunk fits the
embedding model's useful input size. Windows end at a word boundary when one
exists in the second half of the window.
"""

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class TextChunk:
    """A chunk of source text with its character offsets (end exclusive)."""

    text: str
    index: int
    start: int
    end: int


def chunk_text(text: str, max_chunk_size: int = 500, overlap: int = 50) -> List[TextChunk]:
    """
    Split text into overlapping chunks.

    Args:
        text: Text content to chunk.
        max_chunk_size: Maximum size of each chunk in characters.
        overlap: Characters shared by consecutive chunks.

    Returns:
        Chunks in source order. Whitespace-only windows are skipped, so
        indexes stay contiguous over the returned chunks.

    Raises:
        ValueError: If max_chunk_size <= 0, overlap < 0 or
            overlap >= max_chunk_size.

    Example:
        >>> [c.text for c in chunk_text("alpha beta gamma delta", 12, 2)]
        ['alpha beta', 'ta gamma', 'ma delta']
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap < 0:
        raise ValueError("overlap must be non-negative")
    if overlap >= max_chunk_size:
        raise ValueError("overlap must be less than max_chunk_size")
    if not text or not text.strip():
        return []

    chunks: List[TextChunk] = []
    text_len = len(text)
    start = 0
    while start < text_len:
        end = min(start + max_chunk_size, text_len)
        if end < text_len:
            # Try to break at word boundary if not at end
            last_space = text.rfind(" ", start, end)
            if last_space - start > max_chunk_size // 2:
                end = last_space

        content = text[start:end].strip()
        if content:
            chunks.append(TextChunk(text=content, index=len(chunks), start=start, end=end))

        if end >= text_len:
            break
        start = max(end - overlap, start + 1)

    return chunks


__all__ = ["TextChunk", "chunk_text"]
