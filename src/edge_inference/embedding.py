"""
Embedding vectors and cosine similarity.

EmbeddingVector is the only numeric type shared between embedding adapters
and vector stores. Two vectors are comparable only when produced by the same
model family; comparing vectors of different dimensionality raises
DimensionMismatchError.

The batch similarity helper uses numpy and is what the vector store ranks
with; EmbeddingVector.cosine_similarity is the pure Python single-pair form.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import DimensionMismatchError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Cosine similarity score between -1 and 1. A zero-magnitude vector
        has similarity 0.0 with everything.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Clamp float drift so scores stay within [-1, 1]
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def cosine_similarity_batch(
    query: Sequence[float], embeddings: Sequence[Sequence[float]]
) -> List[float]:
    """Batch cosine similarity of one query against many vectors using numpy."""
    if not embeddings:
        return []
    query_arr = np.asarray(query, dtype=np.float64)
    emb_arr = np.asarray(embeddings, dtype=np.float64)
    if emb_arr.ndim != 2 or emb_arr.shape[1] != query_arr.shape[0]:
        actual = emb_arr.shape[1] if emb_arr.ndim == 2 else -1
        raise DimensionMismatchError(query_arr.shape[0], actual)

    query_norm = np.linalg.norm(query_arr)
    emb_norms = np.linalg.norm(emb_arr, axis=1)
    dots = emb_arr @ query_arr
    denom = emb_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)
    return np.clip(scores, -1.0, 1.0).tolist()


@dataclass(frozen=True)
class EmbeddingVector:
    """
    Fixed-length embedding of a piece of text.

    Attributes:
        values: The vector components.
        model_id: Model that produced the vector, if known.
        metadata: Optional extra information (timings, token counts).

    Example:
        >>> a = EmbeddingVector.of([1.0, 0.0])
        >>> b = EmbeddingVector.of([1.0, 1.0])
        >>> round(a.cosine_similarity(b), 4)
        0.7071
    """

    values: Tuple[float, ...]
    model_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        # Freeze whatever sequence was passed in
        object.__setattr__(self, "values", tuple(float(v) for v in self.values))

    @classmethod
    def of(cls, values: Iterable[float], model_id: Optional[str] = None) -> "EmbeddingVector":
        return cls(values=tuple(values), model_id=model_id)

    @property
    def dimension(self) -> int:
        return len(self.values)

    def magnitude(self) -> float:
        return math.sqrt(sum(v * v for v in self.values))

    def normalize(self) -> "EmbeddingVector":
        """Return a unit-length copy (or self for the zero vector)."""
        magnitude = self.magnitude()
        if magnitude == 0:
            return self
        return EmbeddingVector(
            values=tuple(v / magnitude for v in self.values),
            model_id=self.model_id,
            metadata=dict(self.metadata),
        )

    def cosine_similarity(self, other: "EmbeddingVector") -> float:
        return cosine_similarity(self.values, other.values)

    def l2_distance(self, other: "EmbeddingVector") -> float:
        if self.dimension != other.dimension:
            raise DimensionMismatchError(self.dimension, other.dimension)
        return math.sqrt(sum((x - y) ** 2 for x, y in zip(self.values, other.values)))

    def to_list(self) -> List[float]:
        return list(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        return f"EmbeddingVector(dimension={self.dimension}, model_id={self.model_id!r})"


__all__ = [
    "EmbeddingVector",
    "cosine_similarity",
    "cosine_similarity_batch",
]
