"""Vector storage: record substrates and the similarity store."""

from .records import MemoryRecordStore, RecordStore, SQLiteRecordStore, VectorDocument
from .vector_store import EmbeddingGenerator, ScoredDocument, VectorSimilarityStore, match_filter

__all__ = [
    "EmbeddingGenerator",
    "MemoryRecordStore",
    "RecordStore",
    "SQLiteRecordStore",
    "ScoredDocument",
    "VectorDocument",
    "VectorSimilarityStore",
    "match_filter",
]
