"""
Vector similarity store.

Keeps documents with their embeddings and answers "which stored documents
are most similar to this text" by brute-force cosine similarity (numpy
batch, O(n) per query). Durability is delegated to a RecordStore; the store
keeps an in-memory copy loaded in open() and writes through on mutation.

Ranking rules:
- metadata_filter is an exact-match conjunction applied before ranking; a
  document without one of the filter keys is excluded
- documents scoring below min_similarity are excluded
- order is cosine similarity descending, ties by insertion order
  (an upsert counts as a new insertion)
- the result is truncated to top_k, never padded

Example:
    >>> store = VectorSimilarityStore("docs", embedding_generator=embedder)
    >>> await store.open()
    >>> await store.add_document("d1", "Vector stores enable semantic search.")
    >>> hits = await store.query("search by meaning", top_k=3, min_similarity=0.2)
    >>> hits[0].id
    'd1'
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from ..adapters.base import ModelAdapter, run_blocking
from ..chunking import chunk_text
from ..embedding import EmbeddingVector, cosine_similarity_batch
from ..exceptions import (
    DimensionMismatchError,
    EmbeddingUnavailableError,
    StoreNotInitializedError,
)
from ..locks import ReadWriteLock
from .records import MemoryRecordStore, RecordStore, VectorDocument, utcnow

logger = logging.getLogger(__name__)

_MISSING = object()

EmbeddingLike = Union[EmbeddingVector, Sequence[float]]


class EmbeddingGenerator(Protocol):
    """Anything that can embed text: a TextEmbedder adapter or a routed embedder."""

    async def embed(self, text: str) -> EmbeddingVector:
        ...


@dataclass(frozen=True)
class ScoredDocument:
    """A query hit. Never persisted."""

    document: VectorDocument
    score: float

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def text(self) -> str:
        return self.document.text

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.document.metadata

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "score": self.score, "metadata": dict(self.metadata)}


def match_filter(metadata: Dict[str, Any], metadata_filter: Optional[Dict[str, Any]]) -> bool:
    """Exact-match conjunction; a missing key never matches."""
    if not metadata_filter:
        return True
    return all(metadata.get(key, _MISSING) == value for key, value in metadata_filter.items())


def _as_vector(embedding: EmbeddingLike) -> EmbeddingVector:
    if isinstance(embedding, EmbeddingVector):
        return embedding
    return EmbeddingVector(values=tuple(embedding))


class VectorSimilarityStore:
    """
    Similarity-indexed document store.

    Args:
        store_id: Store identifier (used in errors and logs).
        records: Durable substrate. Defaults to MemoryRecordStore.
        embedding_generator: Used to embed text for add_document and query.
            Adapters are lazily initialized on first use.
    """

    def __init__(
        self,
        store_id: str,
        records: Optional[RecordStore] = None,
        embedding_generator: Optional[EmbeddingGenerator] = None,
    ):
        self.store_id = store_id
        self.records = records if records is not None else MemoryRecordStore()
        self.embedding_generator = embedding_generator
        self._lock = ReadWriteLock()
        self._open = False
        self._documents: Dict[str, VectorDocument] = {}
        self._dimension: Optional[int] = None
        self._sequence = 0

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def dimension(self) -> Optional[int]:
        """Dimension shared by all documents, None while empty."""
        return self._dimension

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if self.records.blocking:
            return await run_blocking(func, *args)
        return func(*args)

    def _ensure_open(self) -> None:
        if not self._open:
            raise StoreNotInitializedError(self.store_id)

    async def open(self) -> None:
        """Open the record store and load its documents. Idempotent."""
        async with self._lock.write():
            if self._open:
                return
            await self._call(self.records.open)
            documents = await self._call(self.records.scan)
            self._documents = {doc.id: doc for doc in documents}
            self._sequence = await self._call(self.records.max_sequence)
            self._dimension = documents[0].embedding.dimension if documents else None
            self._open = True
        logger.info(f"Opened vector store '{self.store_id}' ({len(self._documents)} documents)")

    async def close(self) -> None:
        async with self._lock.write():
            if not self._open:
                return
            self._open = False
            self._documents = {}
            self._dimension = None
            await self._call(self.records.close)
        logger.info(f"Closed vector store '{self.store_id}'")

    async def __aenter__(self) -> "VectorSimilarityStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _embed(self, text: str) -> EmbeddingVector:
        generator = self.embedding_generator
        if generator is None:
            raise EmbeddingUnavailableError(self.store_id)
        if isinstance(generator, ModelAdapter):
            await generator.initialize()
        return _as_vector(await generator.embed(text))

    async def _embed_many(self, texts: List[str]) -> List[EmbeddingVector]:
        generator = self.embedding_generator
        if generator is None:
            raise EmbeddingUnavailableError(self.store_id)
        if isinstance(generator, ModelAdapter):
            await generator.initialize()
        if hasattr(generator, "embed_batch"):
            return [_as_vector(v) for v in await generator.embed_batch(texts)]
        return [_as_vector(await generator.embed(text)) for text in texts]

    async def add_document(
        self, doc_id: str, text: str, metadata: Optional[Dict[str, Any]] = None
    ) -> VectorDocument:
        """
        Embed text with the embedding generator and store it (upsert).

        Raises:
            StoreNotInitializedError: Before open().
            EmbeddingUnavailableError: No embedding generator configured.
            DimensionMismatchError: Embedding dimension differs from the store's.
        """
        self._ensure_open()
        embedding = await self._embed(text)
        return await self.add_document_with_embedding(doc_id, text, embedding, metadata)

    async def add_document_with_embedding(
        self,
        doc_id: str,
        text: str,
        embedding: EmbeddingLike,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VectorDocument:
        """Store a document with a precomputed embedding (upsert)."""
        embedding = _as_vector(embedding)
        async with self._lock.write():
            self._ensure_open()
            existing = self._documents.get(doc_id)
            # A lone document may be replaced by one of another dimension
            others = len(self._documents) - (1 if existing is not None else 0)
            if others and self._dimension != embedding.dimension:
                raise DimensionMismatchError(self._dimension, embedding.dimension)

            document = VectorDocument(
                id=doc_id,
                text=text,
                embedding=embedding,
                metadata=metadata or {},
                created_at=utcnow(),
                sequence=self._sequence + 1,
            )
            await self._call(self.records.put, document)
            self._sequence = document.sequence
            self._documents.pop(doc_id, None)
            self._documents[doc_id] = document
            self._dimension = embedding.dimension
        logger.debug(f"Stored '{doc_id}' in '{self.store_id}' (sequence={document.sequence})")
        return document

    async def add_chunked_document(
        self,
        source_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
        max_chunk_size: int = 500,
        overlap: int = 50,
    ) -> List[VectorDocument]:
        """
        Split text into chunks and store each as "{source_id}#{index}".

        Chunk metadata carries source_id and chunk_index besides the given
        metadata. Chunks left over from a previous, longer version of the same
        source are deleted.
        """
        self._ensure_open()
        chunks = chunk_text(text, max_chunk_size=max_chunk_size, overlap=overlap)
        embeddings = await self._embed_many([chunk.text for chunk in chunks])

        stored = []
        for chunk, embedding in zip(chunks, embeddings):
            chunk_metadata = dict(metadata or {})
            chunk_metadata.update({"source_id": source_id, "chunk_index": chunk.index})
            stored.append(
                await self.add_document_with_embedding(
                    f"{source_id}#{chunk.index}", chunk.text, embedding, chunk_metadata
                )
            )

        stale = [
            doc.id
            for doc in list(self._documents.values())
            if doc.metadata.get("source_id") == source_id
            and doc.metadata.get("chunk_index", -1) >= len(chunks)
        ]
        for doc_id in stale:
            await self.delete_document(doc_id)

        logger.info(f"Ingested '{source_id}' into '{self.store_id}' as {len(stored)} chunk(s)")
        return stored

    async def query(
        self,
        text: str,
        top_k: int = 10,
        min_similarity: Optional[float] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[ScoredDocument]:
        """
        Rank stored documents by similarity to text.

        Raises:
            ValueError: top_k < 1.
            StoreNotInitializedError: Before open().
            EmbeddingUnavailableError: No embedding generator configured.
        """
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        self._ensure_open()
        embedding = await self._embed(text)
        return await self.query_with_embedding(embedding, top_k, min_similarity, metadata_filter)

    async def query_with_embedding(
        self,
        embedding: EmbeddingLike,
        top_k: int = 10,
        min_similarity: Optional[float] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
    ) -> List[ScoredDocument]:
        """Rank stored documents by similarity to a precomputed embedding."""
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        query = _as_vector(embedding)

        async with self._lock.read():
            self._ensure_open()
            if not self._documents:
                return []
            if query.dimension != self._dimension:
                raise DimensionMismatchError(self._dimension, query.dimension)

            candidates = [
                doc for doc in self._documents.values() if match_filter(doc.metadata, metadata_filter)
            ]

        if not candidates:
            return []

        scores = cosine_similarity_batch(
            query.values, [doc.embedding.values for doc in candidates]
        )
        ranked = sorted(zip(candidates, scores), key=lambda pair: (-pair[1], pair[0].sequence))
        if min_similarity is not None:
            ranked = [(doc, score) for doc, score in ranked if score >= min_similarity]

        logger.debug(
            f"Query on '{self.store_id}': {len(candidates)} candidate(s), "
            f"{min(len(ranked), top_k)} returned"
        )
        return [ScoredDocument(document=doc, score=score) for doc, score in ranked[:top_k]]

    async def get_document(self, doc_id: str) -> Optional[VectorDocument]:
        async with self._lock.read():
            self._ensure_open()
            return self._documents.get(doc_id)

    async def delete_document(self, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        async with self._lock.write():
            self._ensure_open()
            if doc_id not in self._documents:
                return False
            await self._call(self.records.delete, doc_id)
            del self._documents[doc_id]
            if not self._documents:
                self._dimension = None
        logger.debug(f"Deleted '{doc_id}' from '{self.store_id}'")
        return True

    async def clear(self) -> None:
        async with self._lock.write():
            self._ensure_open()
            await self._call(self.records.clear)
            self._documents = {}
            self._dimension = None
        logger.info(f"Cleared vector store '{self.store_id}'")

    async def count(self) -> int:
        async with self._lock.read():
            self._ensure_open()
            return len(self._documents)


__all__ = [
    "EmbeddingGenerator",
    "ScoredDocument",
    "VectorSimilarityStore",
    "match_filter",
]
