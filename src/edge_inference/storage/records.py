"""
Record substrate for vector stores.

A RecordStore durably keeps the VectorDocuments of one vector store. Two
implementations are provided:

- MemoryRecordStore: dict-backed, nothing survives the process.
- SQLiteRecordStore: one table shared by any number of stores, keyed by
  (store_id, id). Supports ":memory:" and file paths. Embeddings and
  metadata are stored as JSON text.

Example:
    >>> records = SQLiteRecordStore("vectors.sqlite", store_id="docs")
    >>> records.open()
    >>> records.put(document)
    >>> records.get("doc-1").text
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from ..embedding import EmbeddingVector

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VectorDocument:
    """
    A stored document.

    Attributes:
        id: Unique within its store.
        text: Original text content.
        embedding: Embedding of text.
        metadata: Arbitrary JSON-compatible attributes (copied on creation).
        created_at: UTC time the current version was stored.
        sequence: Monotonic insertion number; breaks similarity ties.
    """

    id: str
    text: str
    embedding: EmbeddingVector
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False)
    created_at: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def __post_init__(self):
        object.__setattr__(self, "metadata", dict(self.metadata or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "embedding": self.embedding.to_list(),
            "model_id": self.embedding.model_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
        }


class RecordStore(ABC):
    """
    Keyed durable storage for one vector store's documents.

    Methods are synchronous. ``blocking`` tells callers on an event loop
    whether calls should be moved to an executor.
    """

    blocking = False

    @abstractmethod
    def open(self) -> None:
        """Prepare the store (connect, create schema). Idempotent."""

    @abstractmethod
    def close(self) -> None:
        """Release resources. Idempotent."""

    @abstractmethod
    def put(self, document: VectorDocument) -> None:
        """Insert or fully replace the document with the same id."""

    @abstractmethod
    def get(self, doc_id: str) -> Optional[VectorDocument]:
        ...

    @abstractmethod
    def delete(self, doc_id: str) -> bool:
        """Remove a document. Returns False if it did not exist."""

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def scan(self) -> List[VectorDocument]:
        """All documents ordered by sequence."""

    def max_sequence(self) -> int:
        documents = self.scan()
        return documents[-1].sequence if documents else 0


class MemoryRecordStore(RecordStore):
    """Process-local record store."""

    def __init__(self):
        self._documents: Dict[str, VectorDocument] = {}

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def put(self, document: VectorDocument) -> None:
        self._documents.pop(document.id, None)
        self._documents[document.id] = document

    def get(self, doc_id: str) -> Optional[VectorDocument]:
        return self._documents.get(doc_id)

    def delete(self, doc_id: str) -> bool:
        return self._documents.pop(doc_id, None) is not None

    def clear(self) -> None:
        self._documents.clear()

    def count(self) -> int:
        return len(self._documents)

    def scan(self) -> List[VectorDocument]:
        return sorted(self._documents.values(), key=lambda d: d.sequence)


class SQLiteRecordStore(RecordStore):
    """
    SQLite-backed record store.

    Implements RecordStore with:
    - Schema auto-creation on open
    - Support for :memory: and file paths
    - Thread-safe operations via Lock (calls arrive from executor threads)

    Args:
        path: Database path. Use ":memory:" for an in-memory database.
        store_id: Namespace of this store inside the shared table.
    """

    blocking = True

    def __init__(self, path: str = ":memory:", store_id: str = "default"):
        self._path = path
        self.store_id = store_id
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = Lock()

    @property
    def path(self) -> str:
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"SQLiteRecordStore '{self.store_id}' is not open")
        return self._conn

    def open(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS vector_documents (
                    store_id VARCHAR(255) NOT NULL,
                    id VARCHAR(1024) NOT NULL,
                    text TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    model_id VARCHAR(255),
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    sequence INTEGER NOT NULL,
                    PRIMARY KEY (store_id, id)
                );

                CREATE INDEX IF NOT EXISTS idx_vector_documents_sequence
                    ON vector_documents(store_id, sequence);
                """
            )
            conn.commit()
            self._conn = conn
        logger.debug(f"Opened SQLite record store '{self.store_id}' at {self._path}")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _row_to_document(self, row: sqlite3.Row) -> VectorDocument:
        return VectorDocument(
            id=row["id"],
            text=row["text"],
            embedding=EmbeddingVector(
                values=tuple(json.loads(row["embedding"])), model_id=row["model_id"]
            ),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
            sequence=row["sequence"],
        )

    def put(self, document: VectorDocument) -> None:
        conn = self.connection
        with self._lock:
            conn.execute(
                """
                INSERT INTO vector_documents (
                    store_id, id, text, embedding, model_id, metadata, created_at, sequence
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, id) DO UPDATE SET
                    text = excluded.text,
                    embedding = excluded.embedding,
                    model_id = excluded.model_id,
                    metadata = excluded.metadata,
                    created_at = excluded.created_at,
                    sequence = excluded.sequence
                """,
                (
                    self.store_id,
                    document.id,
                    document.text,
                    json.dumps(document.embedding.to_list()),
                    document.embedding.model_id,
                    json.dumps(document.metadata),
                    document.created_at.isoformat(),
                    document.sequence,
                ),
            )
            conn.commit()

    def get(self, doc_id: str) -> Optional[VectorDocument]:
        conn = self.connection
        with self._lock:
            row = conn.execute(
                "SELECT * FROM vector_documents WHERE store_id = ? AND id = ?",
                (self.store_id, doc_id),
            ).fetchone()
        return self._row_to_document(row) if row else None

    def delete(self, doc_id: str) -> bool:
        conn = self.connection
        with self._lock:
            cursor = conn.execute(
                "DELETE FROM vector_documents WHERE store_id = ? AND id = ?",
                (self.store_id, doc_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def clear(self) -> None:
        conn = self.connection
        with self._lock:
            conn.execute("DELETE FROM vector_documents WHERE store_id = ?", (self.store_id,))
            conn.commit()

    def count(self) -> int:
        conn = self.connection
        with self._lock:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM vector_documents WHERE store_id = ?",
                (self.store_id,),
            ).fetchone()
        return row["n"]

    def scan(self) -> List[VectorDocument]:
        conn = self.connection
        with self._lock:
            rows = conn.execute(
                "SELECT * FROM vector_documents WHERE store_id = ? ORDER BY sequence",
                (self.store_id,),
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def max_sequence(self) -> int:
        conn = self.connection
        with self._lock:
            row = conn.execute(
                "SELECT MAX(sequence) AS s FROM vector_documents WHERE store_id = ?",
                (self.store_id,),
            ).fetchone()
        return row["s"] or 0


__all__ = [
    "VectorDocument",
    "RecordStore",
    "MemoryRecordStore",
    "SQLiteRecordStore",
    "utcnow",
]
