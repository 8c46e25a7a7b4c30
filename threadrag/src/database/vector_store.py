"""
ThreadRAG - ThreadVectorStore
==============================
OOP wrapper around LanceDB providing a clean interface for:
  • Table creation with a strict, fixed-dimension PyArrow schema
  • Insert-only persistence of ``VectorChunk`` rows
  • Nearest-neighbour fetches scoped to one (user, thread) pair
  • Scoped deletes by document, by thread (archives kept) and by
    thread + source type

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path to avoid file-lock issues.
  • **Metadata as JSON** — the tagged-union metadata is stored as a
    JSON string column and re-validated into pydantic on read; only
    ``source_type`` is promoted to its own column for filtering.
  • **Python-side scoring** — the store returns candidates *with* their
    vectors; similarity, thresholds and weights are applied by the
    retrieval engine.

Usage:
    from threadrag.src.database.vector_store import ThreadVectorStore
    store = ThreadVectorStore()
    store.insert(chunks)
    nearest = store.nearest_in_thread(user_id, thread_id, vector, limit=6)
"""

from __future__ import annotations

import threading
from typing import Any, Protocol, runtime_checkable

import lancedb
import pyarrow as pa
from pydantic import TypeAdapter

from threadrag.config.settings import settings
from threadrag.src.core.models import ChunkMetadata, SourceType, VectorChunk
from threadrag.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
ChunkRecord = dict[str, Any]

_METADATA_ADAPTER: TypeAdapter = TypeAdapter(ChunkMetadata)


# ── VectorStore Protocol ──────────────────────────────────────────────

@runtime_checkable
class VectorStore(Protocol):
    """Structural type for the vector-similarity store."""

    def insert(self, chunks: list[VectorChunk]) -> int: ...

    def nearest_in_thread(self, user_id: str, thread_id: str, vector: list[float], limit: int, include_chat_history: bool = True) -> list[VectorChunk]: ...

    def delete_document_chunks(self, document_id: str) -> int: ...

    def delete_thread_chunks(self, thread_id: str, keep_archives: bool = True) -> int: ...

    def delete_thread_source(self, thread_id: str, source_type: SourceType) -> int: ...


# ── LanceDB Table Schema ──────────────────────────────────────────────

def build_schema(dimensions: int) -> pa.Schema:
    """Arrow schema for the chunk table with a fixed-size vector column."""
    return pa.schema([
        pa.field("id", pa.utf8(), nullable=False),
        pa.field("document_id", pa.utf8()),
        pa.field("user_id", pa.utf8(), nullable=False),
        pa.field("thread_id", pa.utf8()),
        pa.field("chunk_index", pa.int32()),
        pa.field("content", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimensions)),
        pa.field("source_type", pa.utf8()),
        pa.field("metadata", pa.utf8()),
        pa.field("created_at", pa.timestamp("us", tz="UTC")),
    ])


# ── Constants ──────────────────────────────────────────────────────────
_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Thread-safe via ``_DB_LOCK``.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _quote(value: str) -> str:
    """Escape a string literal for a LanceDB SQL filter."""
    return "'" + value.replace("'", "''") + "'"


class ThreadVectorStore:
    """
    High-level abstraction over the LanceDB chunk table.

    Parameters
    ----------
    db_path
        Override the database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Override the table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    dimensions
        Vector width.  Defaults to ``settings.EMBEDDING_DIMENSIONS``.
    """

    __slots__ = ("_db_path", "_table_name", "_dimensions", "db", "table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, dimensions: int | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._dimensions: int = dimensions or settings.EMBEDDING_DIMENSIONS
        self.db: lancedb.DBConnection | None = None
        self.table: lancedb.table.Table | None = None
        self._connect()


    def _connect(self) -> None:
        """Open (or re-use) the LanceDB connection and initialise the table."""
        try:
            self.db = _get_connection(self._db_path)

            if self._table_name in self.db.table_names():
                self.table = self.db.open_table(self._table_name)
                logger.info("Opened existing table '%s' (%d rows).", self._table_name, self.table.count_rows())
            else:
                self.table = self.db.create_table(self._table_name, schema=build_schema(self._dimensions))
                logger.info("Created new table '%s' (dim=%d).", self._table_name, self._dimensions)

        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise
        except Exception:
            logger.exception("Unexpected error connecting to LanceDB.")
            raise


    def _require_table(self) -> lancedb.table.Table:
        if self.table is None:
            raise RuntimeError("Vector table is not initialised. Call _connect() first.")
        return self.table

    # ── Writes ─────────────────────────────────────────────────────────

    def insert(self, chunks: list[VectorChunk]) -> int:
        """
        Append *chunks* as new rows.

        Raises
        ------
        ValueError
            If any embedding does not match the table's dimensionality.
        """
        table = self._require_table()
        if not chunks:
            return 0

        records: list[ChunkRecord] = []
        for chunk in chunks:
            if len(chunk.embedding) != self._dimensions:
                raise ValueError(f"Chunk {chunk.id} has {len(chunk.embedding)} dimensions, expected {self._dimensions}.")
            records.append(self._to_record(chunk))

        table.add(records)
        logger.debug("Inserted %d row(s) into '%s'.", len(records), self._table_name)
        return len(records)


    def delete_document_chunks(self, document_id: str) -> int:
        """Remove every chunk of one document; returns rows removed."""
        return self._delete_where(f"document_id = {_quote(document_id)}")


    def delete_thread_chunks(self, thread_id: str, keep_archives: bool = True) -> int:
        """Remove a thread's chunks, leaving thread-archive chunks by default."""
        where = f"thread_id = {_quote(thread_id)}"
        if keep_archives:
            where += f" AND source_type != {_quote(SourceType.THREAD_ARCHIVE.value)}"
        return self._delete_where(where)


    def delete_thread_source(self, thread_id: str, source_type: SourceType) -> int:
        return self._delete_where(f"thread_id = {_quote(thread_id)} AND source_type = {_quote(SourceType(source_type).value)}")


    def _delete_where(self, where: str) -> int:
        table = self._require_table()
        matched = table.count_rows(where)
        if matched:
            table.delete(where)
            logger.info("Deleted %d row(s) from '%s' where %s.", matched, self._table_name, where)
        return matched

    # ── Reads ──────────────────────────────────────────────────────────

    def nearest_in_thread(self, user_id: str, thread_id: str, vector: list[float], limit: int, include_chat_history: bool = True) -> list[VectorChunk]:
        """
        Fetch up to *limit* nearest chunks owned by *user_id* in *thread_id*.

        Results come back in ascending cosine distance and include their
        stored vectors.
        """
        table = self._require_table()
        if limit < 1 or table.count_rows() == 0:
            return []

        where = f"user_id = {_quote(user_id)} AND thread_id = {_quote(thread_id)}"
        if not include_chat_history:
            where += f" AND source_type != {_quote(SourceType.CHAT_HISTORY.value)}"

        rows = table.search(vector).distance_type("cosine").where(where, prefilter=True).limit(limit).to_list()
        return [self._from_record(row) for row in rows]


    def count(self, thread_id: str | None = None, source_type: SourceType | None = None) -> int:
        """Return the number of rows, optionally filtered by thread and source."""
        if self.table is None:
            return 0
        clauses: list[str] = []
        if thread_id is not None:
            clauses.append(f"thread_id = {_quote(thread_id)}")
        if source_type is not None:
            clauses.append(f"source_type = {_quote(SourceType(source_type).value)}")
        if not clauses:
            return self.table.count_rows()
        return self.table.count_rows(" AND ".join(clauses))


    def drop_table(self) -> None:
        """Drop the chunk table (useful for testing / full re-ingestion)."""
        if self.db is None:
            logger.warning("No database connection; nothing to drop.")
            return
        try:
            self.db.drop_table(self._table_name)
            self.table = None
            logger.info("Dropped table '%s'.", self._table_name)
        except (ValueError, FileNotFoundError):
            logger.warning("Table '%s' does not exist — nothing to drop.", self._table_name)
        except OSError as exc:
            logger.error("Filesystem error dropping table '%s': %s", self._table_name, exc)
            raise

    # ── Row conversion ─────────────────────────────────────────────────

    @staticmethod
    def _to_record(chunk: VectorChunk) -> ChunkRecord:
        return {"id": chunk.id, "document_id": chunk.document_id, "user_id": chunk.user_id, "thread_id": chunk.thread_id, "chunk_index": chunk.chunk_index, "content": chunk.content, "vector": [float(v) for v in chunk.embedding], "source_type": chunk.source_type.value, "metadata": chunk.metadata.model_dump_json(), "created_at": chunk.created_at}


    @staticmethod
    def _from_record(row: ChunkRecord) -> VectorChunk:
        return VectorChunk(id=row["id"], document_id=row.get("document_id"), user_id=row["user_id"], thread_id=row.get("thread_id"), chunk_index=row["chunk_index"], content=row["content"], embedding=[float(v) for v in row["vector"]], metadata=_METADATA_ADAPTER.validate_json(row["metadata"]), created_at=row["created_at"])


    def __repr__(self) -> str:
        return f"ThreadVectorStore(db='{self._db_path}', table='{self._table_name}', rows={self.count()})"
