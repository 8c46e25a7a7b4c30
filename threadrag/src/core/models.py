"""
ThreadRAG - Data Model
=======================
Pydantic models for the records the pipeline reads and writes, the
per-request options, and the structured results returned to callers.

Chunk metadata is a discriminated union on ``source_type``:

    document        → ``DocumentChunkMeta``
    chat_history    → ``ChatHistoryChunkMeta``
    thread_archive  → ``ThreadArchiveChunkMeta``

Each variant keeps an ``extra`` map for provider-specific fields that
have no structured home.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from threadrag.src.utils.text_utils import utcnow


def new_id() -> str:
    return uuid4().hex


# ── Enumerations ───────────────────────────────────────────────────────

class SourceType(str, Enum):
    DOCUMENT = "document"
    CHAT_HISTORY = "chat_history"
    THREAD_ARCHIVE = "thread_archive"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# ── Stored records ─────────────────────────────────────────────────────

class Thread(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    status: ThreadStatus = ThreadStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    document_count: int = 0


class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    thread_id: str
    user_id: str
    title: str
    file_path: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    content: str | None = None
    status: DocumentStatus = DocumentStatus.PENDING
    chunk_count: int = 0
    processed_chunks: int | None = None
    total_chunks: int | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationTurn(BaseModel):
    id: str = Field(default_factory=new_id)
    thread_id: str
    user_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    vectorized: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class UserPreferences(BaseModel):
    """Per-user defaults; ``None`` means "use the configured setting"."""

    default_model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    include_chat_history: bool | None = None
    cross_thread_search: bool | None = None
    chunk_size: int | None = None
    chunk_overlap: int | None = None
    max_chunks_per_document: int | None = None


# ── Chunk metadata (tagged union) ──────────────────────────────────────

class DateRange(BaseModel):
    start: datetime
    end: datetime


class DocumentChunkMeta(BaseModel):
    source_type: Literal["document"] = "document"
    document_title: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    chunk_size: int = 0
    processing_timestamp: datetime = Field(default_factory=utcnow)
    total_chunks: int = 0
    processed_chunks: int = 0
    ingestion_run: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ChatHistoryChunkMeta(BaseModel):
    source_type: Literal["chat_history"] = "chat_history"
    conversation_count: int
    date_range: DateRange
    group_index: int = 0
    roles: list[str] = Field(default_factory=list)
    is_fallback: bool = False
    chunk_size: int = 0
    processing_timestamp: datetime = Field(default_factory=utcnow)
    total_chunks: int = 1
    processed_chunks: int = 1
    ingestion_run: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ThreadArchiveChunkMeta(BaseModel):
    source_type: Literal["thread_archive"] = "thread_archive"
    thread_title: str
    conversation_count: int
    archive_date: datetime = Field(default_factory=utcnow)
    date_range: DateRange
    original_thread_status: ThreadStatus = ThreadStatus.ACTIVE
    extra: dict[str, Any] = Field(default_factory=dict)


ChunkMetadata = Annotated[
    Union[DocumentChunkMeta, ChatHistoryChunkMeta, ThreadArchiveChunkMeta],
    Field(discriminator="source_type"),
]


class VectorChunk(BaseModel):
    id: str = Field(default_factory=new_id)
    document_id: str | None = None
    user_id: str
    thread_id: str | None = None
    chunk_index: int
    content: str
    embedding: list[float]
    metadata: ChunkMetadata
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def source_type(self) -> SourceType:
        return SourceType(self.metadata.source_type)

    @property
    def is_chat_history(self) -> bool:
        return self.source_type is SourceType.CHAT_HISTORY


# ── Request options ────────────────────────────────────────────────────

class IngestionOptions(BaseModel):
    chunk_size: int | None = None
    chunk_overlap: int | None = None
    max_chunks: int | None = None
    batch_size: int | None = None
    replace_existing: bool = False


class RetrievalOptions(BaseModel):
    max_results: int | None = None
    top_k_per_thread: int | None = None
    max_threads_search: int | None = None
    cross_thread_search: bool | None = None
    current_thread_priority: bool | None = None
    include_chat_history: bool | None = None


class QueryOptions(RetrievalOptions):
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    include_thread_context: bool = False
    auto_vectorize_fallback: bool | None = None


# ── Results ────────────────────────────────────────────────────────────

class IngestionResult(BaseModel):
    success: bool
    message: str
    vector_count: int = 0
    processed_chunks: int = 0
    total_chunks: int = 0
    truncated: bool = False
    error: str | None = None
    elapsed_ms: float = 0.0


class ScoredChunk(BaseModel):
    chunk: VectorChunk
    similarity: float
    source_weight: float
    thread_weight: float = 1.0
    final_score: float = 0.0
    thread_id: str
    thread_title: str | None = None

    @property
    def source_type(self) -> SourceType:
        return self.chunk.source_type

    @property
    def weighted_similarity(self) -> float:
        return self.similarity * self.source_weight


class ThreadContext(BaseModel):
    thread_id: str
    thread_title: str
    conversation_count: int
    last_activity: datetime


class SourceExcerpt(BaseModel):
    chunk_id: str
    content: str
    similarity: float
    source_type: SourceType
    thread_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Performance(BaseModel):
    search_ms: float = 0.0
    generation_ms: float = 0.0
    total_ms: float = 0.0
    tokens_estimated: int = 0


class QueryResult(BaseModel):
    success: bool
    response: str | None = None
    sources: list[SourceExcerpt] = Field(default_factory=list)
    conversation_id: str | None = None
    thread_context: ThreadContext | None = None
    performance: Performance = Field(default_factory=Performance)
    fallback_generated: bool = False
    message: str | None = None
    error: str | None = None


class ArchiveResult(BaseModel):
    success: bool
    message: str
    archived_conversations: int = 0
    archive_chunk_id: str | None = None
    error: str | None = None


class DeleteResult(BaseModel):
    success: bool
    message: str
    archived_conversations: int = 0
    thread_title: str | None = None
    error: str | None = None
