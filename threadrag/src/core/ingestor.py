"""
ThreadRAG - IngestionPipeline
==============================
Turns stored documents and conversation history into vector chunks and
persists them through the ``VectorStoreWriter``.

Key design decisions:
    • **Dependency Injection** – receives the repository, vector store,
      ``EmbeddingBatcher`` and ``VectorStoreWriter``.
    • **Document state machine** – ``pending → processing → completed |
      failed``.  Validation rejections happen *before* the transition,
      so a rejected request leaves the status untouched.
    • **Chat-history grouping** – turns are grouped by idle gap (one hour
      by default); each surviving group becomes one chunk.
    • **Idempotency** – every run stamps an ``ingestion_run`` marker on
      its chunks; ``replace_existing`` removes earlier chunks first so a
      re-run converges instead of duplicating.
    • **Hard caps** – chunk counts above the per-source limit are
      truncated with a warning and reported as ``truncated``.

Usage:
    from threadrag.src.core.ingestor import IngestionPipeline
    pipeline = IngestionPipeline(repository, store, batcher, writer)
    result   = await pipeline.ingest_document(document_id, user_id)
"""

from __future__ import annotations

import time
from datetime import timedelta

from threadrag.config.settings import settings
from threadrag.src.core.chunker import TextChunker
from threadrag.src.core.embedding import EmbeddingBatcher
from threadrag.src.core.errors import NotFoundError, RequestValidationError, ThreadRAGError, UpstreamBatchFailure, VectorWriteFailed
from threadrag.src.core.models import ChatHistoryChunkMeta, ConversationTurn, DateRange, Document, DocumentChunkMeta, DocumentStatus, IngestionOptions, IngestionResult, Role, SourceType, VectorChunk, new_id
from threadrag.src.core.writer import VectorStoreWriter
from threadrag.src.database.repository import Repository
from threadrag.src.database.vector_store import VectorStore
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.text_utils import utcnow

logger = get_logger(__name__)

# Per-turn prefix inside a rendered chat-history group
_TURN_TEMPLATE = "{role}: {content}"
_TURN_JOINER = "\n\n"

# Synthetic chunk written after a fallback answer
_EXCHANGE_TEMPLATE = "User: {question}\n\nAssistant: {answer}"


def group_conversations(turns: list[ConversationTurn], gap_minutes: int | None = None) -> list[list[ConversationTurn]]:
    """
    Group chronologically ordered *turns* by idle gap.

    A turn starts a new group iff it was created more than *gap_minutes*
    after the previous turn of the current group.

    Examples::

        10:00, 10:01, 11:30  → [[10:00, 10:01], [11:30]]
        10:00, 10:59, 11:58  → [[10:00, 10:59, 11:58]]
    """
    gap = timedelta(minutes=settings.CHAT_GROUP_GAP_MINUTES if gap_minutes is None else gap_minutes)
    groups: list[list[ConversationTurn]] = []
    current: list[ConversationTurn] = []

    for turn in turns:
        if current and turn.created_at - current[-1].created_at > gap:
            groups.append(current)
            current = []
        current.append(turn)

    if current:
        groups.append(current)
    return groups


def render_group(group: list[ConversationTurn]) -> str:
    return _TURN_JOINER.join(_TURN_TEMPLATE.format(role=turn.role.value, content=turn.content) for turn in group)


class IngestionPipeline:
    """
    Document and chat-history ingestion: chunk → embed → store.

    Parameters
    ----------
    repository
        Record store for documents, threads and conversations.
    vector_store
        Chunk store; used directly only for ``replace_existing`` deletes.
    batcher
        Embedding batcher (provider limits + pacing).
    writer
        Batched chunk writer.
    """

    __slots__ = ("_repo", "_store", "_batcher", "_writer")

    def __init__(self, repository: Repository, vector_store: VectorStore, batcher: EmbeddingBatcher, writer: VectorStoreWriter) -> None:
        self._repo = repository
        self._store = vector_store
        self._batcher = batcher
        self._writer = writer

    # ══════════════════════════════════════════════════════════════════
    #  DOCUMENT PATH
    # ══════════════════════════════════════════════════════════════════

    async def ingest_document(self, document_id: str, user_id: str, options: IngestionOptions | None = None) -> IngestionResult:
        """
        Chunk, embed and store one document's extracted text.

        Raises
        ------
        NotFoundError
            The document does not exist or belongs to another user.
        RequestValidationError
            Missing or oversized content, or invalid chunking options.
            The document status is left unchanged.

        Returns
        -------
        IngestionResult
            ``success=False`` with the error string when embedding or
            storage failed after processing began (status ``failed``).
        """
        options = options or IngestionOptions()
        t_start = time.perf_counter()

        document = await self._repo.get_document(document_id, user_id)
        if document is None:
            raise NotFoundError("Document not found", f"document '{document_id}'")

        content = document.content
        if not content or not content.strip():
            raise RequestValidationError("Document has no extracted content", f"document '{document_id}'")
        if len(content) > settings.MAX_CONTENT_LENGTH:
            raise RequestValidationError("Document content too large", f"{len(content)} characters exceeds the limit of {settings.MAX_CONTENT_LENGTH}")

        chunker = TextChunker(options.chunk_size, options.chunk_overlap)
        max_chunks = options.max_chunks or settings.MAX_CHUNKS_PER_DOCUMENT

        if options.replace_existing:
            removed = self._store.delete_document_chunks(document.id)
            logger.info("[INGEST] replace_existing: removed %d previous chunk(s) of '%s'.", removed, document.id)

        await self._repo.update_document(document.id, status=DocumentStatus.PROCESSING, error=None)
        logger.info("[INGEST] Document '%s' → processing (%d chars).", document.id, len(content))

        # ── Chunking (timed) ───────────────────────────────────────────
        t_chunk = time.perf_counter()
        pieces = chunker.split(content)
        total_chunks = len(pieces)
        truncated = total_chunks > max_chunks
        if truncated:
            logger.warning("[INGEST] Document '%s' produced %d chunks; truncating to %d.", document.id, total_chunks, max_chunks)
            pieces = pieces[:max_chunks]
        logger.info("[INGEST] Document '%s' → %d chunk(s) in %.1fms.", document.id, len(pieces), (time.perf_counter() - t_chunk) * 1000)

        # ── Embedding + storage ────────────────────────────────────────
        inserted = 0
        try:
            vectors = await self._batcher.embed(pieces)
            chunks = self._document_chunks(document, pieces, vectors, total_chunks, chunker.chunk_size)
            inserted = await self._writer.write_chunks(chunks, options.batch_size)

        except Exception as exc:
            if isinstance(exc, VectorWriteFailed):
                inserted = exc.inserted
            if not isinstance(exc, ThreadRAGError):
                logger.exception("[INGEST] Unexpected failure ingesting document '%s'.", document.id)
            error = str(exc)
            await self._repo.update_document(document.id, status=DocumentStatus.FAILED, error=error, processed_chunks=inserted, total_chunks=total_chunks)
            elapsed_ms = (time.perf_counter() - t_start) * 1000
            logger.error("[INGEST] Document '%s' failed after %.1fms: %s", document.id, elapsed_ms, error)
            return IngestionResult(success=False, message="Document processing failed", vector_count=inserted, processed_chunks=inserted, total_chunks=total_chunks, truncated=truncated, error=error, elapsed_ms=elapsed_ms)

        await self._repo.update_document(document.id, status=DocumentStatus.COMPLETED, chunk_count=inserted, processed_chunks=len(pieces), total_chunks=total_chunks, error=None)
        elapsed_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[INGEST] Document '%s' complete — %d vector(s) in %.1fms.", document.id, inserted, elapsed_ms)

        message = f"Document processed successfully: {inserted} chunks"
        if truncated:
            message += f" (truncated from {total_chunks})"
        return IngestionResult(success=True, message=message, vector_count=inserted, processed_chunks=len(pieces), total_chunks=total_chunks, truncated=truncated, elapsed_ms=elapsed_ms)


    @staticmethod
    def _document_chunks(document: Document, pieces: list[str], vectors: list[list[float]], total_chunks: int, chunk_size: int) -> list[VectorChunk]:
        run_id = new_id()
        return [
            VectorChunk(document_id=document.id, user_id=document.user_id, thread_id=document.thread_id, chunk_index=idx, content=text, embedding=vec, metadata=DocumentChunkMeta(document_title=document.title, file_name=document.file_name, file_type=document.file_type, chunk_size=len(text), total_chunks=total_chunks, processed_chunks=len(pieces), ingestion_run=run_id, extra={"configured_chunk_size": chunk_size}))
            for idx, (text, vec) in enumerate(zip(pieces, vectors))
        ]

    # ══════════════════════════════════════════════════════════════════
    #  CHAT-HISTORY PATH
    # ══════════════════════════════════════════════════════════════════

    async def ingest_chat_history(self, thread_id: str, user_id: str, options: IngestionOptions | None = None) -> IngestionResult:
        """
        Vectorize a thread's conversation history, one chunk per idle-gap group.

        Raises
        ------
        NotFoundError
            The thread does not exist or belongs to another user.
        """
        options = options or IngestionOptions()
        t_start = time.perf_counter()

        thread = await self._repo.get_thread(thread_id, user_id)
        if thread is None:
            raise NotFoundError("Thread not found", f"thread '{thread_id}'")

        turns = await self._repo.list_conversations(thread_id, user_id)
        if not turns:
            logger.info("[INGEST] Thread '%s' has no conversations — nothing to vectorize.", thread_id)
            return IngestionResult(success=True, message="No conversations to process", elapsed_ms=(time.perf_counter() - t_start) * 1000)

        # group_index keeps its position among all idle-gap groups, dropped ones included
        groups = [(group_index, group, render_group(group)) for group_index, group in enumerate(group_conversations(turns))]
        groups = [entry for entry in groups if len(entry[2]) >= settings.MIN_CHAT_CHUNK_CHARS]
        if not groups:
            logger.info("[INGEST] Thread '%s': every conversation group is below %d chars.", thread_id, settings.MIN_CHAT_CHUNK_CHARS)
            return IngestionResult(success=True, message="No meaningful conversation groups to process", elapsed_ms=(time.perf_counter() - t_start) * 1000)

        max_chunks = options.max_chunks or settings.MAX_CHUNKS_CHAT_HISTORY
        total_chunks = len(groups)
        truncated = total_chunks > max_chunks
        if truncated:
            logger.warning("[INGEST] Thread '%s' produced %d chat groups; truncating to %d.", thread_id, total_chunks, max_chunks)
            groups = groups[:max_chunks]

        if options.replace_existing:
            removed = self._store.delete_thread_source(thread_id, SourceType.CHAT_HISTORY)
            logger.info("[INGEST] replace_existing: removed %d chat-history chunk(s) of thread '%s'.", removed, thread_id)

        inserted = 0
        try:
            vectors = await self._batcher.embed([text for _, _, text in groups])
            run_id = new_id()
            chunks = [
                VectorChunk(user_id=user_id, thread_id=thread_id, chunk_index=idx, content=text, embedding=vec, metadata=ChatHistoryChunkMeta(conversation_count=len(group), date_range=DateRange(start=group[0].created_at, end=group[-1].created_at), group_index=group_index, roles=sorted({turn.role.value for turn in group}), chunk_size=len(text), total_chunks=total_chunks, processed_chunks=len(groups), ingestion_run=run_id))
                for idx, ((group_index, group, text), vec) in enumerate(zip(groups, vectors))
            ]
            inserted = await self._writer.write_chunks(chunks, options.batch_size)
        except UpstreamBatchFailure as exc:
            if isinstance(exc, VectorWriteFailed):
                inserted = exc.inserted
            elapsed_ms = (time.perf_counter() - t_start) * 1000
            logger.error("[INGEST] Chat history of thread '%s' failed after %.1fms: %s", thread_id, elapsed_ms, exc)
            return IngestionResult(success=False, message="Chat history processing failed", vector_count=inserted, processed_chunks=inserted, total_chunks=total_chunks, truncated=truncated, error=str(exc), elapsed_ms=elapsed_ms)

        await self._repo.mark_conversations_vectorized([turn.id for _, group, _ in groups for turn in group])
        elapsed_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[INGEST] Thread '%s' chat history complete — %d group(s) from %d turn(s) in %.1fms.", thread_id, inserted, len(turns), elapsed_ms)
        return IngestionResult(success=True, message=f"Chat history processed successfully: {inserted} chunks", vector_count=inserted, processed_chunks=len(groups), total_chunks=total_chunks, truncated=truncated, elapsed_ms=elapsed_ms)

    # ══════════════════════════════════════════════════════════════════
    #  FALLBACK SELF-VECTORIZATION
    # ══════════════════════════════════════════════════════════════════

    async def vectorize_exchange(self, thread_id: str, user_id: str, question: str, answer: str, turns: list[ConversationTurn]) -> VectorChunk:
        """
        Embed one question/answer exchange as a single chat-history chunk.

        Used after a fallback answer so the next similar question can be
        grounded on it.  The source *turns* are marked vectorized on
        success; any failure propagates to the caller.
        """
        content = _EXCHANGE_TEMPLATE.format(question=question, answer=answer)
        created = [turn.created_at for turn in turns] or [utcnow()]
        vectors = await self._batcher.embed([content])

        metadata = ChatHistoryChunkMeta(conversation_count=2, date_range=DateRange(start=min(created), end=max(created)), roles=[Role.USER.value, Role.ASSISTANT.value], is_fallback=True, chunk_size=len(content), ingestion_run=new_id(), extra={"conversation_type": "fallback"})
        chunk = VectorChunk(user_id=user_id, thread_id=thread_id, chunk_index=0, content=content, embedding=vectors[0], metadata=metadata)
        await self._writer.write_chunks([chunk])

        await self._repo.mark_conversations_vectorized([turn.id for turn in turns])
        logger.info("[INGEST] Fallback exchange vectorized for thread '%s' (%d chars).", thread_id, len(content))
        return chunk
