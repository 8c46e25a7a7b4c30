"""
ThreadRAG - ThreadArchiver
===========================
Preserves a thread's full conversation history as one searchable vector
before the thread is destroyed.

Lifecycle::

    active ──(confirmed delete)──► archive chunk written ──► hard-deleted
    active ──(archive)──────────► archived ──(restore)──► active

Safety rule: the destructive cascade runs **only** after the archive chunk
has been written.  Any failure while archiving raises ``ArchiveFailed``
and leaves every record untouched.  Archive chunks survive the cascade.
"""

from __future__ import annotations

import time

from threadrag.config.prompt_templates import ARCHIVE_HEADER_TEMPLATE, ARCHIVE_TURN_TEMPLATE, DELETE_NOT_CONFIRMED_TEMPLATE, DELETE_SUCCESS_TEMPLATE
from threadrag.src.core.embedding import EmbeddingBatcher
from threadrag.src.core.errors import ArchiveFailed, NotFoundError, RequestValidationError
from threadrag.src.core.models import ArchiveResult, ConversationTurn, DateRange, DeleteResult, Thread, ThreadArchiveChunkMeta, ThreadStatus, VectorChunk
from threadrag.src.core.writer import VectorStoreWriter
from threadrag.src.database.repository import Repository
from threadrag.src.database.vector_store import VectorStore
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.text_utils import format_timestamp

logger = get_logger(__name__)


def render_archive(thread: Thread, turns: list[ConversationTurn]) -> str:
    """Render the plain-text archive document for *thread*."""
    parts = [ARCHIVE_HEADER_TEMPLATE.format(title=thread.title, created_at=format_timestamp(thread.created_at), last_activity=format_timestamp(thread.last_activity_at), count=len(turns), status=thread.status.value)]
    parts.extend(ARCHIVE_TURN_TEMPLATE.format(index=idx, role=turn.role.value.upper(), timestamp=format_timestamp(turn.created_at), content=turn.content) for idx, turn in enumerate(turns, start=1))
    return "".join(parts)


class ThreadArchiver:
    """
    Archive, guarded delete and restore of whole threads.

    Parameters
    ----------
    repository
        Threads, conversations and the relational cascade.
    vector_store
        Chunk store; non-archive chunks are removed on delete.
    batcher / writer
        Embed and persist the single archive chunk.
    """

    __slots__ = ("_repo", "_store", "_batcher", "_writer")

    def __init__(self, repository: Repository, vector_store: VectorStore, batcher: EmbeddingBatcher, writer: VectorStoreWriter) -> None:
        self._repo = repository
        self._store = vector_store
        self._batcher = batcher
        self._writer = writer


    async def archive_thread(self, thread_id: str, user_id: str, mark_archived: bool = True) -> ArchiveResult:
        """
        Write the thread's history as exactly one ``thread_archive`` chunk.

        Raises
        ------
        NotFoundError
            The thread does not exist or belongs to another user.
        ArchiveFailed
            Rendering, embedding or storing the archive failed.
        """
        thread = await self._repo.get_thread(thread_id, user_id)
        if thread is None:
            raise NotFoundError("Thread not found", f"thread '{thread_id}'")
        return await self._archive(thread, user_id, mark_archived)


    async def _archive(self, thread: Thread, user_id: str, mark_archived: bool) -> ArchiveResult:
        t_start = time.perf_counter()
        try:
            turns = await self._repo.list_conversations(thread.id, user_id)
            chunk: VectorChunk | None = None

            if turns:
                content = render_archive(thread, turns)
                vectors = await self._batcher.embed([content])
                metadata = ThreadArchiveChunkMeta(thread_title=thread.title, conversation_count=len(turns), date_range=DateRange(start=thread.created_at, end=thread.updated_at), original_thread_status=thread.status)
                chunk = VectorChunk(user_id=user_id, thread_id=thread.id, chunk_index=0, content=content, embedding=vectors[0], metadata=metadata)
                await self._writer.write_chunks([chunk])

            if mark_archived:
                await self._repo.set_thread_status(thread.id, user_id, ThreadStatus.ARCHIVED)

        except Exception as exc:
            logger.error("[ARCHIVE] Archiving thread '%s' failed: %s", thread.id, exc)
            raise ArchiveFailed(f'Failed to archive thread "{thread.title}"', str(exc)) from exc

        elapsed_ms = (time.perf_counter() - t_start) * 1000
        if chunk is None:
            logger.info("[ARCHIVE] Thread '%s' has no conversations — nothing archived (%.1fms).", thread.id, elapsed_ms)
            return ArchiveResult(success=True, message="No conversations to archive", archived_conversations=0)

        logger.info("[ARCHIVE] Thread '%s' archived — %d conversation(s), %d chars in %.1fms.", thread.id, len(turns), len(chunk.content), elapsed_ms)
        return ArchiveResult(success=True, message=f'Thread "{thread.title}" archived', archived_conversations=len(turns), archive_chunk_id=chunk.id)


    async def delete_thread_with_archive(self, thread_id: str, user_id: str, confirmed: bool) -> DeleteResult:
        """
        Archive the thread, then cascade-delete it.

        Raises
        ------
        NotFoundError
            The thread does not exist or belongs to another user.
        RequestValidationError
            *confirmed* is false.
        ArchiveFailed
            The archive could not be written; nothing was deleted.
        """
        thread = await self._repo.get_thread(thread_id, user_id)
        if thread is None:
            raise NotFoundError("Thread not found", f"thread '{thread_id}'")
        if not confirmed:
            raise RequestValidationError(DELETE_NOT_CONFIRMED_TEMPLATE.format(title=thread.title))

        archive = await self._archive(thread, user_id, mark_archived=False)

        # ── Cascade (only reached once the archive is durable) ─────────
        removed = self._store.delete_thread_chunks(thread.id, keep_archives=True)
        await self._repo.delete_thread_cascade(thread.id, user_id)
        logger.info("[ARCHIVE] Thread '%s' deleted — %d chunk(s) removed, %d conversation(s) archived.", thread.id, removed, archive.archived_conversations)

        return DeleteResult(success=True, message=DELETE_SUCCESS_TEMPLATE.format(title=thread.title), archived_conversations=archive.archived_conversations, thread_title=thread.title)


    async def restore_thread(self, thread_id: str, user_id: str) -> ArchiveResult:
        """Return an archived thread to ``active``; already-active threads are a no-op."""
        thread = await self._repo.get_thread(thread_id, user_id)
        if thread is None:
            raise NotFoundError("Thread not found", f"thread '{thread_id}'")
        if thread.status is ThreadStatus.ACTIVE:
            return ArchiveResult(success=True, message=f'Thread "{thread.title}" is already active')

        await self._repo.set_thread_status(thread.id, user_id, ThreadStatus.ACTIVE)
        logger.info("[ARCHIVE] Thread '%s' restored.", thread.id)
        return ArchiveResult(success=True, message=f'Thread "{thread.title}" restored')
