"""
ThreadRAG - RAG Service
========================
The exposed operation surface of the pipeline.

Architecture (OOP)
------------------
``IngestionPipeline``
    Document and chat-history ingestion, fallback self-vectorization.
``RetrievalEngine``
    Weighted cross-thread nearest-neighbour retrieval.
``AnswerGenerator``
    Grounded / fallback prompting, generation and turn persistence.
``ThreadArchiver``
    Single-chunk archive, guarded cascade delete, restore.
``RAGService``
    Wires the above over shared collaborators, applies user preferences
    (explicit options > stored preferences > settings) and converts every
    ``ThreadRAGError`` into a structured failed result.  Unexpected
    exceptions are logged with their traceback and surfaced only as a
    generic message.

AWS Lambda Readiness
--------------------
- MongoDB client: **module-level singleton** (via ``MongoRepository``).
- LanceDB connection: singleton (via ``ThreadVectorStore``).
- ``RAGService``: no request-scoped state — safe for concurrent use.

Usage:
    from threadrag.src.core.rag_engine import RAGService
    rag = RAGService.from_settings()
    result = await rag.query(thread_id, user_id, "What did the contract say about renewals?")
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel

from threadrag.src.core.archiver import ThreadArchiver
from threadrag.src.core.embedding import Embedder, EmbeddingBatcher, build_embedder
from threadrag.src.core.errors import ThreadRAGError, UnauthorizedError
from threadrag.src.core.generator import AnswerGenerator, GeminiGenerator, Generator
from threadrag.src.core.ingestor import IngestionPipeline
from threadrag.src.core.models import ArchiveResult, DeleteResult, IngestionOptions, IngestionResult, QueryOptions, QueryResult, UserPreferences
from threadrag.src.core.retrieval import RetrievalEngine
from threadrag.src.core.writer import VectorStoreWriter
from threadrag.src.database.repository import MongoRepository, Repository
from threadrag.src.database.vector_store import ThreadVectorStore, VectorStore
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.pacing import BatchPacer

logger = get_logger(__name__)

_OptionsT = TypeVar("_OptionsT", bound=BaseModel)
_ResultT = TypeVar("_ResultT", bound=BaseModel)


# ══════════════════════════════════════════════════════════════════════
#  IDENTITY PROVIDER PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class IdentityProvider(Protocol):
    """Resolves a bearer token to a user id (``None`` when invalid)."""

    async def resolve_user(self, token: str) -> str | None: ...


def _fill(options: _OptionsT, defaults: dict[str, object]) -> _OptionsT:
    """Fill unset (``None``) option fields from *defaults*."""
    update = {key: value for key, value in defaults.items() if value is not None and getattr(options, key) is None}
    return options.model_copy(update=update) if update else options


# ══════════════════════════════════════════════════════════════════════
#  RAG SERVICE
# ══════════════════════════════════════════════════════════════════════


class RAGService:
    """
    Facade over ingestion, retrieval, generation and archival.

    Parameters
    ----------
    repository
        Record store (``MongoRepository`` in production).
    vector_store
        Chunk store (``ThreadVectorStore`` in production).
    embedder
        ``Embedder``-compatible provider client.
    generator
        ``Generator``-compatible text generation backend.
    identity
        Optional identity provider used by ``authorize``.
    pacer
        Pacing policy shared by the batcher and writer.
    """

    __slots__ = ("_repo", "_identity", "pipeline", "retrieval", "answers", "archiver")

    def __init__(self, repository: Repository, vector_store: VectorStore, embedder: Embedder, generator: Generator, identity: IdentityProvider | None = None, pacer: BatchPacer | None = None) -> None:
        self._repo = repository
        self._identity = identity

        batcher = EmbeddingBatcher(embedder, pacer=pacer)
        writer = VectorStoreWriter(vector_store, pacer=pacer)
        self.pipeline = IngestionPipeline(repository, vector_store, batcher, writer)
        self.retrieval = RetrievalEngine(repository, vector_store, batcher)
        self.answers = AnswerGenerator(repository, self.retrieval, generator, self.pipeline)
        self.archiver = ThreadArchiver(repository, vector_store, batcher, writer)


    @classmethod
    def from_settings(cls, identity: IdentityProvider | None = None, pacer: BatchPacer | None = None) -> RAGService:
        """Build the production stack: MongoDB, LanceDB and Gemini."""
        return cls(MongoRepository(), ThreadVectorStore(), build_embedder(), GeminiGenerator(), identity=identity, pacer=pacer)

    # ── Identity ───────────────────────────────────────────────────────

    async def authorize(self, token: str, user_id: str) -> None:
        """
        Ensure *token* belongs to *user_id*.

        Raises
        ------
        UnauthorizedError
            No identity provider is configured, the token is invalid, or
            it resolves to a different user.
        """
        if self._identity is None:
            raise UnauthorizedError("No identity provider configured")
        resolved = await self._identity.resolve_user(token)
        if resolved is None or resolved != user_id:
            raise UnauthorizedError("Unauthorized", "credential does not match the requested user")

    # ── Operations ─────────────────────────────────────────────────────

    async def ingest_document(self, document_id: str, user_id: str, options: IngestionOptions | None = None) -> IngestionResult:
        prefs = await self._preferences(user_id)
        options = _fill(options or IngestionOptions(), {"chunk_size": prefs.chunk_size, "chunk_overlap": prefs.chunk_overlap, "max_chunks": prefs.max_chunks_per_document})
        return await self._run("Document ingestion", IngestionResult, self.pipeline.ingest_document(document_id, user_id, options))


    async def ingest_chat_history(self, thread_id: str, user_id: str, options: IngestionOptions | None = None) -> IngestionResult:
        return await self._run("Chat history ingestion", IngestionResult, self.pipeline.ingest_chat_history(thread_id, user_id, options))


    async def query(self, thread_id: str, user_id: str, text: str, options: QueryOptions | None = None) -> QueryResult:
        prefs = await self._preferences(user_id)
        options = _fill(options or QueryOptions(), {"model": prefs.default_model, "temperature": prefs.temperature, "max_tokens": prefs.max_tokens, "include_chat_history": prefs.include_chat_history, "cross_thread_search": prefs.cross_thread_search})
        return await self._run("Query", QueryResult, self.answers.answer(thread_id, user_id, text, options))


    async def archive_thread(self, thread_id: str, user_id: str) -> ArchiveResult:
        return await self._run("Thread archive", ArchiveResult, self.archiver.archive_thread(thread_id, user_id, mark_archived=True))


    async def delete_thread_with_archive(self, thread_id: str, user_id: str, confirmed: bool) -> DeleteResult:
        return await self._run("Thread deletion", DeleteResult, self.archiver.delete_thread_with_archive(thread_id, user_id, confirmed))


    async def restore_thread(self, thread_id: str, user_id: str) -> ArchiveResult:
        return await self._run("Thread restore", ArchiveResult, self.archiver.restore_thread(thread_id, user_id))

    # ── Helpers ────────────────────────────────────────────────────────

    async def _preferences(self, user_id: str) -> UserPreferences:
        """Load stored preferences; any failure falls back to settings defaults."""
        try:
            prefs = await self._repo.get_preferences(user_id)
        except Exception as exc:
            logger.warning("[RAG] Could not load preferences for user '%s', using defaults: %s", user_id, exc)
            return UserPreferences()
        return prefs or UserPreferences()


    @staticmethod
    async def _run(operation: str, result_type: type[_ResultT], call: Awaitable[_ResultT]) -> _ResultT:
        """Await *call*, converting pipeline errors into a failed result."""
        try:
            return await call
        except ThreadRAGError as exc:
            logger.warning("[RAG] %s rejected: %s", operation, exc)
            return result_type(success=False, message=exc.message, error=str(exc))
        except Exception:
            logger.exception("[RAG] %s failed unexpectedly.", operation)
            return result_type(success=False, message=f"{operation} failed", error="Internal error")
