"""
ThreadRAG - Answer Generator
=============================
Turns a user question into an answer, grounded on retrieved chunks when
any survive retrieval, or generated from general knowledge otherwise.

Flow (``AnswerGenerator.answer``):
    1. Validate the thread (owned, not archived) and the query text.
    2. Optional thread context → title, conversation count, last activity.
    3. Retrieve (timed as ``search_ms``).
    4a. **Grounded** – numbered, labelled source blocks, truncated to
        ``CONTEXT_WINDOW_SIZE``; answer only from context.
    4b. **Fallback** – general-knowledge prompt at ``FALLBACK_TEMPERATURE``,
        then self-vectorize the exchange so a similar question can be
        grounded next time.  Vectorization failure is logged, never fatal.
    5. Persist the user + assistant turns and touch the thread.  Persistence
       failure is logged; the answer is still returned.
    6. Report timings and an explicit token *estimate*.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable

from threadrag.config.prompt_templates import FALLBACK_PROMPT_HEADER, FALLBACK_PROMPT_TEMPLATE, GROUNDED_PROMPT_HEADER, GROUNDED_PROMPT_TEMPLATE, SOURCE_BLOCK_TEMPLATE, SOURCE_LABEL_CHAT_HISTORY, SOURCE_LABEL_DOCUMENT, SOURCE_LABEL_THREAD_ARCHIVE, SOURCE_LABEL_UNKNOWN_TITLE, SOURCE_SEPARATOR, THREAD_CONTEXT_BLOCK
from threadrag.config.settings import settings
from threadrag.src.core.errors import GenerationFailed, NotFoundError, RequestValidationError
from threadrag.src.core.ingestor import IngestionPipeline
from threadrag.src.core.models import ChatHistoryChunkMeta, ConversationTurn, Performance, QueryOptions, QueryResult, Role, ScoredChunk, SourceExcerpt, Thread, ThreadArchiveChunkMeta, ThreadContext, ThreadStatus, VectorChunk
from threadrag.src.core.retrieval import RetrievalEngine
from threadrag.src.database.repository import Repository
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.text_utils import estimate_tokens, excerpt, format_date, format_timestamp, truncate_with_ellipsis

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  GENERATION API
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class Generator(Protocol):
    """Anything that can complete a prompt."""

    async def generate(self, prompt: str, model: str, temperature: float, max_tokens: int) -> str: ...


class GeminiGenerator:
    """
    ``Generator`` backed by Gemini via LangChain.

    One ``ChatGoogleGenerativeAI`` client is kept per
    (model, temperature, max_tokens) combination.
    """

    __slots__ = ("_clients",)

    def __init__(self) -> None:
        self._clients: dict[tuple[str, float, int], object] = {}


    def _client(self, model: str, temperature: float, max_tokens: int) -> object:
        key = (model, temperature, max_tokens)
        if key not in self._clients:
            from langchain_google_genai import ChatGoogleGenerativeAI

            self._clients[key] = ChatGoogleGenerativeAI(model=model, temperature=temperature, max_output_tokens=max_tokens, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
            logger.info("LLM initialised: %s (temperature=%.1f, max_tokens=%d)", model, temperature, max_tokens)
        return self._clients[key]


    async def generate(self, prompt: str, model: str, temperature: float, max_tokens: int) -> str:
        from langchain_core.messages import HumanMessage

        response = await self._client(model, temperature, max_tokens).ainvoke([HumanMessage(content=prompt)])  # type: ignore[attr-defined]
        content = response.content
        return content if isinstance(content, str) else str(content)


# ══════════════════════════════════════════════════════════════════════
#  CONTEXT ASSEMBLY
# ══════════════════════════════════════════════════════════════════════


def source_label(chunk: VectorChunk) -> str:
    """Human-readable origin of a chunk for the ``[Source n - label]`` header."""
    meta = chunk.metadata
    if isinstance(meta, ChatHistoryChunkMeta):
        return SOURCE_LABEL_CHAT_HISTORY.format(date=format_date(meta.date_range.start), count=meta.conversation_count)
    if isinstance(meta, ThreadArchiveChunkMeta):
        return SOURCE_LABEL_THREAD_ARCHIVE.format(title=meta.thread_title)
    return SOURCE_LABEL_DOCUMENT.format(title=meta.document_title or meta.file_name or SOURCE_LABEL_UNKNOWN_TITLE)


def build_context(results: list[ScoredChunk]) -> str:
    blocks = [SOURCE_BLOCK_TEMPLATE.format(index=idx, label=source_label(r.chunk), content=r.chunk.content) for idx, r in enumerate(results, start=1)]
    return truncate_with_ellipsis(SOURCE_SEPARATOR.join(blocks), settings.CONTEXT_WINDOW_SIZE)


def _thread_context_block(context: ThreadContext | None) -> str:
    if context is None:
        return ""
    return THREAD_CONTEXT_BLOCK.format(thread_title=context.thread_title, conversation_count=context.conversation_count, last_activity=format_timestamp(context.last_activity))


def build_grounded_prompt(query: str, context: str, thread_context: ThreadContext | None = None) -> str:
    return GROUNDED_PROMPT_HEADER + _thread_context_block(thread_context) + GROUNDED_PROMPT_TEMPLATE.format(context=context, query=query)


def build_fallback_prompt(query: str, thread_context: ThreadContext | None = None) -> str:
    return FALLBACK_PROMPT_HEADER.format(query=query) + _thread_context_block(thread_context) + FALLBACK_PROMPT_TEMPLATE


# ══════════════════════════════════════════════════════════════════════
#  ANSWER GENERATOR
# ══════════════════════════════════════════════════════════════════════


class AnswerGenerator:
    """
    Orchestrates retrieve → prompt → generate → persist for one question.

    Parameters
    ----------
    repository
        Threads and conversation turns.
    retrieval
        Weighted cross-thread retrieval engine.
    generator
        Text generation backend (``GeminiGenerator`` in production).
    pipeline
        Ingestion pipeline used to self-vectorize fallback exchanges.
    """

    __slots__ = ("_repo", "_retrieval", "_generator", "_pipeline")

    def __init__(self, repository: Repository, retrieval: RetrievalEngine, generator: Generator, pipeline: IngestionPipeline) -> None:
        self._repo = repository
        self._retrieval = retrieval
        self._generator = generator
        self._pipeline = pipeline


    async def answer(self, thread_id: str, user_id: str, query: str, options: QueryOptions | None = None) -> QueryResult:
        """
        Answer *query* within *thread_id*.

        Raises
        ------
        NotFoundError
            The thread does not exist or belongs to another user.
        RequestValidationError
            Empty query, or the thread is archived (read-only).
        GenerationFailed
            The generation API call failed.
        """
        options = options or QueryOptions()
        t_start = time.perf_counter()

        query = (query or "").strip()
        if not query:
            raise RequestValidationError("Query text is required")

        thread = await self._repo.get_thread(thread_id, user_id)
        if thread is None:
            raise NotFoundError("Thread not found", f"thread '{thread_id}'")
        if thread.status is ThreadStatus.ARCHIVED:
            raise RequestValidationError("Thread is archived", f'thread "{thread.title}" must be restored before it can be queried')

        thread_context = await self._thread_context(thread) if options.include_thread_context else None

        # ── Retrieval (timed) ──────────────────────────────────────────
        t_search = time.perf_counter()
        results = await self._retrieval.retrieve(query, thread.id, user_id, options)
        search_ms = (time.perf_counter() - t_search) * 1000

        # ── Generation (timed) ─────────────────────────────────────────
        model = options.model or settings.LLM_MODEL
        fallback = not results
        if fallback:
            logger.info("[RAG] No relevant context for thread '%s' — generating fallback answer.", thread.id)
            prompt = build_fallback_prompt(query, thread_context)
            temperature, max_tokens = settings.FALLBACK_TEMPERATURE, settings.FALLBACK_MAX_TOKENS
        else:
            prompt = build_grounded_prompt(query, build_context(results), thread_context)
            temperature = settings.LLM_TEMPERATURE if options.temperature is None else options.temperature
            max_tokens = options.max_tokens or settings.LLM_MAX_TOKENS

        t_llm = time.perf_counter()
        try:
            response = await self._generator.generate(prompt, model, temperature, max_tokens)
        except Exception as exc:
            logger.error("[RAG] Generation failed (model=%s): %s", model, exc)
            raise GenerationFailed("Failed to generate a response", str(exc)) from exc
        generation_ms = (time.perf_counter() - t_llm) * 1000

        # ── Persistence ────────────────────────────────────────────────
        turns = await self._save_exchange(thread, user_id, query, response, len(results), fallback, model)
        conversation_id = turns[-1].id if turns else None

        if fallback and self._auto_vectorize(options):
            try:
                await self._pipeline.vectorize_exchange(thread.id, user_id, query, response, turns)
            except Exception as exc:
                logger.warning("[RAG] Fallback vectorization failed for thread '%s': %s", thread.id, exc)

        total_ms = (time.perf_counter() - t_start) * 1000
        performance = Performance(search_ms=search_ms, generation_ms=generation_ms, total_ms=total_ms, tokens_estimated=estimate_tokens(prompt, response))
        logger.info("[RAG] ⏱ Timing — search: %.0fms | llm: %.0fms | total: %.0fms | sources: %d | fallback: %s", search_ms, generation_ms, total_ms, len(results), fallback)

        sources = [SourceExcerpt(chunk_id=r.chunk.id, content=excerpt(r.chunk.content, settings.SOURCE_EXCERPT_CHARS), similarity=r.similarity, source_type=r.source_type, thread_id=r.thread_id, metadata=r.chunk.metadata.model_dump(mode="json")) for r in results]
        message = "Generated a general-knowledge answer; no relevant context was found" if fallback else None
        return QueryResult(success=True, response=response, sources=sources, conversation_id=conversation_id, thread_context=thread_context, performance=performance, fallback_generated=fallback, message=message)


    async def _thread_context(self, thread: Thread) -> ThreadContext:
        count = await self._repo.count_conversations(thread.id, thread.user_id)
        return ThreadContext(thread_id=thread.id, thread_title=thread.title, conversation_count=count, last_activity=thread.last_activity_at)


    async def _save_exchange(self, thread: Thread, user_id: str, query: str, response: str, source_count: int, fallback: bool, model: str) -> list[ConversationTurn]:
        """Persist both turns and touch the thread; failures are logged, not raised."""
        user_turn = ConversationTurn(thread_id=thread.id, user_id=user_id, role=Role.USER, content=query)
        assistant_turn = ConversationTurn(thread_id=thread.id, user_id=user_id, role=Role.ASSISTANT, content=response, metadata={"model": model, "source_count": source_count, "is_fallback": fallback})
        saved: list[ConversationTurn] = []
        try:
            await self._repo.add_conversation(user_turn)
            saved.append(user_turn)
            await self._repo.add_conversation(assistant_turn)
            saved.append(assistant_turn)
        except Exception as exc:
            logger.error("[RAG] Failed to save conversation for thread '%s': %s", thread.id, exc)
            saved = []

        try:
            await self._repo.touch_thread(thread.id, user_id)
        except Exception as exc:
            logger.warning("[RAG] Failed to update last activity of thread '%s': %s", thread.id, exc)
        return saved


    @staticmethod
    def _auto_vectorize(options: QueryOptions) -> bool:
        if options.auto_vectorize_fallback is None:
            return settings.AUTO_VECTORIZE_FALLBACK
        return options.auto_vectorize_fallback
