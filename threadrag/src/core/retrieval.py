"""
ThreadRAG - RetrievalEngine
============================
Cross-thread nearest-neighbour retrieval with multi-factor weighting.

Algorithm
---------
1. Embed the query once.
2. Choose candidate threads: the current thread first, then (with
   cross-thread search) the owner's most recently active threads up to
   ``max_threads_search``.
3. Per thread, over-fetch ``top_k × RETRIEVAL_CANDIDATE_MULTIPLIER``
   nearest chunks, score them by exact cosine similarity, drop those below
   the thread's threshold (0.7 current / 0.8 other), rank by
   ``similarity × source_weight`` and keep ``top_k``.
4. Apply the thread weight, ``final = similarity × source × thread``,
   stable-sort descending and cut to ``max_results``.

A store error for one thread is logged and that thread is skipped; it
never fails the whole retrieval.
"""

from __future__ import annotations

import math
import time
from collections.abc import Sequence

from threadrag.config.settings import settings
from threadrag.src.core.embedding import EmbeddingBatcher
from threadrag.src.core.errors import NotFoundError
from threadrag.src.core.models import RetrievalOptions, ScoredChunk, SourceType, Thread, VectorChunk
from threadrag.src.database.repository import Repository
from threadrag.src.database.vector_store import VectorStore
from threadrag.src.utils.logger import get_logger

logger = get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between *a* and *b*.

    Returns ``0.0`` when the lengths differ or either vector has zero norm.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def source_weight(source_type: SourceType) -> float:
    """Relative trust of each source kind."""
    if source_type is SourceType.CHAT_HISTORY:
        return settings.CHAT_HISTORY_WEIGHT
    if source_type is SourceType.THREAD_ARCHIVE:
        return settings.THREAD_ARCHIVE_WEIGHT
    return settings.DOCUMENT_WEIGHT


def _pick(value, default):
    return default if value is None else value


class RetrievalEngine:
    """
    Weighted retrieval over the owner's threads.

    Parameters
    ----------
    repository
        Source of thread records (ownership check and recency order).
    vector_store
        Nearest-neighbour fetch per (user, thread).
    batcher
        Used once per call to embed the query.
    """

    __slots__ = ("_repo", "_store", "_batcher")

    def __init__(self, repository: Repository, vector_store: VectorStore, batcher: EmbeddingBatcher) -> None:
        self._repo = repository
        self._store = vector_store
        self._batcher = batcher


    async def retrieve(self, query: str, current_thread_id: str, user_id: str, options: RetrievalOptions | None = None) -> list[ScoredChunk]:
        """
        Return the best-scoring chunks for *query*, highest ``final_score`` first.

        Raises
        ------
        NotFoundError
            The current thread does not exist or belongs to another user.
        """
        options = options or RetrievalOptions()
        current_thread = await self._repo.get_thread(current_thread_id, user_id)
        if current_thread is None:
            raise NotFoundError("Thread not found", f"thread '{current_thread_id}'")

        max_results = _pick(options.max_results, settings.MAX_RESULTS)
        top_k = _pick(options.top_k_per_thread, settings.TOP_K_PER_THREAD)
        max_threads = _pick(options.max_threads_search, settings.MAX_THREADS_SEARCH)
        cross_thread = _pick(options.cross_thread_search, True)
        priority = _pick(options.current_thread_priority, True)
        include_chat = _pick(options.include_chat_history, True)

        t_start = time.perf_counter()
        query_vector = await self._batcher.embed_query(query)
        threads = await self._candidate_threads(current_thread, user_id, cross_thread, max_threads)
        logger.info("[RETRIEVE] Searching %d thread(s) (cross_thread=%s, top_k=%d).", len(threads), cross_thread, top_k)

        results: list[ScoredChunk] = []
        for thread in threads:
            is_current = thread.id == current_thread.id
            try:
                candidates = self._store.nearest_in_thread(user_id, thread.id, query_vector, top_k * settings.RETRIEVAL_CANDIDATE_MULTIPLIER, include_chat)
            except Exception as exc:
                logger.warning("[RETRIEVE] Search failed for thread '%s' — skipping: %s", thread.id, exc)
                continue

            threshold = settings.SIMILARITY_THRESHOLD if is_current else settings.CROSS_THREAD_SIMILARITY_THRESHOLD
            thread_weight = (settings.CURRENT_THREAD_WEIGHT if priority else settings.CROSS_THREAD_WEIGHT) if is_current else settings.CROSS_THREAD_WEIGHT
            kept = self._score_thread(candidates, thread, query_vector, threshold, thread_weight, top_k)
            logger.debug("[RETRIEVE] Thread '%s': %d candidate(s) → %d kept (threshold=%.2f).", thread.id, len(candidates), len(kept), threshold)
            results.extend(kept)

        results.sort(key=lambda r: r.final_score, reverse=True)
        results = results[:max_results]

        logger.info("[RETRIEVE] %d result(s) in %.1fms.", len(results), (time.perf_counter() - t_start) * 1000)
        return results


    async def _candidate_threads(self, current_thread: Thread, user_id: str, cross_thread: bool, max_threads: int) -> list[Thread]:
        if not cross_thread:
            return [current_thread]

        recent = await self._repo.list_recent_threads(user_id, max_threads)
        others = [t for t in recent if t.id != current_thread.id]
        return [current_thread, *others][: max(max_threads, 1)]


    @staticmethod
    def _score_thread(candidates: list[VectorChunk], thread: Thread, query_vector: list[float], threshold: float, thread_weight: float, top_k: int) -> list[ScoredChunk]:
        scored: list[ScoredChunk] = []
        for chunk in candidates:
            similarity = cosine_similarity(query_vector, chunk.embedding)
            if similarity < threshold:
                continue
            weight = source_weight(chunk.source_type)
            scored.append(ScoredChunk(chunk=chunk, similarity=similarity, source_weight=weight, thread_weight=thread_weight, final_score=similarity * weight * thread_weight, thread_id=thread.id, thread_title=thread.title))

        scored.sort(key=lambda r: r.weighted_similarity, reverse=True)
        return scored[:top_k]
