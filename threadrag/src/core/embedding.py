"""
ThreadRAG - EmbeddingBatcher
=============================
Batch embedding against a hosted provider with a per-call size limit.

Design decisions:
    • **Dependency Injection** – the embedder is any object satisfying the
      ``Embedder`` protocol (``GoogleGenerativeAIEmbeddings`` in
      production, a deterministic fake in tests).
    • **All-or-nothing** – a failed batch aborts the whole call with
      ``EmbeddingBatchFailed``; partial vectors are never returned.
    • **Pacing** – a ``BatchPacer`` waits ``EMBED_BATCH_DELAY_MS`` between
      batches to respect provider rate limits.

Usage:
    from threadrag.src.core.embedding import EmbeddingBatcher, build_embedder
    batcher = EmbeddingBatcher(build_embedder())
    vectors = await batcher.embed(["chunk one", "chunk two"])
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable

from threadrag.config.settings import settings
from threadrag.src.core.errors import EmbeddingBatchFailed, UpstreamBatchFailure
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.pacing import BatchPacer, SleepPacer

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
Vector = list[float]


# ── Embedder Protocol ─────────────────────────────────────────────────

@runtime_checkable
class Embedder(Protocol):
    """Structural type for any LangChain-compatible embedding model."""

    def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


def build_embedder() -> Embedder:
    """Create the production Gemini embedder from settings."""
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    embedder = GoogleGenerativeAIEmbeddings(model=settings.EMBEDDING_MODEL, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())
    logger.info("[EMBED] Embedder initialised: %s", settings.EMBEDDING_MODEL)
    return embedder


class EmbeddingBatcher:
    """
    Turn an ordered list of texts into an equally ordered list of vectors.

    Parameters
    ----------
    embedder
        Provider client exposing ``embed_documents`` / ``embed_query``.
    batch_size
        Texts per provider call.  Defaults to ``settings.EMBED_BATCH_SIZE``.
    delay_ms
        Pause between batches.  Defaults to ``settings.EMBED_BATCH_DELAY_MS``.
    pacer
        Pacing policy; ``SleepPacer`` unless injected.
    """

    __slots__ = ("_embedder", "_batch_size", "_delay_ms", "_pacer")

    def __init__(self, embedder: Embedder, batch_size: int | None = None, delay_ms: int | None = None, pacer: BatchPacer | None = None) -> None:
        self._embedder = embedder
        self._batch_size = batch_size or settings.EMBED_BATCH_SIZE
        self._delay_ms = settings.EMBED_BATCH_DELAY_MS if delay_ms is None else delay_ms
        self._pacer = pacer or SleepPacer()


    async def embed(self, texts: list[str]) -> list[Vector]:
        """
        Embed *texts* in provider-sized batches.

        Raises
        ------
        EmbeddingBatchFailed
            With the 1-based index of the first failing batch.  A provider
            returning the wrong number of vectors counts as a failure.
        """
        if not texts:
            return []

        total_batches = (len(texts) + self._batch_size - 1) // self._batch_size
        logger.info("[EMBED] Embedding %d text(s) in %d batch(es) of ≤%d …", len(texts), total_batches, self._batch_size)

        vectors: list[Vector] = []
        t_start = time.perf_counter()

        for batch_index, offset in enumerate(range(0, len(texts), self._batch_size), start=1):
            batch = texts[offset : offset + self._batch_size]
            try:
                result = self._embedder.embed_documents(batch)
            except Exception as exc:
                logger.error("[EMBED] Batch %d/%d failed: %s", batch_index, total_batches, exc)
                raise EmbeddingBatchFailed(batch_index, str(exc)) from exc

            if len(result) != len(batch):
                logger.error("[EMBED] Batch %d/%d returned %d vector(s) for %d text(s).", batch_index, total_batches, len(result), len(batch))
                raise EmbeddingBatchFailed(batch_index, f"expected {len(batch)} vectors, got {len(result)}")

            vectors.extend(list(vec) for vec in result)
            logger.debug("[EMBED] Batch %d/%d done (%d vectors).", batch_index, total_batches, len(result))

            if batch_index < total_batches:
                await self._pacer.pause(self._delay_ms)

        logger.info("[EMBED] %d vector(s) generated in %.1fms.", len(vectors), (time.perf_counter() - t_start) * 1000)
        return vectors


    async def embed_query(self, text: str) -> Vector:
        """Embed a single query string."""
        try:
            return list(self._embedder.embed_query(text))
        except Exception as exc:
            logger.error("[EMBED] Failed to embed query: %s", exc)
            raise UpstreamBatchFailure("Failed to generate query embedding", str(exc)) from exc
