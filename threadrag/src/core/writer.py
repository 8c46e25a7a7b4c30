"""
ThreadRAG - VectorStoreWriter
==============================
Persists vector chunks in size-limited batches.

Inserts are *not* transactional across batches: when batch *k* fails, the
rows of batches ``1..k-1`` stay written and the raised
``VectorWriteFailed`` reports how many made it.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from threadrag.config.settings import settings
from threadrag.src.core.errors import VectorWriteFailed
from threadrag.src.core.models import VectorChunk
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.pacing import BatchPacer, SleepPacer

if TYPE_CHECKING:
    from threadrag.src.database.vector_store import VectorStore

logger = get_logger(__name__)


class VectorStoreWriter:
    """Batch inserter in front of a ``VectorStore``."""

    __slots__ = ("_store", "_batch_size", "_delay_ms", "_pacer")

    def __init__(self, store: VectorStore, batch_size: int | None = None, delay_ms: int | None = None, pacer: BatchPacer | None = None) -> None:
        self._store = store
        self._batch_size = batch_size or settings.INSERT_BATCH_SIZE
        self._delay_ms = settings.INSERT_BATCH_DELAY_MS if delay_ms is None else delay_ms
        self._pacer = pacer or SleepPacer()


    async def write_chunks(self, chunks: list[VectorChunk], batch_size: int | None = None) -> int:
        """
        Insert *chunks* and return how many were written.

        Raises
        ------
        VectorWriteFailed
            With the 1-based failing batch index and the number of rows
            inserted by earlier batches.
        """
        if not chunks:
            return 0

        size = batch_size or self._batch_size
        total_batches = (len(chunks) + size - 1) // size
        inserted = 0
        t_start = time.perf_counter()

        for batch_index, offset in enumerate(range(0, len(chunks), size), start=1):
            batch = chunks[offset : offset + size]
            try:
                self._store.insert(batch)
            except Exception as exc:
                logger.error("[WRITE] Batch %d/%d failed after %d row(s): %s", batch_index, total_batches, inserted, exc)
                raise VectorWriteFailed(batch_index, inserted, str(exc)) from exc

            inserted += len(batch)
            logger.debug("[WRITE] Batch %d/%d stored (%d/%d).", batch_index, total_batches, inserted, len(chunks))

            if batch_index < total_batches:
                await self._pacer.pause(self._delay_ms)

        logger.info("[WRITE] %d chunk(s) stored in %.1fms.", inserted, (time.perf_counter() - t_start) * 1000)
        return inserted
