"""
ThreadRAG - Batch Pacing
=========================
Pacing policies applied *between* consecutive provider batches.

The embedding API and the vector store both have request-rate limits, so
the batcher and the writer pause between batches.  The pause is a strategy
object rather than an inline sleep so tests and one-shot CLI runs can
inject ``NoDelayPacer``.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable


@runtime_checkable
class BatchPacer(Protocol):
    """Anything that can wait ``delay_ms`` milliseconds between batches."""

    async def pause(self, delay_ms: int) -> None: ...


class SleepPacer:
    """Yields to the event loop for the configured delay."""

    __slots__ = ()

    async def pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)


class NoDelayPacer:
    __slots__ = ()

    async def pause(self, delay_ms: int) -> None:
        return None
