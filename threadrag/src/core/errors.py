"""
ThreadRAG - Error Taxonomy
===========================
Every failure the pipeline surfaces to a caller derives from
``ThreadRAGError`` and carries a human-readable ``message`` plus an
optional diagnostic ``detail`` (never a traceback or a credential).

Hierarchy::

    ThreadRAGError
    ├── NotFoundError            resource missing or owned by someone else
    ├── UnauthorizedError        credential does not match the requested user
    ├── RequestValidationError   oversized content, missing field, unconfirmed delete
    ├── UpstreamBatchFailure
    │   ├── EmbeddingBatchFailed
    │   └── VectorWriteFailed
    ├── GenerationFailed
    └── ArchiveFailed            always blocks the destructive cascade
"""

from __future__ import annotations


class ThreadRAGError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class NotFoundError(ThreadRAGError):
    pass


class UnauthorizedError(ThreadRAGError):
    pass


class RequestValidationError(ThreadRAGError):
    pass


class UpstreamBatchFailure(ThreadRAGError):
    """An embedding or store-write batch failed; partial progress is reported."""


class EmbeddingBatchFailed(UpstreamBatchFailure):
    def __init__(self, batch_index: int, detail: str | None = None) -> None:
        super().__init__(f"Failed to generate embeddings for batch {batch_index}", detail)
        self.batch_index = batch_index


class VectorWriteFailed(UpstreamBatchFailure):
    def __init__(self, batch_index: int, inserted: int, detail: str | None = None) -> None:
        super().__init__(f"Vector chunk insertion failed at batch {batch_index}", detail)
        self.batch_index = batch_index
        self.inserted = inserted


class GenerationFailed(ThreadRAGError):
    pass


class ArchiveFailed(ThreadRAGError):
    pass
