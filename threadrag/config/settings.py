"""
ThreadRAG - Centralized Configuration
======================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and has **no default value**.
  If the key is missing at startup, Pydantic will raise a ``ValidationError``
  with a clear error message.  The raw value is never exposed in repr,
  logs, or tracebacks.
- ``MONGO_URI`` is also ``SecretStr`` — connection strings contain
  credentials and must never leak into logs.

Pipeline limits
---------------
Batch sizes and delays mirror the embedding provider's request limits and
keep the stores from being flooded.  Every value can be overridden per
environment; most can also be overridden per request.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required** — the app will refuse
    to start until they are provided.

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr
        API key for Google AI Studio (Gemini).  **Required.**
    MONGO_URI : SecretStr
        MongoDB connection string holding threads, documents and
        conversations.  **Required.**
    CHUNK_SIZE / CHUNK_OVERLAP : int
        Default chunk window and repeated trailing context, in characters.
    MAX_CHUNKS_PER_DOCUMENT / MAX_CHUNKS_CHAT_HISTORY : int
        Hard caps applied after chunking; extra chunks are dropped.
    EMBED_BATCH_SIZE / EMBED_BATCH_DELAY_MS : int
        Texts per embedding call and pause between calls.
    INSERT_BATCH_SIZE / INSERT_BATCH_DELAY_MS : int
        Rows per vector-store insert and pause between inserts.
    SIMILARITY_THRESHOLD / CROSS_THREAD_SIMILARITY_THRESHOLD : float
        Minimum cosine similarity for the current thread / other threads.
    LOG_LEVEL : str | None
        Overrides the level implied by ``ENV`` for every ``threadrag`` logger.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None

    # ── API Keys (REQUIRED, no default) ────────────────────────────────
    GOOGLE_API_KEY: SecretStr

    # ── MongoDB (REQUIRED, no default) ─────────────────────────────────
    MONGO_URI: SecretStr
    MONGO_DB_NAME: str = "threadrag"

    # ── Model Configuration ────────────────────────────────────────────
    EMBEDDING_MODEL: str = "models/gemini-embedding-001"
    EMBEDDING_DIMENSIONS: int = 3072
    LLM_MODEL: str = "gemini-2.0-flash"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2000
    FALLBACK_TEMPERATURE: float = 0.8
    FALLBACK_MAX_TOKENS: int = 1500
    AUTO_VECTORIZE_FALLBACK: bool = True

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "vector_chunks"

    # ── Chunking ───────────────────────────────────────────────────────
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200
    MAX_CONTENT_LENGTH: int = 1_000_000
    MAX_CHUNKS_PER_DOCUMENT: int = 1000
    MAX_CHUNKS_CHAT_HISTORY: int = 200

    # ── Chat-history grouping ──────────────────────────────────────────
    CHAT_GROUP_GAP_MINUTES: int = 60
    MIN_CHAT_CHUNK_CHARS: int = 50

    # ── Batching & pacing ──────────────────────────────────────────────
    EMBED_BATCH_SIZE: int = 50
    EMBED_BATCH_DELAY_MS: int = 1000
    INSERT_BATCH_SIZE: int = 100
    INSERT_BATCH_DELAY_MS: int = 100

    # ── Retrieval ──────────────────────────────────────────────────────
    MAX_RESULTS: int = 8
    TOP_K_PER_THREAD: int = 3
    MAX_THREADS_SEARCH: int = 5
    RETRIEVAL_CANDIDATE_MULTIPLIER: int = 2
    SIMILARITY_THRESHOLD: float = 0.7
    CROSS_THREAD_SIMILARITY_THRESHOLD: float = 0.8
    DOCUMENT_WEIGHT: float = 1.0
    CHAT_HISTORY_WEIGHT: float = 0.8
    THREAD_ARCHIVE_WEIGHT: float = 0.9
    CURRENT_THREAD_WEIGHT: float = 1.0
    CROSS_THREAD_WEIGHT: float = 0.9

    # ── Answer assembly ────────────────────────────────────────────────
    CONTEXT_WINDOW_SIZE: int = 4000
    SOURCE_EXCERPT_CHARS: int = 200

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("CHUNK_SIZE")
    @classmethod
    def _chunk_size_positive(cls, v: int) -> int:
        if v < 50:
            raise ValueError(f"CHUNK_SIZE must be ≥ 50, got {v}")
        return v


    @field_validator("EMBED_BATCH_SIZE", "INSERT_BATCH_SIZE", "MAX_CHUNKS_PER_DOCUMENT", "MAX_CHUNKS_CHAT_HISTORY", "EMBEDDING_DIMENSIONS")
    @classmethod
    def _strictly_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v


    @field_validator("SIMILARITY_THRESHOLD", "CROSS_THREAD_SIMILARITY_THRESHOLD")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"similarity thresholds must be within 0–1, got {v}")
        return v


    @model_validator(mode="after")
    def _overlap_below_size(self) -> "Settings":
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_SIZE), got {self.CHUNK_OVERLAP}")
        return self

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from threadrag.config.settings import settings
settings = Settings()
