"""
ThreadRAG - Operations CLI
===========================
CLI entry point for running pipeline operations against the configured
MongoDB + LanceDB stack:

    1. Validate settings (``GOOGLE_API_KEY``, ``MONGO_URI``) — fail-fast.
    2. Build the ``RAGService`` (embedder, vector store, repository).
    3. Run the requested sub-command and print its JSON result.
    4. Print a timing summary separating startup from processing.

Global flags: --no-delay (no pacing), --verbose (DEBUG logging)

Sub-commands:
    ingest-document DOCUMENT_ID --user USER [--replace]
    ingest-chat     THREAD_ID   --user USER [--replace]
    query           THREAD_ID TEXT --user USER [--no-cross-thread] [--no-chat-history] [--thread-context]
    archive-thread  THREAD_ID   --user USER
    restore-thread  THREAD_ID   --user USER
    delete-thread   THREAD_ID   --user USER --confirm
    drop                                      (drop the LanceDB table)

Usage:
    python -m threadrag.scripts.setup_db query t-123 "What changed in v2?" --user u-1
    python -m threadrag.scripts.setup_db delete-thread t-123 --user u-1 --confirm
    python -m threadrag.scripts.setup_db drop
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path

# ── Ensure project root is importable when run directly ────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="ThreadRAG — run ingestion, query and archival operations.")
    parser.add_argument("--no-delay", action="store_true", default=False, help="Disable pacing between provider batches.")
    parser.add_argument("--verbose", action="store_true", default=False, help="Log at DEBUG level regardless of ENV / LOG_LEVEL.")
    commands = parser.add_subparsers(dest="command", required=True)

    ingest_doc = commands.add_parser("ingest-document", help="Chunk, embed and store one document.")
    ingest_doc.add_argument("document_id")
    ingest_doc.add_argument("--user", required=True)
    ingest_doc.add_argument("--replace", action="store_true", default=False, help="Delete the document's previous chunks first.")

    ingest_chat = commands.add_parser("ingest-chat", help="Vectorize a thread's conversation history.")
    ingest_chat.add_argument("thread_id")
    ingest_chat.add_argument("--user", required=True)
    ingest_chat.add_argument("--replace", action="store_true", default=False, help="Delete the thread's chat-history chunks first.")

    query = commands.add_parser("query", help="Ask a question within a thread.")
    query.add_argument("thread_id")
    query.add_argument("text")
    query.add_argument("--user", required=True)
    query.add_argument("--no-cross-thread", action="store_true", default=False)
    query.add_argument("--no-chat-history", action="store_true", default=False)
    query.add_argument("--thread-context", action="store_true", default=False)

    for name, help_text in (("archive-thread", "Archive a thread and mark it read-only."), ("restore-thread", "Restore an archived thread.")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("thread_id")
        sub.add_argument("--user", required=True)

    delete = commands.add_parser("delete-thread", help="Archive, then permanently delete a thread.")
    delete.add_argument("thread_id")
    delete.add_argument("--user", required=True)
    delete.add_argument("--confirm", action="store_true", default=False)

    commands.add_parser("drop", help="Drop the LanceDB chunk table and exit.")
    return parser.parse_args(argv)


# ── Command dispatch ───────────────────────────────────────────────────

async def _dispatch(rag: object, args: argparse.Namespace) -> object:
    from threadrag.src.core.models import IngestionOptions, QueryOptions

    if args.command == "ingest-document":
        return await rag.ingest_document(args.document_id, args.user, IngestionOptions(replace_existing=args.replace))  # type: ignore[attr-defined]
    if args.command == "ingest-chat":
        return await rag.ingest_chat_history(args.thread_id, args.user, IngestionOptions(replace_existing=args.replace))  # type: ignore[attr-defined]
    if args.command == "query":
        options = QueryOptions(cross_thread_search=False if args.no_cross_thread else None, include_chat_history=False if args.no_chat_history else None, include_thread_context=args.thread_context)
        return await rag.query(args.thread_id, args.user, args.text, options)  # type: ignore[attr-defined]
    if args.command == "archive-thread":
        return await rag.archive_thread(args.thread_id, args.user)  # type: ignore[attr-defined]
    if args.command == "restore-thread":
        return await rag.restore_thread(args.thread_id, args.user)  # type: ignore[attr-defined]
    if args.command == "delete-thread":
        return await rag.delete_thread_with_archive(args.thread_id, args.user, args.confirm)  # type: ignore[attr-defined]
    raise ValueError(f"Unknown command: {args.command}")


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from threadrag.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        return 1
    settings_ms = (time.perf_counter() - t_settings) * 1000

    # Now that settings is loaded, we can safely import the logger
    from threadrag.src.utils.logger import get_logger, set_level
    logger = get_logger(__name__)
    if args.verbose:
        set_level("DEBUG")

    logger.info("Settings loaded in %.1fms", settings_ms)
    _print_header(settings, args.command)

    # ── 1. Vector store only: drop and exit ────────────────────────────
    if args.command == "drop":
        from threadrag.src.database.vector_store import ThreadVectorStore

        logger.warning("Dropping table '%s' as requested.", settings.LANCEDB_TABLE_NAME)
        ThreadVectorStore().drop_table()
        _print_footer(time.perf_counter() - t_start, settings_ms, 0.0)
        return 0

    # ── 2. Build the service (timed) ───────────────────────────────────
    from threadrag.src.core.rag_engine import RAGService
    from threadrag.src.utils.pacing import NoDelayPacer

    t_init = time.perf_counter()
    try:
        rag = RAGService.from_settings(pacer=NoDelayPacer() if args.no_delay else None)
    except Exception:
        logger.exception("Failed to initialise the RAG service.")
        return 1
    init_ms = (time.perf_counter() - t_init) * 1000
    logger.info("RAG service initialised in %.1fms", init_ms)

    # ── 3. Run the command ─────────────────────────────────────────────
    result = asyncio.run(_dispatch(rag, args))
    print(result.model_dump_json(indent=2))  # type: ignore[attr-defined]

    _print_footer(time.perf_counter() - t_start, settings_ms, init_ms)
    return 0 if getattr(result, "success", False) else 2


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, command: str) -> None:
    api_key_val = settings.GOOGLE_API_KEY.get_secret_value()  # type: ignore[attr-defined]
    masked = f"****{api_key_val[-4:]}" if len(api_key_val) > 4 else "****"

    mongo_uri_val = settings.MONGO_URI.get_secret_value()  # type: ignore[attr-defined]
    mongo_masked = mongo_uri_val.split("@")[-1] if "@" in mongo_uri_val else mongo_uri_val

    print()
    print("=" * 60)
    print(f"  THREADRAG — {command}")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                   # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL}")       # type: ignore[attr-defined]
    print(f"  LLM          : {settings.LLM_MODEL}")             # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")          # type: ignore[attr-defined]
    print(f"  MongoDB      : {mongo_masked} (db: {settings.MONGO_DB_NAME})")  # type: ignore[attr-defined]
    print(f"  Chunk size   : {settings.CHUNK_SIZE} chars (overlap {settings.CHUNK_OVERLAP})")  # type: ignore[attr-defined]
    print(f"  API Key      : {masked}")
    print("=" * 60)
    print()


def _print_footer(elapsed: float, settings_ms: float, init_ms: float) -> None:
    startup_ms = settings_ms + init_ms
    processing_s = elapsed - (startup_ms / 1000)

    print()
    print("=" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  Service init         : {init_ms:>8.1f}ms")
    print(f"  Processing time      : {processing_s:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    sys.exit(main())
