"""
ThreadRAG - MongoRepository
============================
Async record store backed by MongoDB via ``motor``.

Ownership is enforced on every thread, document and conversation
lookup: those queries filter by ``user_id`` so one user can never read
or mutate another's records.  The follow-up writes keyed by record id
(``update_document``, ``mark_conversations_vectorized``) only run on
ids returned by an owner-filtered read.

Collections::

    threads           {_id, user_id, title, status, created_at, updated_at, last_activity_at, document_count}
    documents         {_id, thread_id, user_id, title, file_*, content, status, chunk_count, ...}
    conversations     {_id, thread_id, user_id, role, content, created_at, vectorized, metadata}
    user_preferences  {user_id, rag: {...}, processing: {...}}

Lambda readiness: the motor client is a **module-level singleton** that
survives warm invocations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, TypeVar, runtime_checkable

import motor.motor_asyncio
from pydantic import BaseModel

from threadrag.config.settings import settings
from threadrag.src.core.models import ConversationTurn, Document, Thread, ThreadStatus, UserPreferences
from threadrag.src.utils.logger import get_logger
from threadrag.src.utils.text_utils import utcnow

logger = get_logger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)


# ══════════════════════════════════════════════════════════════════════
#  REPOSITORY PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class Repository(Protocol):
    """Structural type for the relational record store."""

    async def get_thread(self, thread_id: str, user_id: str) -> Thread | None: ...

    async def list_recent_threads(self, user_id: str, limit: int) -> list[Thread]: ...

    async def touch_thread(self, thread_id: str, user_id: str, at: datetime | None = None) -> None: ...

    async def set_thread_status(self, thread_id: str, user_id: str, status: ThreadStatus) -> None: ...

    async def get_document(self, document_id: str, user_id: str) -> Document | None: ...

    async def update_document(self, document_id: str, **fields: Any) -> None: ...

    async def list_conversations(self, thread_id: str, user_id: str) -> list[ConversationTurn]: ...

    async def count_conversations(self, thread_id: str, user_id: str) -> int: ...

    async def add_conversation(self, turn: ConversationTurn) -> str: ...

    async def mark_conversations_vectorized(self, turn_ids: list[str]) -> None: ...

    async def get_preferences(self, user_id: str) -> UserPreferences | None: ...

    async def delete_thread_cascade(self, thread_id: str, user_id: str) -> None: ...


# ══════════════════════════════════════════════════════════════════════
#  MONGODB SINGLETON CLIENT
# ══════════════════════════════════════════════════════════════════════

_mongo_client: motor.motor_asyncio.AsyncIOMotorClient | None = None


def _get_mongo_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client."""
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_URI.get_secret_value(), tz_aware=True)
        logger.info("MongoDB async client created (singleton).")
    return _mongo_client


def _from_doc(model: type[_ModelT], doc: dict[str, Any]) -> _ModelT:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model.model_validate(data)


def _to_doc(record: BaseModel) -> dict[str, Any]:
    data = record.model_dump(mode="python")
    data["_id"] = data.pop("id")
    return data


class MongoRepository:
    """
    ``Repository`` implementation over four MongoDB collections.

    Parameters
    ----------
    database
        Override the database (e.g. a test database).  Defaults to
        ``settings.MONGO_DB_NAME`` on the singleton client.
    """

    __slots__ = ("_threads", "_documents", "_conversations", "_preferences")

    def __init__(self, database: motor.motor_asyncio.AsyncIOMotorDatabase | None = None) -> None:
        db = database if database is not None else _get_mongo_client()[settings.MONGO_DB_NAME]
        self._threads = db["threads"]
        self._documents = db["documents"]
        self._conversations = db["conversations"]
        self._preferences = db["user_preferences"]

    # ── Threads ────────────────────────────────────────────────────────

    async def get_thread(self, thread_id: str, user_id: str) -> Thread | None:
        doc = await self._threads.find_one({"_id": thread_id, "user_id": user_id})
        return _from_doc(Thread, doc) if doc else None


    async def list_recent_threads(self, user_id: str, limit: int) -> list[Thread]:
        """
        Return the owner's threads, most recently active first.

        Archived threads are included: they are read-only, not unsearchable.
        """
        cursor = self._threads.find({"user_id": user_id}).sort("last_activity_at", -1).limit(limit)
        return [_from_doc(Thread, doc) for doc in await cursor.to_list(length=limit)]


    async def touch_thread(self, thread_id: str, user_id: str, at: datetime | None = None) -> None:
        now = at or utcnow()
        await self._threads.update_one({"_id": thread_id, "user_id": user_id}, {"$set": {"last_activity_at": now, "updated_at": now}})


    async def set_thread_status(self, thread_id: str, user_id: str, status: ThreadStatus) -> None:
        await self._threads.update_one({"_id": thread_id, "user_id": user_id}, {"$set": {"status": ThreadStatus(status).value, "updated_at": utcnow()}})
        logger.info("[THREAD] Thread '%s' status → %s", thread_id, ThreadStatus(status).value)

    # ── Documents ──────────────────────────────────────────────────────

    async def get_document(self, document_id: str, user_id: str) -> Document | None:
        doc = await self._documents.find_one({"_id": document_id, "user_id": user_id})
        return _from_doc(Document, doc) if doc else None


    async def update_document(self, document_id: str, **fields: Any) -> None:
        """Partial update; enum values are stored by value."""
        values = {key: getattr(value, "value", value) for key, value in fields.items()}
        values["updated_at"] = utcnow()
        await self._documents.update_one({"_id": document_id}, {"$set": values})

    # ── Conversations ──────────────────────────────────────────────────

    async def list_conversations(self, thread_id: str, user_id: str) -> list[ConversationTurn]:
        """All turns of a thread in chronological order."""
        cursor = self._conversations.find({"thread_id": thread_id, "user_id": user_id}).sort("created_at", 1)
        return [_from_doc(ConversationTurn, doc) async for doc in cursor]


    async def count_conversations(self, thread_id: str, user_id: str) -> int:
        return await self._conversations.count_documents({"thread_id": thread_id, "user_id": user_id})


    async def add_conversation(self, turn: ConversationTurn) -> str:
        await self._conversations.insert_one(_to_doc(turn))
        return turn.id


    async def mark_conversations_vectorized(self, turn_ids: list[str]) -> None:
        if not turn_ids:
            return
        await self._conversations.update_many({"_id": {"$in": turn_ids}}, {"$set": {"vectorized": True}})

    # ── Preferences ────────────────────────────────────────────────────

    async def get_preferences(self, user_id: str) -> UserPreferences | None:
        """Flatten the stored ``rag`` / ``processing`` sections into one model."""
        doc = await self._preferences.find_one({"user_id": user_id})
        if doc is None:
            return None
        rag: dict[str, Any] = doc.get("rag") or {}
        processing: dict[str, Any] = doc.get("processing") or {}
        return UserPreferences(default_model=rag.get("default_model"), temperature=rag.get("temperature"), max_tokens=rag.get("max_tokens"), include_chat_history=rag.get("include_chat_history"), cross_thread_search=rag.get("cross_thread_search"), chunk_size=processing.get("chunk_size"), chunk_overlap=processing.get("chunk_overlap"), max_chunks_per_document=processing.get("max_chunks_per_document"))

    # ── Cascade ────────────────────────────────────────────────────────

    async def delete_thread_cascade(self, thread_id: str, user_id: str) -> None:
        """Delete a thread with its documents and conversations."""
        docs = await self._documents.delete_many({"thread_id": thread_id, "user_id": user_id})
        turns = await self._conversations.delete_many({"thread_id": thread_id, "user_id": user_id})
        await self._threads.delete_one({"_id": thread_id, "user_id": user_id})
        logger.info("[THREAD] Cascade delete of '%s': %d document(s), %d conversation(s).", thread_id, docs.deleted_count, turns.deleted_count)
