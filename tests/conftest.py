"""
Pytest configuration for the ThreadRAG test suite.

Configures:
- test environment variables (set before the settings singleton loads)
- pytest-asyncio (auto-registered plugin) for async test support
- in-memory fakes for the repository, vector store, embedder and generator
"""
import hashlib
import math
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("GOOGLE_API_KEY", "test-google-key")
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017")
os.environ.setdefault("ENV", "prod")

import pytest

from threadrag.src.core.models import ConversationTurn, Document, Role, SourceType, Thread, ThreadStatus, UserPreferences, VectorChunk
from threadrag.src.core.rag_engine import RAGService
from threadrag.src.core.retrieval import cosine_similarity
from threadrag.src.utils.pacing import NoDelayPacer

DIM = 4
BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def unit_vector(similarity):
    """4-d unit vector whose cosine with [1, 0, 0, 0] equals *similarity*."""
    return [similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity)), 0.0, 0.0]


QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0]


# ── Fakes ─────────────────────────────────────────────────────────────

class FakeEmbedder:
    """Deterministic embedder: explicit vectors for known texts, hashed otherwise."""

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.document_calls = []
        self.query_calls = []
        self.fail_on_call = set()
        self.short_on_call = set()
        self.fail_queries = False

    def _vector(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.md5(text.encode("utf-8")).digest()
        return [(b - 127.5) / 127.5 for b in digest[:DIM]]

    def embed_documents(self, texts):
        self.document_calls.append(list(texts))
        call = len(self.document_calls)
        if call in self.fail_on_call:
            raise RuntimeError(f"provider unavailable (call {call})")
        vectors = [self._vector(t) for t in texts]
        if call in self.short_on_call:
            return vectors[:-1]
        return vectors

    def embed_query(self, text):
        self.query_calls.append(text)
        if self.fail_queries:
            raise RuntimeError("query embedding unavailable")
        return self._vector(text)


class FakeGenerator:
    def __init__(self, response="A generated answer."):
        self.response = response
        self.calls = []
        self.fail = False

    async def generate(self, prompt, model, temperature, max_tokens):
        self.calls.append({"prompt": prompt, "model": model, "temperature": temperature, "max_tokens": max_tokens})
        if self.fail:
            raise RuntimeError("generation backend down")
        return self.response


class InMemoryVectorStore:
    def __init__(self, journal=None):
        self.chunks = []
        self.insert_calls = 0
        self.fail_on_insert = set()
        self.failing_threads = set()
        self.journal = journal if journal is not None else []

    def insert(self, chunks):
        self.insert_calls += 1
        if self.insert_calls in self.fail_on_insert:
            raise OSError(f"disk full (insert {self.insert_calls})")
        self.chunks.extend(chunks)
        self.journal.append(("insert", [c.source_type.value for c in chunks]))
        return len(chunks)

    def nearest_in_thread(self, user_id, thread_id, vector, limit, include_chat_history=True):
        if thread_id in self.failing_threads:
            raise RuntimeError(f"index unavailable for {thread_id}")
        candidates = [c for c in self.chunks if c.user_id == user_id and c.thread_id == thread_id and (include_chat_history or c.source_type is not SourceType.CHAT_HISTORY)]
        candidates.sort(key=lambda c: cosine_similarity(vector, c.embedding), reverse=True)
        return candidates[:limit]

    def delete_document_chunks(self, document_id):
        return self._remove(lambda c: c.document_id == document_id)

    def delete_thread_chunks(self, thread_id, keep_archives=True):
        self.journal.append(("delete_chunks", thread_id))
        return self._remove(lambda c: c.thread_id == thread_id and not (keep_archives and c.source_type is SourceType.THREAD_ARCHIVE))

    def delete_thread_source(self, thread_id, source_type):
        return self._remove(lambda c: c.thread_id == thread_id and c.source_type is SourceType(source_type))

    def _remove(self, predicate):
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if not predicate(c)]
        return before - len(self.chunks)

    def of_type(self, source_type):
        return [c for c in self.chunks if c.source_type is source_type]


class InMemoryRepository:
    def __init__(self, journal=None):
        self.threads = {}
        self.documents = {}
        self.conversations = []
        self.preferences = {}
        self.status_history = {}
        self.journal = journal if journal is not None else []
        self.fail_add_conversation = False
        self.fail_preferences = False

    # threads
    async def get_thread(self, thread_id, user_id):
        thread = self.threads.get(thread_id)
        return thread if thread is not None and thread.user_id == user_id else None

    async def list_recent_threads(self, user_id, limit):
        owned = [t for t in self.threads.values() if t.user_id == user_id]
        owned.sort(key=lambda t: t.last_activity_at, reverse=True)
        return owned[:limit]

    async def touch_thread(self, thread_id, user_id, at=None):
        thread = self.threads.get(thread_id)
        if thread is not None and thread.user_id == user_id:
            now = at or datetime.now(timezone.utc)
            self.threads[thread_id] = thread.model_copy(update={"last_activity_at": now, "updated_at": now})

    async def set_thread_status(self, thread_id, user_id, status):
        thread = self.threads[thread_id]
        self.threads[thread_id] = thread.model_copy(update={"status": ThreadStatus(status)})

    # documents
    async def get_document(self, document_id, user_id):
        doc = self.documents.get(document_id)
        return doc if doc is not None and doc.user_id == user_id else None

    async def update_document(self, document_id, **fields):
        doc = self.documents[document_id]
        self.documents[document_id] = doc.model_copy(update=fields)
        if "status" in fields:
            self.status_history.setdefault(document_id, []).append(fields["status"])

    # conversations
    async def list_conversations(self, thread_id, user_id):
        turns = [t for t in self.conversations if t.thread_id == thread_id and t.user_id == user_id]
        return sorted(turns, key=lambda t: t.created_at)

    async def count_conversations(self, thread_id, user_id):
        return sum(1 for t in self.conversations if t.thread_id == thread_id and t.user_id == user_id)

    async def add_conversation(self, turn):
        if self.fail_add_conversation:
            raise ConnectionError("mongo unreachable")
        self.conversations.append(turn)
        return turn.id

    async def mark_conversations_vectorized(self, turn_ids):
        ids = set(turn_ids)
        self.conversations = [t.model_copy(update={"vectorized": True}) if t.id in ids else t for t in self.conversations]

    async def get_preferences(self, user_id):
        if self.fail_preferences:
            raise ConnectionError("preferences unavailable")
        return self.preferences.get(user_id)

    async def delete_thread_cascade(self, thread_id, user_id):
        self.journal.append(("cascade", thread_id))
        self.threads.pop(thread_id, None)
        self.documents = {k: d for k, d in self.documents.items() if d.thread_id != thread_id}
        self.conversations = [t for t in self.conversations if t.thread_id != thread_id]

    # helpers
    def add_thread(self, user_id="user-1", title="Research", **fields):
        thread = Thread(user_id=user_id, title=title, **fields)
        self.threads[thread.id] = thread
        return thread

    def add_document(self, thread, content, title="Guide", **fields):
        doc = Document(thread_id=thread.id, user_id=thread.user_id, title=title, content=content, **fields)
        self.documents[doc.id] = doc
        return doc

    def add_turn(self, thread, role, content, minutes=0):
        turn = ConversationTurn(thread_id=thread.id, user_id=thread.user_id, role=Role(role), content=content, created_at=BASE_TIME + timedelta(minutes=minutes))
        self.conversations.append(turn)
        return turn

    def set_preferences(self, user_id, **fields):
        self.preferences[user_id] = UserPreferences(**fields)


class StaticIdentity:
    def __init__(self, tokens):
        self.tokens = tokens

    async def resolve_user(self, token):
        return self.tokens.get(token)


def make_chunk(thread, similarity, source_type=SourceType.DOCUMENT, content="chunk body", title="Guide", chunk_index=0):
    """Build a stored chunk whose cosine with ``QUERY_VECTOR`` is *similarity*."""
    from threadrag.src.core.models import ChatHistoryChunkMeta, DateRange, DocumentChunkMeta, ThreadArchiveChunkMeta

    if source_type is SourceType.CHAT_HISTORY:
        meta = ChatHistoryChunkMeta(conversation_count=2, date_range=DateRange(start=BASE_TIME, end=BASE_TIME))
        document_id = None
    elif source_type is SourceType.THREAD_ARCHIVE:
        meta = ThreadArchiveChunkMeta(thread_title=thread.title, conversation_count=3, date_range=DateRange(start=BASE_TIME, end=BASE_TIME))
        document_id = None
    else:
        meta = DocumentChunkMeta(document_title=title)
        document_id = "doc-" + thread.id
    return VectorChunk(document_id=document_id, user_id=thread.user_id, thread_id=thread.id, chunk_index=chunk_index, content=content, embedding=unit_vector(similarity), metadata=meta)


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def journal():
    return []


@pytest.fixture
def repo(journal):
    return InMemoryRepository(journal)


@pytest.fixture
def store(journal):
    return InMemoryVectorStore(journal)


@pytest.fixture
def embedder():
    return FakeEmbedder({"query": QUERY_VECTOR})


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def service(repo, store, embedder, generator):
    return RAGService(repo, store, embedder, generator, identity=StaticIdentity({"token-1": "user-1"}), pacer=NoDelayPacer())
