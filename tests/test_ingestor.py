from datetime import timedelta

import pytest

from conftest import BASE_TIME
from threadrag.config.settings import settings
from threadrag.src.core.errors import NotFoundError, RequestValidationError
from threadrag.src.core.ingestor import group_conversations, render_group
from threadrag.src.core.models import ConversationTurn, DocumentStatus, IngestionOptions, Role, SourceType


# ── Document path ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_document_truncated_to_max_chunks(service, repo, store):
    """1200 chunks are cut to the 1000-chunk cap and reported as truncated."""
    thread = repo.add_thread()
    doc = repo.add_document(thread, ("x" * 99 + " ") * 1200)

    result = await service.pipeline.ingest_document(doc.id, "user-1", IngestionOptions(chunk_size=100, chunk_overlap=0))

    assert result.success
    assert result.truncated
    assert result.total_chunks == 1200
    assert result.processed_chunks == 1000
    assert result.vector_count == 1000
    assert len(store.chunks) == 1000

    stored = repo.documents[doc.id]
    assert stored.status is DocumentStatus.COMPLETED
    assert stored.chunk_count == 1000
    assert repo.status_history[doc.id] == [DocumentStatus.PROCESSING, DocumentStatus.COMPLETED]


@pytest.mark.asyncio
async def test_document_chunk_metadata(service, repo, store):
    thread = repo.add_thread()
    doc = repo.add_document(thread, "Short guide content. " * 10, title="Onboarding", file_name="onboarding.pdf")

    await service.pipeline.ingest_document(doc.id, "user-1")

    assert len(store.chunks) == 1
    chunk = store.chunks[0]
    assert chunk.source_type is SourceType.DOCUMENT
    assert chunk.document_id == doc.id
    assert chunk.thread_id == thread.id
    assert chunk.chunk_index == 0
    assert chunk.metadata.document_title == "Onboarding"
    assert chunk.metadata.file_name == "onboarding.pdf"
    assert chunk.metadata.ingestion_run


@pytest.mark.asyncio
async def test_missing_or_foreign_document_is_not_found(service, repo):
    thread = repo.add_thread(user_id="someone-else")
    doc = repo.add_document(thread, "content " * 20)

    with pytest.raises(NotFoundError):
        await service.pipeline.ingest_document("no-such-doc", "user-1")
    with pytest.raises(NotFoundError):
        await service.pipeline.ingest_document(doc.id, "user-1")


@pytest.mark.asyncio
async def test_oversized_content_rejected_without_status_change(service, repo, store):
    thread = repo.add_thread()
    doc = repo.add_document(thread, "a" * (settings.MAX_CONTENT_LENGTH + 1))

    with pytest.raises(RequestValidationError):
        await service.pipeline.ingest_document(doc.id, "user-1")

    assert repo.documents[doc.id].status is DocumentStatus.PENDING
    assert doc.id not in repo.status_history
    assert store.chunks == []


@pytest.mark.asyncio
async def test_missing_content_rejected(service, repo):
    thread = repo.add_thread()
    doc = repo.add_document(thread, None)

    with pytest.raises(RequestValidationError):
        await service.pipeline.ingest_document(doc.id, "user-1")
    assert repo.documents[doc.id].status is DocumentStatus.PENDING


@pytest.mark.asyncio
async def test_embedding_failure_marks_document_failed(service, repo, store, embedder):
    thread = repo.add_thread()
    doc = repo.add_document(thread, "some text " * 50)
    embedder.fail_on_call = {1}

    result = await service.pipeline.ingest_document(doc.id, "user-1")

    assert not result.success
    assert "batch 1" in result.error
    stored = repo.documents[doc.id]
    assert stored.status is DocumentStatus.FAILED
    assert stored.error == result.error
    assert store.chunks == []


@pytest.mark.asyncio
async def test_write_failure_records_partial_progress(service, repo, store):
    thread = repo.add_thread()
    doc = repo.add_document(thread, ("y" * 99 + " ") * 150)
    store.fail_on_insert = {2}

    result = await service.pipeline.ingest_document(doc.id, "user-1", IngestionOptions(chunk_size=100, chunk_overlap=0, batch_size=100))

    assert not result.success
    assert result.processed_chunks == 100
    assert result.total_chunks == 150
    assert repo.documents[doc.id].processed_chunks == 100
    assert repo.documents[doc.id].status is DocumentStatus.FAILED


@pytest.mark.asyncio
async def test_replace_existing_converges(service, repo, store):
    """Re-running with replace_existing does not duplicate chunks."""
    thread = repo.add_thread()
    doc = repo.add_document(thread, ("z" * 99 + " ") * 5)
    options = IngestionOptions(chunk_size=100, chunk_overlap=0, replace_existing=True)

    await service.pipeline.ingest_document(doc.id, "user-1", options)
    await service.pipeline.ingest_document(doc.id, "user-1", options)

    assert len(store.chunks) == 5
    assert len({c.metadata.ingestion_run for c in store.chunks}) == 1


# ── Chat-history path ─────────────────────────────────────────────────

def _turn(minutes, role="user", content="hello"):
    return ConversationTurn(thread_id="t", user_id="u", role=Role(role), content=content, created_at=BASE_TIME + timedelta(minutes=minutes))


def test_grouping_splits_on_idle_gap():
    """10:00, 10:01, 11:30 → two groups."""
    groups = group_conversations([_turn(0), _turn(1), _turn(90)], gap_minutes=60)
    assert [len(g) for g in groups] == [2, 1]


def test_grouping_gap_is_measured_from_previous_turn():
    groups = group_conversations([_turn(0), _turn(60), _turn(120)], gap_minutes=60)
    assert [len(g) for g in groups] == [3]


def test_render_group():
    text = render_group([_turn(0, "user", "Hi"), _turn(1, "assistant", "Hello!")])
    assert text == "user: Hi\n\nassistant: Hello!"


@pytest.mark.asyncio
async def test_chat_history_short_groups_dropped(service, repo, store):
    thread = repo.add_thread()
    first = repo.add_turn(thread, "user", "How do I configure the staging deployment pipeline?", minutes=0)
    second = repo.add_turn(thread, "assistant", "Set the target environment in deploy.yaml and run the release job.", minutes=1)
    late = repo.add_turn(thread, "user", "ok", minutes=90)

    result = await service.ingest_chat_history(thread.id, "user-1")

    assert result.success
    assert result.vector_count == 1
    chunk = store.chunks[0]
    assert chunk.source_type is SourceType.CHAT_HISTORY
    assert chunk.document_id is None
    assert chunk.metadata.conversation_count == 2
    assert chunk.metadata.date_range.start == first.created_at
    assert chunk.metadata.date_range.end == second.created_at
    assert chunk.content.startswith("user: How do I configure")

    vectorized = {t.id: t.vectorized for t in repo.conversations}
    assert vectorized[first.id] and vectorized[second.id]
    assert not vectorized[late.id]


@pytest.mark.asyncio
async def test_chat_history_without_turns_is_a_noop(service, repo, store):
    thread = repo.add_thread()

    result = await service.ingest_chat_history(thread.id, "user-1")

    assert result.success
    assert result.vector_count == 0
    assert store.chunks == []


@pytest.mark.asyncio
async def test_chat_history_unknown_thread(service):
    result = await service.ingest_chat_history("missing", "user-1")
    assert not result.success
    assert result.message == "Thread not found"


@pytest.mark.asyncio
async def test_chat_history_replace_existing(service, repo, store):
    thread = repo.add_thread()
    repo.add_turn(thread, "user", "Summarise the quarterly infrastructure cost report please.", minutes=0)
    repo.add_turn(thread, "assistant", "Compute spend rose 12% while storage stayed flat.", minutes=2)

    await service.ingest_chat_history(thread.id, "user-1")
    await service.ingest_chat_history(thread.id, "user-1", IngestionOptions(replace_existing=True))

    assert len(store.of_type(SourceType.CHAT_HISTORY)) == 1


def _two_long_groups(repo, thread):
    repo.add_turn(thread, "user", "Which regions does the nightly backup job replicate to?", minutes=0)
    repo.add_turn(thread, "assistant", "It replicates to eu-west and us-east, then verifies checksums.", minutes=1)
    repo.add_turn(thread, "user", "ok", minutes=90)
    repo.add_turn(thread, "user", "How long are the replicated backups retained before pruning?", minutes=200)


@pytest.mark.asyncio
async def test_group_index_counts_dropped_groups(service, repo, store):
    """A dropped short group still occupies its position in group_index."""
    thread = repo.add_thread()
    _two_long_groups(repo, thread)

    result = await service.ingest_chat_history(thread.id, "user-1")

    assert result.vector_count == 2
    chunks = sorted(store.chunks, key=lambda c: c.chunk_index)
    assert [c.chunk_index for c in chunks] == [0, 1]
    assert [c.metadata.group_index for c in chunks] == [0, 2]


@pytest.mark.asyncio
async def test_chat_history_embedding_failure(service, repo, store, embedder):
    thread = repo.add_thread()
    _two_long_groups(repo, thread)
    embedder.fail_on_call = {1}

    result = await service.ingest_chat_history(thread.id, "user-1")

    assert not result.success
    assert result.message == "Chat history processing failed"
    assert "batch 1" in result.error
    assert result.processed_chunks == 0
    assert result.total_chunks == 2
    assert store.chunks == []
    assert not any(t.vectorized for t in repo.conversations)


@pytest.mark.asyncio
async def test_chat_history_write_failure_reports_progress(service, repo, store):
    thread = repo.add_thread()
    _two_long_groups(repo, thread)
    store.fail_on_insert = {2}

    result = await service.ingest_chat_history(thread.id, "user-1", IngestionOptions(batch_size=1))

    assert not result.success
    assert "batch 2" in result.error
    assert result.processed_chunks == 1
    assert result.vector_count == 1
    assert len(store.chunks) == 1
    assert not any(t.vectorized for t in repo.conversations)
