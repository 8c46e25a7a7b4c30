import math
from datetime import timedelta

import pytest

from conftest import BASE_TIME, make_chunk, unit_vector
from threadrag.src.core.archiver import render_archive
from threadrag.src.core.errors import NotFoundError
from threadrag.src.core.models import RetrievalOptions, SourceType, ThreadStatus
from threadrag.src.core.retrieval import cosine_similarity, source_weight


# ── Cosine similarity ─────────────────────────────────────────────────

def test_cosine_identities():
    v = [0.3, -1.2, 4.0, 0.5]
    assert math.isclose(cosine_similarity(v, v), 1.0)
    assert math.isclose(cosine_similarity(v, [-x for x in v]), -1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0


def test_cosine_degenerate_inputs():
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_source_weights():
    assert source_weight(SourceType.DOCUMENT) == 1.0
    assert source_weight(SourceType.CHAT_HISTORY) == 0.8
    assert source_weight(SourceType.THREAD_ARCHIVE) == 0.9


# ── Retrieval engine ──────────────────────────────────────────────────

@pytest.fixture
def two_threads(repo, store):
    current = repo.add_thread(title="Current", last_activity_at=BASE_TIME)
    other = repo.add_thread(title="Other", last_activity_at=BASE_TIME - timedelta(days=1))
    store.chunks.extend([
        make_chunk(current, 0.90, content="current doc"),
        make_chunk(current, 0.95, SourceType.CHAT_HISTORY, content="current chat"),
        make_chunk(current, 0.65, content="current weak"),
        make_chunk(other, 0.85, content="other doc"),
        make_chunk(other, 0.75, content="other weak"),
    ])
    return current, other


@pytest.mark.asyncio
async def test_ranking_thresholds_and_weights(service, two_threads):
    """Thresholds drop weak hits; final score combines all three factors."""
    current, other = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1")

    assert [r.chunk.content for r in results] == ["current doc", "other doc", "current chat"]
    scores = [r.final_score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert math.isclose(results[0].final_score, 0.90)
    assert math.isclose(results[1].final_score, 0.85 * 1.0 * 0.9)
    assert math.isclose(results[2].final_score, 0.95 * 0.8 * 1.0)
    assert results[1].thread_id == other.id
    assert results[1].thread_title == "Other"
    assert results[2].source_type is SourceType.CHAT_HISTORY
    assert results[2].source_weight == 0.8


@pytest.mark.asyncio
async def test_current_thread_without_priority(service, two_threads):
    current, _ = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(current_thread_priority=False))

    top = results[0]
    assert top.chunk.content == "current doc"
    assert math.isclose(top.thread_weight, 0.9)
    assert math.isclose(top.final_score, 0.81)


@pytest.mark.asyncio
async def test_cross_thread_disabled(service, two_threads):
    current, _ = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(cross_thread_search=False))

    assert {r.thread_id for r in results} == {current.id}


@pytest.mark.asyncio
async def test_exclude_chat_history(service, two_threads):
    current, _ = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(include_chat_history=False))

    assert all(r.source_type is not SourceType.CHAT_HISTORY for r in results)


@pytest.mark.asyncio
async def test_top_k_per_thread_uses_weighted_similarity(service, two_threads):
    """0.90 × 1.0 beats 0.95 × 0.8 when only one hit per thread is kept."""
    current, _ = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(top_k_per_thread=1, cross_thread_search=False))

    assert [r.chunk.content for r in results] == ["current doc"]


@pytest.mark.asyncio
async def test_max_results_truncates(service, two_threads):
    current, _ = two_threads

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(max_results=2))

    assert len(results) == 2


@pytest.mark.asyncio
async def test_store_error_skips_only_that_thread(service, store, two_threads):
    current, other = two_threads
    store.failing_threads = {other.id}

    results = await service.retrieval.retrieve("query", current.id, "user-1")

    assert [r.chunk.content for r in results] == ["current doc", "current chat"]


@pytest.mark.asyncio
async def test_current_thread_included_even_when_not_recent(service, repo, store):
    """The current thread is searched even if it is not among the most recent."""
    current = repo.add_thread(title="Old", last_activity_at=BASE_TIME - timedelta(days=30))
    for day in range(3):
        repo.add_thread(title=f"Recent {day}", last_activity_at=BASE_TIME + timedelta(days=day))
    store.chunks.append(make_chunk(current, 0.9, content="old but relevant"))

    results = await service.retrieval.retrieve("query", current.id, "user-1", RetrievalOptions(max_threads_search=2))

    assert [r.chunk.content for r in results] == ["old but relevant"]


@pytest.mark.asyncio
async def test_other_users_chunks_are_invisible(service, repo, store):
    mine = repo.add_thread()
    theirs = repo.add_thread(user_id="user-2")
    store.chunks.append(make_chunk(theirs, 0.99, content="secret"))

    results = await service.retrieval.retrieve("query", mine.id, "user-1")

    assert results == []


@pytest.mark.asyncio
async def test_unknown_thread(service):
    with pytest.raises(NotFoundError):
        await service.retrieval.retrieve("query", "missing", "user-1")


@pytest.mark.asyncio
async def test_archived_thread_stays_searchable_from_other_threads(service, repo, store, embedder):
    """Archiving makes a thread read-only; its chunks and archive remain reachable."""
    archived = repo.add_thread(title="Contracts", last_activity_at=BASE_TIME)
    current = repo.add_thread(title="Today", last_activity_at=BASE_TIME + timedelta(days=1))
    repo.add_turn(archived, "user", "When does the supplier contract renew?", minutes=0)
    repo.add_turn(archived, "assistant", "It renews on the first of March with 30 days notice.", minutes=1)
    store.chunks.append(make_chunk(archived, 0.95, content="renewal clause"))

    turns = await repo.list_conversations(archived.id, "user-1")
    embedder.vectors[render_archive(archived, turns)] = unit_vector(0.9)
    result = await service.archive_thread(archived.id, "user-1")
    assert result.success
    assert repo.threads[archived.id].status is ThreadStatus.ARCHIVED

    results = await service.retrieval.retrieve("query", current.id, "user-1")

    found = {(r.thread_id, r.source_type) for r in results}
    assert (archived.id, SourceType.DOCUMENT) in found
    assert (archived.id, SourceType.THREAD_ARCHIVE) in found
