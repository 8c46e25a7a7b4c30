import pytest

from conftest import make_chunk
from threadrag.config.settings import settings
from threadrag.src.core.errors import UnauthorizedError
from threadrag.src.core.models import IngestionOptions, QueryOptions
from threadrag.src.core.rag_engine import IdentityProvider, RAGService
from threadrag.src.utils.pacing import NoDelayPacer


# ── Identity ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_authorize_accepts_matching_token(service):
    await service.authorize("token-1", "user-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("token, user_id", [("bogus", "user-1"), ("token-1", "user-2")])
async def test_authorize_rejects_bad_credentials(service, token, user_id):
    with pytest.raises(UnauthorizedError):
        await service.authorize(token, user_id)


@pytest.mark.asyncio
async def test_authorize_without_provider(repo, store, embedder, generator):
    service = RAGService(repo, store, embedder, generator, pacer=NoDelayPacer())

    with pytest.raises(UnauthorizedError):
        await service.authorize("token-1", "user-1")


def test_static_identity_satisfies_protocol():
    from conftest import StaticIdentity

    assert isinstance(StaticIdentity({}), IdentityProvider)


# ── Preferences ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_preferences_fill_unset_query_options(service, repo, store, generator):
    """explicit option > stored preference > settings default"""
    thread = repo.add_thread()
    store.chunks.append(make_chunk(thread, 0.9))
    repo.set_preferences("user-1", default_model="gemini-pref", temperature=0.3, max_tokens=512)

    await service.query(thread.id, "user-1", "query")
    await service.query(thread.id, "user-1", "query", QueryOptions(temperature=0.5))

    first, second = generator.calls
    assert (first["model"], first["temperature"], first["max_tokens"]) == ("gemini-pref", 0.3, 512)
    assert (second["model"], second["temperature"], second["max_tokens"]) == ("gemini-pref", 0.5, 512)


@pytest.mark.asyncio
async def test_preference_disables_cross_thread_search(service, repo, store):
    current = repo.add_thread(title="Current")
    other = repo.add_thread(title="Other")
    store.chunks.append(make_chunk(other, 0.95, content="elsewhere"))
    repo.set_preferences("user-1", cross_thread_search=False)

    result = await service.query(current.id, "user-1", "query")

    assert result.fallback_generated

    repo.set_preferences("user-1", cross_thread_search=True)
    result = await service.query(current.id, "user-1", "query")

    assert not result.fallback_generated
    assert result.sources[0].thread_id == other.id


@pytest.mark.asyncio
async def test_preferences_apply_to_document_ingestion(service, repo, store):
    thread = repo.add_thread()
    doc = repo.add_document(thread, ("p" * 99 + " ") * 10)
    repo.set_preferences("user-1", chunk_size=100, chunk_overlap=0, max_chunks_per_document=4)

    result = await service.ingest_document(doc.id, "user-1")

    assert result.success
    assert result.total_chunks == 10
    assert result.vector_count == 4
    assert result.truncated


@pytest.mark.asyncio
async def test_explicit_ingestion_options_beat_preferences(service, repo, store):
    thread = repo.add_thread()
    doc = repo.add_document(thread, ("p" * 99 + " ") * 10)
    repo.set_preferences("user-1", chunk_size=100, chunk_overlap=0, max_chunks_per_document=4)

    result = await service.ingest_document(doc.id, "user-1", IngestionOptions(max_chunks=6))

    assert result.vector_count == 6


@pytest.mark.asyncio
async def test_preference_load_failure_uses_defaults(service, repo, store, generator):
    thread = repo.add_thread()
    store.chunks.append(make_chunk(thread, 0.9))
    repo.fail_preferences = True

    result = await service.query(thread.id, "user-1", "query")

    assert result.success
    assert generator.calls[0]["model"] == settings.LLM_MODEL
    assert generator.calls[0]["temperature"] == settings.LLM_TEMPERATURE


# ── Error conversion ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_not_found_becomes_failed_result(service):
    result = await service.archive_thread("missing", "user-1")

    assert not result.success
    assert result.message == "Thread not found"
    assert result.error == "Thread not found: thread 'missing'"


@pytest.mark.asyncio
async def test_document_not_found_result(service):
    result = await service.ingest_document("missing", "user-1")

    assert not result.success
    assert result.message == "Document not found"


@pytest.mark.asyncio
async def test_unexpected_error_is_generic(service, repo, monkeypatch):
    thread = repo.add_thread()

    async def boom(*args, **kwargs):
        raise KeyError("internal detail")

    monkeypatch.setattr(repo, "list_conversations", boom)

    result = await service.archive_thread(thread.id, "user-1")

    assert not result.success
    assert result.message == 'Failed to archive thread "Research"'

    monkeypatch.setattr(repo, "get_thread", boom)
    result = await service.restore_thread(thread.id, "user-1")

    assert not result.success
    assert result.message == "Thread restore failed"
    assert result.error == "Internal error"
