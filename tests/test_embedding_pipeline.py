"""Embedding pipeline: chunking, tagging, determinism, degraded coverage."""
import pytest

from apps.backend.services.embedding_pipeline import (
    build_chunks,
    chunk_tokens,
    classify_content,
    generate_embeddings,
    importance_score,
    section_kind,
    store_chunks,
    retire_generations,
)
from apps.backend.services.errors import OperationCancelled, ValidationError
from apps.backend.services.retry import RetryPolicy
from apps.backend.services.vector_store import ChunkFilters, SqlVectorStore
from apps.backend.models.chunk import ContentChunk

from conftest import RESUME_SECTIONS, FakeProvider


def _no_sleep_retry(attempts: int = 2) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay=0.0, sleep=lambda _s: None)


def test_chunk_tokens_window_and_overlap():
    text = " ".join(f"w{i}" for i in range(25))
    pieces = chunk_tokens(text, max_tokens=10, overlap=3)
    assert [n for _t, n in pieces] == [10, 10, 10, 4]
    assert pieces[0][0].split()[-3:] == pieces[1][0].split()[:3]
    assert pieces[-1][0].endswith("w24")


def test_short_section_is_single_chunk():
    assert chunk_tokens("just a few words", max_tokens=500, overlap=50) == [("just a few words", 4)]
    assert chunk_tokens("   ", max_tokens=500, overlap=50) == []


@pytest.mark.timeout(10)
def test_summary_experience_skills_scenario():
    provider = FakeProvider()
    result = generate_embeddings("owner-1", RESUME_SECTIONS, provider, max_tokens=500, overlap=50, retry=_no_sleep_retry())
    assert len(result.chunks) >= 3
    assert all(c.token_count <= 500 for c in result.chunks)
    skills = [c for c in result.chunks if c.section == "Skills"]
    assert skills and all(c.content_type == "skill" for c in skills)
    assert [c.ordinal for c in result.chunks] == list(range(len(result.chunks)))
    assert all(c.embedding is not None for c in result.chunks)
    assert not result.warnings


@pytest.mark.timeout(10)
def test_pipeline_is_deterministic():
    long_sections = RESUME_SECTIONS + [
        {"label": "Projects", "kind": "projects", "text": " ".join(f"token{i}" for i in range(1200))},
    ]
    a = generate_embeddings("owner-1", long_sections, FakeProvider(), max_tokens=120, overlap=20, retry=_no_sleep_retry())
    b = generate_embeddings("owner-1", long_sections, FakeProvider(), max_tokens=120, overlap=20, retry=_no_sleep_retry())
    assert [(c.ordinal, c.section, c.text, c.sha256) for c in a.chunks] == [
        (c.ordinal, c.section, c.text, c.sha256) for c in b.chunks
    ]
    assert max(c.token_count for c in a.chunks) <= 120


def test_empty_sections_are_skipped():
    drafts = build_chunks([{"label": "Summary", "text": "  "}, {"label": "Skills", "items": ["Python"]}])
    assert [d.section for d in drafts] == ["Skills"]
    assert drafts[0].ordinal == 0


def test_non_object_section_is_rejected():
    with pytest.raises(ValidationError):
        build_chunks(["not a section"])


@pytest.mark.timeout(10)
def test_failed_embedding_drops_chunk_with_warning():
    provider = FakeProvider()
    provider.fail_embed_for = {"Globex"}
    result = generate_embeddings("owner-1", RESUME_SECTIONS, provider, retry=_no_sleep_retry(attempts=2))
    assert result.degraded
    assert result.dropped == [1]
    assert any(w.startswith("degraded_coverage") for w in result.warnings)
    assert [c.section for c in result.chunks] == ["Summary", "Skills"]
    # two attempts for the failing chunk, one for each of the others
    assert provider.embed_calls == 4


def test_should_stop_cancels_between_chunks():
    calls = {"n": 0}

    def should_stop():
        calls["n"] += 1
        return calls["n"] > 1

    with pytest.raises(OperationCancelled):
        generate_embeddings("owner-1", RESUME_SECTIONS, FakeProvider(), retry=_no_sleep_retry(), should_stop=should_stop)


def test_classification_and_importance():
    assert section_kind("Work Experience") == "experience"
    assert section_kind("Random heading") == "other"
    assert classify_content("Python, Go, Docker, Kubernetes", "other") == "skill"
    assert classify_content("Senior Engineer at Acme (2019 - 2024). Led the team.", "experience") == "achievement"
    assert classify_content("Studied computer science at Springfield University and graduated.", "education") == "organization"
    assert classify_content("Staff Engineer", "summary") == "title"
    assert classify_content("I like building calm, well tested systems for people.", "summary") == "text"
    for text, kind in (("Python Go", "skills"), ("plain words here", "other"), ("", "experience")):
        assert 0.0 <= importance_score(text, kind) <= 1.0
    assert importance_score("Python Go Kubernetes", "skills") > importance_score("python go kubernetes", "other")


@pytest.mark.timeout(10)
def test_store_and_retire_generations(db):
    store = SqlVectorStore(db)
    result = generate_embeddings("owner-1", RESUME_SECTIONS, FakeProvider(), retry=_no_sleep_retry())
    assert store_chunks(store, "owner-1", 7, 1, result) == 3
    # retry of the same phase replaces rather than duplicates
    assert store_chunks(store, "owner-1", 7, 1, result) == 3
    store_chunks(store, "owner-1", 7, 2, result)
    assert db.query(ContentChunk).filter(ContentChunk.portal_id == 7).count() == 6

    assert retire_generations(store, "owner-1", 7, keep_run_id=2) == 3
    rows = db.query(ContentChunk).filter(ContentChunk.portal_id == 7).all()
    assert {r.run_id for r in rows} == {2}
    assert all(r.model == "fake-embed-1" for r in rows)
    assert store.delete(ChunkFilters(user_id="someone-else", portal_id=7)) == 0
