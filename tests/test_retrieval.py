"""Vector retrieval: top-K bound, ordering, scoping, grounding floor."""
import random

import pytest

from apps.backend.models.chunk import ContentChunk
from apps.backend.services.embedding_pipeline import generate_embeddings, store_chunks
from apps.backend.services.errors import ValidationError
from apps.backend.services.retrieval import query
from apps.backend.services.retry import RetryPolicy
from apps.backend.services.vector_store import ChunkFilters, SqlVectorStore, cosine

from conftest import RESUME_SECTIONS, FakeProvider, fake_vector


def _add_random_chunks(db, n: int, *, user_id: str = "owner-1", portal_id: int = 1, run_id: int = 1, seed: int = 7):
    rnd = random.Random(seed)
    rows = []
    for i in range(n):
        rows.append(ContentChunk(
            user_id=user_id,
            portal_id=portal_id,
            run_id=run_id,
            section="Other",
            ordinal=i,
            text=f"chunk {i}",
            embedding=[rnd.uniform(-1, 1) for _ in range(5)],
            importance=round(rnd.random(), 2),
            token_count=3,
            content_type=rnd.choice(["text", "skill", "title"]),
        ))
    SqlVectorStore(db).insert(rows)


def test_cosine_edge_cases():
    assert cosine([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine([0, 0], [1, 0]) == -1.0
    assert cosine([1, 2], [1, 2, 3]) == -1.0


def test_top_k_bound_and_non_increasing_scores(db):
    _add_random_chunks(db, 60)
    for seed in range(5):
        rnd = random.Random(seed)
        q = [rnd.uniform(-1, 1) for _ in range(5)]
        hits = query(SqlVectorStore(db), "owner-1", q, top_k=5, grounding_floor=0.0)
        assert len(hits) <= 5
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)


def test_scope_is_owner_and_generation(db):
    _add_random_chunks(db, 10, user_id="owner-1", run_id=1)
    _add_random_chunks(db, 10, user_id="owner-1", run_id=2, seed=8)
    _add_random_chunks(db, 10, user_id="intruder", run_id=1, seed=9)
    q = [1.0, 1.0, 1.0, 1.0, 1.0]
    hits = query(SqlVectorStore(db), "owner-1", q, ChunkFilters(user_id="owner-1", portal_id=1, run_id=2), top_k=10, grounding_floor=0.0)
    ids = [h.chunk_id for h in hits]
    rows = db.query(ContentChunk).filter(ContentChunk.id.in_(ids)).all()
    assert rows and all(r.user_id == "owner-1" and r.run_id == 2 for r in rows)

    # filters naming another owner are re-scoped to the caller
    hits = query(SqlVectorStore(db), "owner-1", q, ChunkFilters(user_id="intruder"), top_k=30, grounding_floor=0.0)
    rows = db.query(ContentChunk).filter(ContentChunk.id.in_([h.chunk_id for h in hits])).all()
    assert all(r.user_id == "owner-1" for r in rows)


def test_post_filters_apply_after_overfetch(db):
    _add_random_chunks(db, 40)
    q = [0.5, -0.2, 0.1, 0.9, 0.3]
    hits = query(
        SqlVectorStore(db),
        "owner-1",
        q,
        ChunkFilters(user_id="owner-1", min_importance=0.5, content_types=("skill",)),
        top_k=3,
        grounding_floor=0.0,
    )
    assert len(hits) <= 3
    assert all(h.importance >= 0.5 and h.content_type == "skill" for h in hits)


def test_ties_break_by_importance_then_ordinal(db):
    rows = [
        ContentChunk(user_id="u", portal_id=1, run_id=1, section="S", ordinal=o, text=f"t{o}", embedding=[1.0, 0.0], importance=imp, token_count=1)
        for o, imp in ((3, 0.2), (1, 0.9), (0, 0.2), (2, 0.9))
    ]
    SqlVectorStore(db).insert(rows)
    hits = query(SqlVectorStore(db), "u", [2.0, 0.0], top_k=4, grounding_floor=0.0)
    assert [h.ordinal for h in hits] == [1, 2, 0, 3]


def test_nothing_above_floor_returns_empty(db):
    _add_random_chunks(db, 5)
    assert query(SqlVectorStore(db), "owner-1", [0.0, 0.0, 0.0, 0.0, 0.0], top_k=5, grounding_floor=0.25) == []


def test_invalid_arguments(db):
    store = SqlVectorStore(db)
    with pytest.raises(ValidationError):
        query(store, "", [1.0], top_k=5)
    with pytest.raises(ValidationError):
        query(store, "owner-1", [1.0], top_k=0)
    with pytest.raises(ValidationError):
        query(store, "owner-1", [], top_k=5)


@pytest.mark.timeout(10)
def test_languages_question_hits_skills_chunk(db):
    provider = FakeProvider()
    result = generate_embeddings(
        "owner-1", RESUME_SECTIONS, provider, retry=RetryPolicy(max_attempts=1, sleep=lambda _s: None)
    )
    store = SqlVectorStore(db)
    store_chunks(store, "owner-1", 1, 1, result)
    hits = query(
        store,
        "owner-1",
        fake_vector("What languages does this candidate know?"),
        ChunkFilters(user_id="owner-1", portal_id=1, run_id=1),
        top_k=5,
        grounding_floor=0.25,
    )
    assert hits
    assert hits[0].section == "Skills"
    assert hits[0].score > 0.25
