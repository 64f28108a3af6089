"""Vector retrieval: top-K chunks by cosine similarity with deterministic tie-breaks."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from apps.backend.config import get_settings
from apps.backend.services.errors import ValidationError
from apps.backend.services.vector_store import ChunkFilters, StoredHit, VectorStore

logger = logging.getLogger(__name__)

OVERFETCH_FACTOR = 2


@dataclass
class ScoredChunk:
    chunk_id: int
    section: str
    ordinal: int
    text: str
    importance: float
    content_type: str
    token_count: int
    score: float

    def as_context(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "section": self.section,
            "text": self.text,
            "score": self.score,
        }


def _to_scored(hit: StoredHit) -> ScoredChunk:
    c = hit.chunk
    return ScoredChunk(
        chunk_id=int(c.id),
        section=c.section,
        ordinal=int(c.ordinal or 0),
        text=c.text,
        importance=float(c.importance or 0.0),
        content_type=c.content_type or "text",
        token_count=int(c.token_count or 0),
        score=max(0.0, min(1.0, float(hit.score))),
    )


def _sort_key(sc: ScoredChunk) -> tuple:
    return (-sc.score, -sc.importance, sc.ordinal, sc.chunk_id)


def query(
    store: VectorStore,
    user_id: str,
    query_embedding: list[float],
    filters: ChunkFilters | None = None,
    top_k: int = 5,
    *,
    grounding_floor: float | None = None,
) -> list[ScoredChunk]:
    """
    Nearest chunks for the owner. Пустой список = недостаточно оснований для ответа,
    это не ошибка: вызывающий сам решает, что ответить.
    """
    if not user_id:
        raise ValidationError("missing_user_id")
    if top_k < 1:
        raise ValidationError("top_k_must_be_positive")
    if not query_embedding:
        raise ValidationError("empty_query_embedding")
    floor = get_settings().grounding_floor if grounding_floor is None else grounding_floor
    f = filters or ChunkFilters(user_id=user_id)
    if f.user_id != user_id:
        f = ChunkFilters(
            user_id=user_id,
            portal_id=f.portal_id,
            run_id=f.run_id,
            min_importance=f.min_importance,
            content_types=f.content_types,
        )
    hits = store.query(query_embedding, f, top_k * OVERFETCH_FACTOR)
    out: list[ScoredChunk] = []
    for hit in hits:
        sc = _to_scored(hit)
        if f.min_importance is not None and sc.importance < f.min_importance:
            continue
        if f.content_types and sc.content_type not in f.content_types:
            continue
        if sc.score < floor:
            continue
        out.append(sc)
    out.sort(key=_sort_key)
    if not out:
        logger.info("retrieval_below_floor user_id=%s portal_id=%s candidates=%s", user_id, f.portal_id, len(hits))
    return out[:top_k]
