"""Vector store over content_chunks.

JSON vectors with in-process cosine work everywhere (SQLite in tests).
The pgvector path is optional and guarded by config + postgres dialect checks.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import delete, select, text
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.chunk import ContentChunk

logger = logging.getLogger(__name__)

# upper bound of rows scored in-process per query
SCAN_LIMIT = 5000


@dataclass
class ChunkFilters:
    user_id: str
    portal_id: int | None = None
    run_id: int | None = None
    min_importance: float | None = None
    content_types: tuple[str, ...] | None = None


@dataclass
class StoredHit:
    chunk: ContentChunk
    score: float


class VectorStore(Protocol):
    def insert(self, chunks: list[ContentChunk]) -> int: ...

    def query(self, embedding: list[float], filters: ChunkFilters, k: int) -> list[StoredHit]: ...

    def delete(self, filters: ChunkFilters, *, exclude_run_id: int | None = None) -> int: ...


def cosine(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return -1.0
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b):
        dot += x * y
        na += x * x
        nb += y * y
    if na <= 0.0 or nb <= 0.0:
        return -1.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


def hit_sort_key(hit: StoredHit) -> tuple:
    c = hit.chunk
    return (-hit.score, -(c.importance or 0.0), c.ordinal or 0, c.id or 0)


def vector_to_literal(vec: Iterable[float] | None) -> str | None:
    if not vec:
        return None
    # pgvector textual input format: [1,2,3]
    return json.dumps([float(x) for x in vec], ensure_ascii=False, separators=(",", ":"))


def _is_pgvector_runtime_enabled(db: Session) -> bool:
    if not bool(get_settings().vector_pgvector_enabled):
        return False
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def _scope_conditions(filters: ChunkFilters) -> list:
    conds = [ContentChunk.user_id == filters.user_id]
    if filters.portal_id is not None:
        conds.append(ContentChunk.portal_id == filters.portal_id)
    if filters.run_id is not None:
        conds.append(ContentChunk.run_id == filters.run_id)
    return conds


class SqlVectorStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def insert(self, chunks: list[ContentChunk]) -> int:
        if not chunks:
            return 0
        self.db.add_all(chunks)
        self.db.flush()
        if _is_pgvector_runtime_enabled(self.db):
            for row in chunks:
                self._write_vector_column(row)
        self.db.commit()
        return len(chunks)

    def _write_vector_column(self, row: ContentChunk) -> None:
        literal = vector_to_literal(row.embedding)
        if not literal:
            return
        try:
            self.db.execute(
                text("UPDATE content_chunks SET embedding_pg = CAST(:v AS vector) WHERE id = :id"),
                {"id": int(row.id), "v": literal},
            )
        except Exception:
            # Extension/column may be unavailable on current host; keep JSON path working.
            logger.warning("pgvector_write_skipped chunk_id=%s", row.id)

    def query(self, embedding: list[float], filters: ChunkFilters, k: int) -> list[StoredHit]:
        if k <= 0 or not embedding:
            return []
        hits = self._query_pgvector(embedding, filters, k) if _is_pgvector_runtime_enabled(self.db) else []
        if hits:
            return hits
        rows = self.db.execute(
            select(ContentChunk)
            .where(*_scope_conditions(filters), ContentChunk.embedding.is_not(None))
            .order_by(ContentChunk.ordinal.asc(), ContentChunk.id.asc())
            .limit(SCAN_LIMIT)
        ).scalars().all()
        scored: list[StoredHit] = []
        for row in rows:
            vec = row.embedding
            if not isinstance(vec, list):
                continue
            scored.append(StoredHit(chunk=row, score=cosine(embedding, vec)))
        scored.sort(key=hit_sort_key)
        return scored[:k]

    def _query_pgvector(self, embedding: list[float], filters: ChunkFilters, k: int) -> list[StoredHit]:
        qvec = vector_to_literal(embedding)
        where = ["user_id = :user_id", "embedding_pg IS NOT NULL"]
        params: dict = {"qvec": qvec, "user_id": filters.user_id, "lim": int(k)}
        if filters.portal_id is not None:
            where.append("portal_id = :portal_id")
            params["portal_id"] = int(filters.portal_id)
        if filters.run_id is not None:
            where.append("run_id = :run_id")
            params["run_id"] = int(filters.run_id)
        sql = text(
            "SELECT id, 1 - (embedding_pg <=> CAST(:qvec AS vector)) AS score "
            "FROM content_chunks WHERE " + " AND ".join(where) + " "
            "ORDER BY embedding_pg <=> CAST(:qvec AS vector) LIMIT :lim"
        )
        try:
            rows = self.db.execute(sql, params).mappings().all()
        except Exception:
            logger.warning("pgvector_query_failed user_id=%s", filters.user_id)
            return []
        if not rows:
            return []
        by_id = {
            c.id: c
            for c in self.db.execute(
                select(ContentChunk).where(ContentChunk.id.in_([int(r["id"]) for r in rows]))
            ).scalars().all()
        }
        hits = [StoredHit(chunk=by_id[int(r["id"])], score=float(r["score"])) for r in rows if int(r["id"]) in by_id]
        hits.sort(key=hit_sort_key)
        return hits

    def delete(self, filters: ChunkFilters, *, exclude_run_id: int | None = None) -> int:
        stmt = delete(ContentChunk).where(*_scope_conditions(filters))
        if exclude_run_id is not None:
            stmt = stmt.where(ContentChunk.run_id != exclude_run_id)
        res = self.db.execute(stmt)
        self.db.commit()
        return int(res.rowcount or 0)
