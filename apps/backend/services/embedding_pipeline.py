"""Embedding pipeline: structured résumé sections -> token-window chunks -> vectors."""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from apps.backend.models.chunk import ContentChunk
from apps.backend.services.errors import OperationCancelled, TransientDependencyError, ValidationError
from apps.backend.services.llm_client import LLMProvider
from apps.backend.services.retry import RetryPolicy, call_with_timeout
from apps.backend.services.vector_store import ChunkFilters, VectorStore

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_TOKENS = 500
DEFAULT_OVERLAP_TOKENS = 50

_TOKEN_RE = re.compile(r"\S+")

_SECTION_KINDS: dict[str, str] = {
    "summary": "summary",
    "profile": "summary",
    "about": "summary",
    "objective": "summary",
    "experience": "experience",
    "work experience": "experience",
    "employment": "experience",
    "work history": "experience",
    "skills": "skills",
    "technical skills": "skills",
    "core competencies": "skills",
    "competencies": "skills",
    "education": "education",
    "achievements": "achievements",
    "awards": "achievements",
    "projects": "projects",
    "certifications": "certifications",
    "languages": "languages",
    "publications": "publications",
}

_SECTION_WEIGHTS: dict[str, float] = {
    "experience": 1.0,
    "skills": 0.95,
    "summary": 0.9,
    "achievements": 0.9,
    "projects": 0.8,
    "education": 0.7,
    "certifications": 0.7,
    "publications": 0.65,
    "languages": 0.6,
    "other": 0.5,
}

SKILL_LEXICON = {
    "python", "go", "golang", "java", "javascript", "typescript", "rust", "c", "c++", "c#", "ruby",
    "php", "kotlin", "swift", "scala", "sql", "postgresql", "mysql", "mongodb", "redis", "kafka",
    "docker", "kubernetes", "terraform", "aws", "gcp", "azure", "linux", "git", "react", "vue",
    "angular", "django", "flask", "fastapi", "spring", "node", "node.js", "graphql", "rest",
    "pandas", "numpy", "pytorch", "tensorflow", "spark", "airflow", "excel", "tableau", "figma",
    "html", "css", "bash", "ci/cd", "jenkins", "ansible", "elasticsearch", "machine learning",
    "scrum", "agile", "jira",
}

_TITLE_WORDS = (
    "engineer", "developer", "manager", "lead", "director", "architect", "analyst", "consultant",
    "designer", "intern", "scientist", "head", "officer", "specialist", "award", "winner",
    "promoted", "founder", "cto", "ceo",
)
_ORG_RE = re.compile(
    r"\b(inc|llc|ltd|gmbh|corp|corporation|company|university|college|institute|group|labs?)\b\.?",
    re.IGNORECASE,
)
_YEAR_RE = re.compile(r"\b(19[5-9]\d|20\d\d)\b")
_MONTH_RE = re.compile(r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+(19|20)\d\d\b", re.IGNORECASE)


@dataclass
class ChunkDraft:
    section: str
    ordinal: int
    text: str
    token_count: int
    importance: float
    content_type: str
    sha256: str
    embedding: list[float] | None = None


@dataclass
class PipelineResult:
    chunks: list[ChunkDraft] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)
    model: str | None = None
    embed_calls: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.dropped)


def section_kind(label: str) -> str:
    key = re.sub(r"\s+", " ", (label or "").strip().lower())
    if key in _SECTION_KINDS:
        return _SECTION_KINDS[key]
    for name, kind in _SECTION_KINDS.items():
        if name in key:
            return kind
    return "other"


def _render_item(item: Any) -> str:
    if isinstance(item, dict):
        title = str(item.get("title") or item.get("name") or "").strip()
        org = str(item.get("organization") or item.get("company") or item.get("institution") or "").strip()
        start = str(item.get("start") or item.get("startDate") or "").strip()
        end = str(item.get("end") or item.get("endDate") or "").strip()
        desc = str(item.get("description") or "").strip()
        head = title
        if org:
            head = f"{head} at {org}" if head else org
        if start or end:
            head = f"{head} ({start} - {end or 'present'})"
        bullets = item.get("highlights") or item.get("achievements") or []
        tail = " ".join(str(b).strip() for b in bullets if str(b).strip())
        return ". ".join(p for p in (head, desc, tail) if p)
    return str(item or "").strip()


def section_text(section: dict[str, Any]) -> str:
    """Плоский текст секции: text + items (строки или записи опыта)."""
    parts: list[str] = []
    text = str(section.get("text") or "").strip()
    if text:
        parts.append(text)
    items = section.get("items") or []
    if items:
        rendered = [_render_item(it) for it in items]
        rendered = [r for r in rendered if r]
        if rendered and all(not isinstance(it, dict) for it in items):
            parts.append(", ".join(rendered))
        else:
            parts.extend(rendered)
    return "\n".join(parts)


def chunk_tokens(text: str, max_tokens: int = DEFAULT_CHUNK_TOKENS, overlap: int = DEFAULT_OVERLAP_TOKENS) -> list[tuple[str, int]]:
    """Split text into windows of max_tokens whitespace tokens with overlap; keeps original spacing."""
    spans = [m.span() for m in _TOKEN_RE.finditer(text or "")]
    if not spans:
        return []
    if max_tokens < 1:
        max_tokens = 1
    overlap = max(0, min(overlap, max_tokens - 1))
    out: list[tuple[str, int]] = []
    start = 0
    while start < len(spans):
        end = min(len(spans), start + max_tokens)
        out.append((text[spans[start][0]:spans[end - 1][1]], end - start))
        if end >= len(spans):
            break
        start = end - overlap
    return out


def _skill_hits(tokens: list[str]) -> int:
    low = [t.lower().strip(".,;:()") for t in tokens]
    hits = sum(1 for t in low if t in SKILL_LEXICON)
    joined = " ".join(low)
    hits += sum(1 for phrase in SKILL_LEXICON if " " in phrase and phrase in joined)
    return hits


def classify_content(text: str, kind: str) -> str:
    tokens = text.split()
    if not tokens:
        return "text"
    if kind == "skills":
        return "skill"
    hits = _skill_hits(tokens)
    if hits >= 3 and hits >= 0.3 * len(tokens):
        return "skill"
    low = text.lower()
    has_date = bool(_YEAR_RE.search(text) or _MONTH_RE.search(text))
    if has_date and any(w in low for w in _TITLE_WORDS):
        return "achievement"
    if kind == "achievements":
        return "achievement"
    if _ORG_RE.search(text):
        return "organization"
    if len(tokens) <= 12 and not text.rstrip().endswith("."):
        return "title"
    return "text"


def importance_score(text: str, kind: str) -> float:
    """section weight x keyword density, clamped to [0, 1]."""
    tokens = text.split()
    if not tokens:
        return 0.0
    keywords = _skill_hits(tokens)
    keywords += sum(1 for t in tokens if t[:1].isupper() or any(ch.isdigit() for ch in t))
    density = keywords / float(len(tokens))
    factor = 0.6 + 0.4 * min(1.0, density * 2.5)
    weight = _SECTION_WEIGHTS.get(kind, _SECTION_WEIGHTS["other"])
    return round(max(0.0, min(1.0, weight * factor)), 4)


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_chunks(
    sections: list[dict[str, Any]],
    max_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap: int = DEFAULT_OVERLAP_TOKENS,
) -> list[ChunkDraft]:
    drafts: list[ChunkDraft] = []
    ordinal = 0
    for section in sections:
        if not isinstance(section, dict):
            raise ValidationError("section_must_be_object")
        label = str(section.get("label") or section.get("kind") or "Section").strip()
        kind = section_kind(str(section.get("kind") or label))
        body = section_text(section)
        if not body.strip():
            continue
        for piece, n_tokens in chunk_tokens(body, max_tokens=max_tokens, overlap=overlap):
            drafts.append(ChunkDraft(
                section=label,
                ordinal=ordinal,
                text=piece,
                token_count=n_tokens,
                importance=importance_score(piece, kind),
                content_type=classify_content(piece, kind),
                sha256=_sha256_text(piece),
            ))
            ordinal += 1
    return drafts


def generate_embeddings(
    user_id: str,
    sections: list[dict[str, Any]],
    provider: LLMProvider,
    *,
    max_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap: int = DEFAULT_OVERLAP_TOKENS,
    retry: RetryPolicy | None = None,
    call_timeout: float = 30.0,
    should_stop: Callable[[], bool] | None = None,
) -> PipelineResult:
    if not user_id:
        raise ValidationError("missing_user_id")
    if not isinstance(sections, list):
        raise ValidationError("sections_must_be_list")
    retry = retry or RetryPolicy(max_attempts=3, base_delay=0.5)
    result = PipelineResult(model=getattr(provider, "model_version", None))
    for draft in build_chunks(sections, max_tokens=max_tokens, overlap=overlap):
        if should_stop and should_stop():
            raise OperationCancelled("embedding_cancelled")

        def _embed(text: str = draft.text) -> list[float]:
            result.embed_calls += 1
            return call_with_timeout(lambda: provider.embed(text), call_timeout, name="embed")

        try:
            draft.embedding = retry.run(_embed)
        except TransientDependencyError as e:
            logger.warning("embedding_chunk_dropped user_id=%s ordinal=%s error=%s", user_id, draft.ordinal, e.code)
            result.dropped.append(draft.ordinal)
            continue
        result.chunks.append(draft)
    if result.dropped:
        result.warnings.append(f"degraded_coverage: {len(result.dropped)} chunk(s) without embeddings")
    logger.info(
        "embedding_pipeline_done user_id=%s chunks=%s dropped=%s calls=%s",
        user_id,
        len(result.chunks),
        len(result.dropped),
        result.embed_calls,
    )
    return result


def store_chunks(store: VectorStore, user_id: str, portal_id: int, run_id: int, result: PipelineResult) -> int:
    """Persist one generation; a retried phase first drops whatever the previous attempt wrote."""
    store.delete(ChunkFilters(user_id=user_id, portal_id=portal_id, run_id=run_id))
    rows = [
        ContentChunk(
            user_id=user_id,
            portal_id=portal_id,
            run_id=run_id,
            section=d.section[:64],
            ordinal=d.ordinal,
            text=d.text,
            embedding=d.embedding,
            importance=d.importance,
            token_count=d.token_count,
            content_type=d.content_type,
            model=result.model,
            sha256=d.sha256,
        )
        for d in result.chunks
    ]
    return store.insert(rows)


def retire_generations(store: VectorStore, user_id: str, portal_id: int, keep_run_id: int) -> int:
    n = store.delete(ChunkFilters(user_id=user_id, portal_id=portal_id), exclude_run_id=keep_run_id)
    if n:
        logger.info("chunk_generations_retired portal_id=%s keep_run_id=%s deleted=%s", portal_id, keep_run_id, n)
    return n
