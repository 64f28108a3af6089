"""Visitor chat over a deployed portal: sessions, grounded answers, citations.

Порядок сообщений внутри сессии гарантирует очередь с одним потребителем
(отдельный однопоточный executor на сессию). Разные сессии обрабатываются
параллельно, общей блокировки на обработку нет.
"""
from __future__ import annotations

import logging
import secrets
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from apps.backend.config import Settings, get_settings
from apps.backend.database import get_session_factory
from apps.backend.models.chat import ChatMessage, ChatSession
from apps.backend.models.chunk import ContentChunk
from apps.backend.models.portal import Portal
from apps.backend.services import rate_limit
from apps.backend.services.analytics import AnalyticsEmitter
from apps.backend.services.embedding_pipeline import section_kind
from apps.backend.services.entitlements import DbEntitlementChecker, EntitlementChecker, require_capability
from apps.backend.services.errors import (
    NotFoundError,
    PortalEngineError,
    RateLimitExceededError,
    StateConflictError,
    ValidationError,
)
from apps.backend.services.llm_client import ChatSettings, LLMProvider, get_llm_provider
from apps.backend.services.retrieval import ScoredChunk, query as retrieve
from apps.backend.services.retry import RetryPolicy, call_with_timeout
from apps.backend.services.vector_store import ChunkFilters, SqlVectorStore

logger = logging.getLogger(__name__)

NOT_COVERED_MARKER = "not covered in this profile"
NOT_COVERED_REPLY = (
    "That topic is not covered in this profile. "
    "Try asking about the experience, skills or education listed here."
)
DEGRADED_REPLY = "I couldn't find that in this profile right now. Please try again in a moment."

_SUGGESTIONS: dict[str, str] = {
    "summary": "Can you give me a short summary of this profile?",
    "experience": "What is the most recent role and what did it involve?",
    "skills": "What are the key technical skills?",
    "projects": "Which projects stand out?",
    "achievements": "What are the notable achievements?",
    "education": "What is the educational background?",
    "certifications": "Which certifications are listed?",
    "languages": "Which languages does the candidate speak?",
}
MAX_SUGGESTIONS = 3


def assemble_context(chunks: list[ScoredChunk], budget_tokens: int) -> list[ScoredChunk]:
    """Best-scored first; drop lowest-scored until the total fits. The top chunk always stays."""
    kept = sorted(chunks, key=lambda c: (-c.score, -c.importance, c.ordinal, c.chunk_id))
    total = sum(c.token_count for c in kept)
    while len(kept) > 1 and total > budget_tokens:
        total -= kept.pop().token_count
    return kept


def confidence_of(cited: list[ScoredChunk]) -> float | None:
    if not cited:
        return None
    return round(sum(c.score for c in cited) / len(cited), 4)


def message_to_dict(msg: ChatMessage) -> dict:
    return {
        "id": msg.id,
        "seq": msg.seq,
        "role": msg.role,
        "text": msg.text,
        "citations": msg.citations or [],
        "confidence": msg.confidence,
        "delivery_status": msg.delivery_status,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }


@dataclass
class _SessionQueue:
    executor: ThreadPoolExecutor
    pending: int = 0
    last_used: float = 0.0


class ChatSessionManager:
    def __init__(
        self,
        session_factory=None,
        *,
        provider: LLMProvider | None = None,
        analytics: AnalyticsEmitter | None = None,
        settings: Settings | None = None,
        checker_factory=None,
        sleep=time.sleep,
        clock=time.monotonic,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self._provider = provider
        self.analytics = analytics
        self.settings = settings or get_settings()
        self._checker_factory = checker_factory or DbEntitlementChecker
        self._sleep = sleep
        self._clock = clock
        self._queues: dict[str, _SessionQueue] = {}
        self._queues_lock = threading.Lock()

    @property
    def provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = get_llm_provider()
        return self._provider

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.analytics is not None:
            self.analytics.emit(event_type, payload)

    # --- sessions ---

    def _resolve_portal(self, db: Session, portal_ref: int | str) -> Portal:
        if isinstance(portal_ref, int):
            portal = db.get(Portal, portal_ref)
        else:
            portal = db.execute(select(Portal).where(Portal.slug == str(portal_ref))).scalars().first()
        if not portal or portal.visibility == "private":
            raise NotFoundError("portal_not_found")
        return portal

    def open_session(self, portal_ref: int | str, visitor_id: str | None = None, language: str = "en") -> dict:
        language = (language or "en").strip().lower()[:8] or "en"
        with self.session_factory() as db:
            portal = self._resolve_portal(db, portal_ref)
            if portal.status != "ACTIVE":
                raise StateConflictError("portal_not_active")
            if not portal.chat_enabled():
                raise StateConflictError("chat_disabled")
            checker: EntitlementChecker = self._checker_factory(db)
            require_capability(checker, portal.user_id)
            now = datetime.utcnow()
            sess = ChatSession(
                portal_id=portal.id,
                token=secrets.token_urlsafe(24),
                visitor_id=str(visitor_id)[:64] if visitor_id else None,
                is_active=True,
                language=language,
                message_count=0,
                referenced_chunk_ids=[],
                started_at=now,
                last_activity_at=now,
            )
            db.add(sess)
            db.execute(
                update(Portal).where(Portal.id == portal.id).values(session_count=Portal.session_count + 1)
            )
            db.commit()
            db.refresh(sess)
            suggestions = self.suggested_questions(db, portal)
            out = {"token": sess.token, "session_id": sess.id, "portal_id": portal.id, "suggested_questions": suggestions}
        logger.info("chat_session_opened portal_id=%s session_id=%s", out["portal_id"], out["session_id"])
        self._emit("chat_session_opened", {"portal_id": out["portal_id"], "session_id": out["session_id"]})
        return out

    def suggested_questions(self, db: Session, portal: Portal) -> list[str]:
        """Подсказки по секциям текущей генерации, в порядке документа."""
        if not portal.current_run_id:
            return []
        labels = db.execute(
            select(ContentChunk.section, func.min(ContentChunk.ordinal))
            .where(ContentChunk.portal_id == portal.id, ContentChunk.run_id == portal.current_run_id)
            .group_by(ContentChunk.section)
            .order_by(func.min(ContentChunk.ordinal))
        ).all()
        out: list[str] = []
        for label, _ordinal in labels:
            q = _SUGGESTIONS.get(section_kind(label))
            if q and q not in out:
                out.append(q)
            if len(out) >= MAX_SUGGESTIONS:
                break
        return out

    def _end(self, sess: ChatSession, reason: str, now: datetime) -> None:
        sess.is_active = False
        sess.end_reason = reason
        sess.ended_at = max(now, sess.started_at) if sess.started_at else now

    def close_session(self, token: str, rating: int | None = None, feedback: str | None = None) -> dict:
        if rating is not None and (not isinstance(rating, int) or not 1 <= rating <= 5):
            raise ValidationError("rating_must_be_1_to_5")
        with self.session_factory() as db:
            sess = db.execute(select(ChatSession).where(ChatSession.token == token)).scalars().first()
            if not sess:
                raise NotFoundError("session_not_found")
            if sess.is_active:
                self._end(sess, "closed", datetime.utcnow())
            if rating is not None:
                sess.rating = rating
            if feedback:
                sess.feedback = str(feedback)[:2000]
            db.add(sess)
            db.commit()
            out = {"session_id": sess.id, "portal_id": sess.portal_id, "message_count": sess.message_count, "end_reason": sess.end_reason}
        self._drop_queue(token)
        self._emit("chat_session_closed", {**out, "rating": rating})
        return out

    def end_sessions_for_portal(self, portal_id: int, reason: str = "suspended") -> int:
        now = datetime.utcnow()
        with self.session_factory() as db:
            rows = db.execute(
                select(ChatSession).where(ChatSession.portal_id == portal_id, ChatSession.is_active.is_(True))
            ).scalars().all()
            for sess in rows:
                self._end(sess, reason, now)
                db.add(sess)
            db.commit()
            tokens = [s.token for s in rows]
        for t in tokens:
            self._drop_queue(t)
        if tokens:
            logger.info("chat_sessions_ended portal_id=%s reason=%s count=%s", portal_id, reason, len(tokens))
        return len(tokens)

    def expire_inactive_sessions(self, now: datetime | None = None) -> int:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=max(1, int(self.settings.chat_inactivity_minutes)))
        with self.session_factory() as db:
            rows = db.execute(
                select(ChatSession).where(ChatSession.is_active.is_(True), ChatSession.last_activity_at < cutoff)
            ).scalars().all()
            for sess in rows:
                self._end(sess, "inactive", now)
                db.add(sess)
            db.commit()
            tokens = [s.token for s in rows]
        for t in tokens:
            self._drop_queue(t)
        self.sweep_idle_queues()
        return len(tokens)

    # --- per-session queues ---

    def _enqueue(self, token: str, text: str) -> Future:
        now = self._clock()
        with self._queues_lock:
            self._sweep_locked(now)
            q = self._queues.get(token)
            if q is None:
                q = _SessionQueue(ThreadPoolExecutor(max_workers=1, thread_name_prefix="chat-session"))
                self._queues[token] = q
            q.pending += 1
            q.last_used = now
            return q.executor.submit(self._run_queued, q, token, text)

    def _run_queued(self, q: _SessionQueue, token: str, text: str) -> ChatMessage:
        try:
            return self._process_message(token, text)
        finally:
            self._settle(q)

    def _settle(self, q: _SessionQueue) -> None:
        with self._queues_lock:
            q.pending -= 1
            q.last_used = self._clock()

    def _sweep_locked(self, now: float) -> list[ThreadPoolExecutor]:
        idle = max(0, int(self.settings.chat_queue_idle_seconds))
        stale = [t for t, q in self._queues.items() if q.pending <= 0 and now - q.last_used >= idle]
        released = [self._queues.pop(t).executor for t in stale]
        for ex in released:
            ex.shutdown(wait=False)
        return released

    def sweep_idle_queues(self, now: float | None = None) -> int:
        """Release queues with no pending work, idle longer than chat_queue_idle_seconds."""
        with self._queues_lock:
            released = self._sweep_locked(self._clock() if now is None else now)
        if released:
            logger.info("chat_queues_released count=%s", len(released))
        return len(released)

    def _drop_queue(self, token: str) -> None:
        with self._queues_lock:
            q = self._queues.pop(token, None)
        if q is not None:
            q.executor.shutdown(wait=False)

    def shutdown(self) -> None:
        with self._queues_lock:
            queues = list(self._queues.values())
            self._queues.clear()
        for q in queues:
            q.executor.shutdown(wait=True)

    def _validate_text(self, text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("message_text_required")
        text = text.strip()
        if len(text) > int(self.settings.chat_message_max_chars):
            raise ValidationError("message_too_long")
        return text

    def submit_message(self, token: str, text: str) -> Future:
        """Enqueue a message behind earlier ones of the same session."""
        text = self._validate_text(text)
        if not token:
            raise ValidationError("missing_session_token")
        # unknown or ended sessions never get a queue
        self._check_open(token)
        return self._enqueue(token, text)

    def _check_open(self, token: str) -> None:
        with self.session_factory() as db:
            row = db.execute(select(ChatSession.is_active).where(ChatSession.token == token)).first()
        if row is None or not row[0]:
            self._drop_queue(token)
            if row is None:
                raise NotFoundError("session_not_found")
            raise StateConflictError("session_closed")

    def send_message(self, token: str, text: str, timeout: float | None = None) -> ChatMessage:
        return self.submit_message(token, text).result(timeout=timeout)

    # --- message processing ---

    def _admit(self, db: Session, token: str) -> tuple[ChatSession, Portal]:
        sess = db.execute(select(ChatSession).where(ChatSession.token == token)).scalars().first()
        if not sess:
            raise NotFoundError("session_not_found")
        if not sess.is_active:
            raise StateConflictError("session_closed")
        portal = db.get(Portal, sess.portal_id)
        if not portal or portal.status != "ACTIVE" or not portal.chat_enabled():
            raise StateConflictError("portal_not_active")
        return sess, portal

    def _take_quota(self, db: Session, token: str, portal_id: int) -> None:
        s = self.settings
        rate_limit.consume(db, "session", token, quota=s.chat_session_quota, window_seconds=s.chat_session_window_seconds)
        try:
            rate_limit.consume(db, "portal", str(portal_id), quota=s.chat_portal_quota, window_seconds=s.chat_portal_window_seconds)
        except RateLimitExceededError:
            rate_limit.refund(db, "session", token)
            raise

    def _history(self, db: Session, session_id: int) -> list[dict[str, str]]:
        n = max(0, int(self.settings.chat_history_turns)) * 2
        if n == 0:
            return []
        rows = db.execute(
            select(ChatMessage.role, ChatMessage.text)
            .where(ChatMessage.session_id == session_id, ChatMessage.role != "system")
            .order_by(ChatMessage.seq.desc())
            .limit(n)
        ).all()
        return [{"role": r, "text": t} for r, t in reversed(rows)]

    def _retrieve(self, user_id: str, portal_id: int, run_id: int | None, question: str) -> list[ScoredChunk]:
        s = self.settings
        if not run_id:
            return []
        policy = RetryPolicy(max_attempts=s.embed_max_attempts, base_delay=0.25, max_delay=2.0, sleep=self._sleep)
        vec = policy.run(lambda: call_with_timeout(lambda: self.provider.embed(question), s.embed_timeout_seconds, name="embed"))

        def _query() -> list[ScoredChunk]:
            with self.session_factory() as db:
                return retrieve(
                    SqlVectorStore(db),
                    user_id,
                    vec,
                    ChunkFilters(user_id=user_id, portal_id=portal_id, run_id=run_id),
                    top_k=s.retrieval_top_k,
                    grounding_floor=s.grounding_floor,
                )

        return policy.run(lambda: call_with_timeout(_query, s.retrieval_timeout_seconds, name="retrieval"))

    def _answer(
        self,
        context: list[ScoredChunk],
        history: list[dict[str, str]],
        chat_settings: ChatSettings | None = None,
    ) -> tuple[str, list[ScoredChunk]]:
        s = self.settings
        payload = [c.as_context() for c in context]
        policy = RetryPolicy(max_attempts=s.completion_max_attempts, base_delay=0.5, max_delay=4.0, sleep=self._sleep)
        completion = policy.run(
            lambda: call_with_timeout(
                lambda: self.provider.complete(payload, history, chat_settings=chat_settings),
                s.completion_timeout_seconds,
                name="completion",
            )
        )
        used = set(completion.used_chunk_ids or [])
        cited = [c for c in context if c.chunk_id in used] or list(context)
        return (completion.text or "").strip(), cited

    def _process_message(self, token: str, text: str) -> ChatMessage:
        started = time.monotonic()
        with self.session_factory() as db:
            try:
                sess, portal = self._admit(db, token)
            except (NotFoundError, StateConflictError):
                self._drop_queue(token)
                raise
            session_id, portal_id = sess.id, portal.id
            user_id, run_id = portal.user_id, portal.current_run_id
            chat_settings = ChatSettings.from_dict(portal.chat_settings)
            self._take_quota(db, token, portal_id)
            try:
                history = self._history(db, session_id)
                slot = rate_limit.acquire_slot(db, portal_id, self.settings.chat_portal_max_in_flight)
            except Exception:
                # the message was not processed: both windows get it back
                db.rollback()
                rate_limit.refund(db, "portal", str(portal_id))
                rate_limit.refund(db, "session", token)
                raise
        history.append({"role": "visitor", "text": text})

        status = "delivered"
        cited: list[ScoredChunk] = []
        try:
            chunks = self._retrieve(user_id, portal_id, run_id, text)
            if not chunks:
                reply, status = NOT_COVERED_REPLY, "not_covered"
            else:
                context = assemble_context(chunks, int(self.settings.chat_context_tokens))
                reply, cited = self._answer(context, history, chat_settings)
                if not reply:
                    reply, status, cited = DEGRADED_REPLY, "degraded", []
        except PortalEngineError as e:
            # provider rejections and outages look the same to a visitor
            logger.warning("chat_reply_degraded session_id=%s code=%s retryable=%s", session_id, e.code, e.retryable)
            reply, status, cited = DEGRADED_REPLY, "degraded", []
        finally:
            if slot:
                with self.session_factory() as db:
                    rate_limit.release_slot(db, portal_id)

        msg = self._persist(session_id, text, reply, status, cited)
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "chat_message_answered session_id=%s status=%s citations=%s latency_ms=%s",
            session_id, status, len(cited), latency_ms,
        )
        self._emit("chat_message", {
            "portal_id": portal_id,
            "session_id": session_id,
            "delivery_status": status,
            "citations": len(cited),
            "confidence": msg.confidence,
            "latency_ms": latency_ms,
        })
        return msg

    def _persist(self, session_id: int, text: str, reply: str, status: str, cited: list[ScoredChunk]) -> ChatMessage:
        now = datetime.utcnow()
        with self.session_factory() as db:
            sess = db.get(ChatSession, session_id)
            last_seq = db.execute(
                select(func.max(ChatMessage.seq)).where(ChatMessage.session_id == session_id)
            ).scalar() or 0
            visitor = ChatMessage(session_id=session_id, seq=last_seq + 1, role="visitor", text=text, delivery_status="delivered", created_at=now)
            assistant = ChatMessage(
                session_id=session_id,
                seq=last_seq + 2,
                role="assistant",
                text=reply,
                citations=[{"chunk_id": c.chunk_id, "section": c.section, "score": round(c.score, 4)} for c in cited],
                confidence=confidence_of(cited),
                delivery_status=status,
                created_at=now,
            )
            db.add_all([visitor, assistant])
            refs = list(sess.referenced_chunk_ids or [])
            for c in cited:
                if c.chunk_id not in refs:
                    refs.append(c.chunk_id)
            sess.referenced_chunk_ids = refs
            sess.message_count = (sess.message_count or 0) + 2
            sess.last_query = text[:1000]
            sess.last_activity_at = now
            db.add(sess)
            db.commit()
            db.refresh(assistant)
            return assistant


def get_chat_analytics(db: Session, portal_id: int) -> dict:
    sessions_total = db.execute(
        select(func.count(ChatSession.id)).where(ChatSession.portal_id == portal_id)
    ).scalar() or 0
    sessions_active = db.execute(
        select(func.count(ChatSession.id)).where(ChatSession.portal_id == portal_id, ChatSession.is_active.is_(True))
    ).scalar() or 0
    avg_rating = db.execute(
        select(func.avg(ChatSession.rating)).where(ChatSession.portal_id == portal_id, ChatSession.rating.is_not(None))
    ).scalar()
    by_status = dict(
        db.execute(
            select(ChatMessage.delivery_status, func.count(ChatMessage.id))
            .join(ChatSession, ChatSession.id == ChatMessage.session_id)
            .where(ChatSession.portal_id == portal_id, ChatMessage.role == "assistant")
            .group_by(ChatMessage.delivery_status)
        ).all()
    )
    answers = sum(by_status.values())
    return {
        "portal_id": portal_id,
        "sessions": int(sessions_total),
        "active_sessions": int(sessions_active),
        "answers": int(answers),
        "average_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
        "not_covered_rate": round(by_status.get("not_covered", 0) / answers, 4) if answers else 0.0,
        "degraded_rate": round(by_status.get("degraded", 0) / answers, 4) if answers else 0.0,
    }


_manager: ChatSessionManager | None = None
_manager_lock = threading.Lock()


def get_chat_manager() -> ChatSessionManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = ChatSessionManager(analytics=AnalyticsEmitter())
        return _manager
