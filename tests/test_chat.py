"""Visitor chat: sessions, grounded answers, not-covered and degraded replies, ordering."""
import threading
import time
from datetime import datetime, timedelta

import pytest

from apps.backend.models.chat import ChatMessage, ChatSession
from apps.backend.models.portal import Portal
from apps.backend.services.chat import (
    DEGRADED_REPLY,
    NOT_COVERED_REPLY,
    ChatSessionManager,
    assemble_context,
    get_chat_analytics,
    message_to_dict,
)
from apps.backend.services.errors import (
    CapabilityDeniedError,
    NotFoundError,
    PortalEngineError,
    RateLimitExceededError,
    StateConflictError,
    ValidationError,
)
from apps.backend.services import rate_limit
from apps.backend.services.retrieval import ScoredChunk

from conftest import FakeProvider, make_settings, publish

LANG_QUESTION = "What languages does this candidate know?"


@pytest.fixture
def make_manager(session_factory, provider, analytics):
    managers = []

    def _make(factory=None, prov=None, **overrides):
        m = ChatSessionManager(
            factory or session_factory,
            provider=prov or provider,
            analytics=analytics,
            settings=make_settings(**overrides),
            sleep=lambda _s: None,
        )
        managers.append(m)
        return m

    yield _make
    for m in managers:
        m.shutdown()


def test_open_session_by_slug(db, make_manager, provider, analytics, seed_portal):
    portal = publish(db, seed_portal, provider)
    out = make_manager().open_session(portal.slug, visitor_id="v-1", language="EN")
    assert out["token"]
    assert out["portal_id"] == portal.id
    assert out["suggested_questions"] == [
        "Can you give me a short summary of this profile?",
        "What is the most recent role and what did it involve?",
        "What are the key technical skills?",
    ]
    db.expire_all()
    sess = db.get(ChatSession, out["session_id"])
    assert sess.is_active and sess.language == "en" and sess.visitor_id == "v-1"
    assert db.get(Portal, portal.id).session_count == 1
    assert "chat_session_opened" in analytics.types()


def test_open_session_rejections(db, make_manager, provider, seed_portal):
    manager = make_manager()
    with pytest.raises(NotFoundError):
        manager.open_session("no-such-portal")
    private = publish(db, seed_portal, provider, visibility="private")
    with pytest.raises(NotFoundError):
        manager.open_session(private.slug)
    draft = seed_portal(db)
    with pytest.raises(StateConflictError):
        manager.open_session(draft.id)
    muted = publish(db, seed_portal, provider, feature_flags={"chat": False})
    with pytest.raises(StateConflictError):
        manager.open_session(muted.slug)
    unpaid = publish(db, seed_portal, provider, user_id="owner-2", entitled=False)
    with pytest.raises(CapabilityDeniedError):
        manager.open_session(unpaid.slug)


@pytest.mark.timeout(10)
def test_grounded_answer_cites_skills(db, make_manager, provider, analytics, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]

    msg = manager.send_message(token, LANG_QUESTION, timeout=5)
    assert msg.role == "assistant"
    assert msg.delivery_status == "delivered"
    assert msg.text == "Grounded answer [S1]."
    assert [c["section"] for c in msg.citations] == ["Skills"]
    assert msg.confidence is not None and msg.confidence > 0.25
    assert msg.seq == 2
    assert provider.complete_calls == 1
    assert [c["section"] for c in provider.contexts[0]] == ["Skills"]

    db.expire_all()
    sess = db.query(ChatSession).filter(ChatSession.token == token).one()
    assert sess.message_count == 2
    assert sess.last_query == LANG_QUESTION
    assert sess.referenced_chunk_ids == [msg.citations[0]["chunk_id"]]
    event = [p for t, p in analytics.events if t == "chat_message"][-1]
    assert event["delivery_status"] == "delivered" and event["citations"] == 1
    assert message_to_dict(msg)["confidence"] == msg.confidence


@pytest.mark.timeout(10)
def test_unrelated_question_is_not_covered(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    msg = manager.send_message(token, "Tell me about their favourite food", timeout=5)
    assert msg.delivery_status == "not_covered"
    assert msg.text == NOT_COVERED_REPLY
    assert msg.citations == []
    assert msg.confidence is None
    assert provider.complete_calls == 0


@pytest.mark.timeout(10)
def test_completion_outage_degrades(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    provider.fail_complete = True
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    msg = manager.send_message(token, LANG_QUESTION, timeout=5)
    assert msg.delivery_status == "degraded"
    assert msg.text == DEGRADED_REPLY
    assert msg.citations == []
    assert provider.complete_calls == 2


@pytest.mark.timeout(10)
def test_embedding_outage_degrades(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    provider.fail_embed_for = {"languages"}
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    msg = manager.send_message(token, LANG_QUESTION, timeout=5)
    assert msg.delivery_status == "degraded"
    assert provider.embed_calls == 2
    assert provider.complete_calls == 0


@pytest.mark.timeout(15)
def test_messages_of_one_session_keep_submit_order(file_session_factory, make_manager, provider, seed_portal):
    # submit checks the session from this thread while the queue works: needs a per-thread connection
    db = file_session_factory()
    try:
        slug = publish(db, seed_portal, provider).slug
    finally:
        db.close()
    manager = make_manager(file_session_factory)
    token = manager.open_session(slug)["token"]
    texts = [f"question {i} about python" for i in range(5)]
    futures = [manager.submit_message(token, t) for t in texts]
    replies = [f.result(timeout=10) for f in futures]
    assert [r.seq for r in replies] == [2, 4, 6, 8, 10]

    with file_session_factory() as db:
        rows = db.query(ChatMessage).join(ChatSession).filter(ChatSession.token == token).order_by(ChatMessage.seq).all()
        assert [r.seq for r in rows] == list(range(1, 11))
        assert [r.text for r in rows if r.role == "visitor"] == texts


class RendezvousProvider(FakeProvider):
    """complete() returns only once two calls are in flight at the same time."""

    def __init__(self) -> None:
        super().__init__()
        self.barrier = threading.Barrier(2, timeout=5)

    def complete(self, context, history, chat_settings=None):
        self.barrier.wait()
        return super().complete(context, history, chat_settings)


@pytest.mark.timeout(20)
def test_sessions_are_processed_in_parallel(file_session_factory, make_manager, seed_portal):
    provider = RendezvousProvider()
    db = file_session_factory()
    try:
        slug = publish(db, seed_portal, provider).slug
    finally:
        db.close()
    manager = make_manager(file_session_factory, provider)
    a = manager.open_session(slug)["token"]
    b = manager.open_session(slug)["token"]
    fa = manager.submit_message(a, LANG_QUESTION)
    fb = manager.submit_message(b, LANG_QUESTION)
    assert fa.result(timeout=10).delivery_status == "delivered"
    assert fb.result(timeout=10).delivery_status == "delivered"


@pytest.mark.timeout(10)
def test_closed_session_rejects_messages(db, make_manager, provider, analytics, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    manager.send_message(token, LANG_QUESTION, timeout=5)

    with pytest.raises(ValidationError):
        manager.close_session(token, rating=6)
    out = manager.close_session(token, rating=5, feedback="helpful")
    assert out["end_reason"] == "closed"
    assert out["message_count"] == 2
    # closing twice is harmless
    assert manager.close_session(token)["end_reason"] == "closed"
    with pytest.raises(StateConflictError):
        manager.send_message(token, "one more", timeout=5)
    with pytest.raises(NotFoundError):
        manager.close_session("unknown-token")
    assert "chat_session_closed" in analytics.types()


@pytest.mark.timeout(10)
def test_suspended_portal_stops_answering(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    portal.status = "SUSPENDED"
    db.commit()
    with pytest.raises(StateConflictError):
        manager.send_message(token, LANG_QUESTION, timeout=5)
    assert manager.end_sessions_for_portal(portal.id) == 1
    db.expire_all()
    sess = db.query(ChatSession).filter(ChatSession.token == token).one()
    assert sess.is_active is False
    assert sess.end_reason == "suspended"
    assert sess.ended_at >= sess.started_at


def test_inactive_sessions_expire(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager(chat_inactivity_minutes=30)
    manager.open_session(portal.slug)
    assert manager.expire_inactive_sessions(now=datetime.utcnow() + timedelta(minutes=5)) == 0
    assert manager.expire_inactive_sessions(now=datetime.utcnow() + timedelta(minutes=31)) == 1
    db.expire_all()
    assert db.query(ChatSession).one().end_reason == "inactive"


@pytest.mark.timeout(15)
def test_session_quota_boundary(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager(chat_session_quota=3)
    token = manager.open_session(portal.slug)["token"]
    for _ in range(3):
        manager.send_message(token, LANG_QUESTION, timeout=5)
    with pytest.raises(RateLimitExceededError) as exc_info:
        manager.send_message(token, LANG_QUESTION, timeout=5)
    assert exc_info.value.scope == "session"
    db.expire_all()
    assert db.query(ChatSession).filter(ChatSession.token == token).one().message_count == 6


def test_invalid_message_text(db, make_manager, provider, seed_portal):
    manager = make_manager(chat_message_max_chars=10)
    with pytest.raises(ValidationError):
        manager.submit_message("token", "   ")
    with pytest.raises(ValidationError):
        manager.submit_message("token", "x" * 11)


@pytest.mark.timeout(10)
def test_chat_analytics(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    manager.send_message(token, LANG_QUESTION, timeout=5)
    manager.send_message(token, "Tell me about their favourite food", timeout=5)
    manager.close_session(token, rating=4)
    stats = get_chat_analytics(db, portal.id)
    assert stats["sessions"] == 1
    assert stats["active_sessions"] == 0
    assert stats["answers"] == 2
    assert stats["average_rating"] == 4.0
    assert stats["not_covered_rate"] == 0.5
    assert stats["degraded_rate"] == 0.0


def _scored(chunk_id, score, tokens, importance=0.5):
    return ScoredChunk(
        chunk_id=chunk_id, section="S", ordinal=chunk_id, text="t", importance=importance,
        content_type="text", token_count=tokens, score=score,
    )


def test_assemble_context_fits_budget():
    chunks = [_scored(3, 0.7, 300), _scored(1, 0.9, 400), _scored(2, 0.8, 300)]
    assert [c.chunk_id for c in assemble_context(chunks, 800)] == [1, 2]
    assert [c.chunk_id for c in assemble_context(chunks, 5000)] == [1, 2, 3]
    # the best chunk survives even when it alone exceeds the budget
    assert [c.chunk_id for c in assemble_context([_scored(9, 0.5, 2000)], 100)] == [9]


def test_unknown_and_ended_sessions_hold_no_queue(db, make_manager, provider, seed_portal):
    manager = make_manager()
    for i in range(20):
        with pytest.raises(NotFoundError):
            manager.submit_message(f"no-such-token-{i}", "hello")
    assert len(manager._queues) == 0

    portal = publish(db, seed_portal, provider)
    tokens = [manager.open_session(portal.slug)["token"] for _ in range(3)]
    for token in tokens:
        manager.send_message(token, LANG_QUESTION, timeout=5)
    assert len(manager._queues) == 3

    # sessions ended by a manager in another process (the watchdog worker)
    worker_side = make_manager(chat_inactivity_minutes=30)
    assert worker_side.expire_inactive_sessions(now=datetime.utcnow() + timedelta(minutes=31)) == 3

    with pytest.raises(StateConflictError):
        manager.send_message(tokens[0], "still there?", timeout=5)
    assert len(manager._queues) == 2
    assert manager.sweep_idle_queues(now=time.monotonic() + 301) == 2
    assert len(manager._queues) == 0


@pytest.mark.timeout(10)
def test_failed_admission_releases_the_queue(db, make_manager, provider, seed_portal):
    portal = publish(db, seed_portal, provider)
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    portal.status = "SUSPENDED"
    db.commit()
    with pytest.raises(StateConflictError):
        manager.send_message(token, LANG_QUESTION, timeout=5)
    assert token not in manager._queues


class RejectingProvider(FakeProvider):
    """The model endpoint refuses the request (4xx): not retryable."""

    def complete(self, context, history, chat_settings=None):
        super().complete(context, history, chat_settings)
        raise PortalEngineError("This model's maximum context length is 8192 tokens", code="llm_rejected")


@pytest.mark.timeout(10)
def test_rejected_completion_degrades(db, make_manager, seed_portal):
    provider = RejectingProvider()
    portal = publish(db, seed_portal, provider)
    manager = make_manager(prov=provider)
    token = manager.open_session(portal.slug)["token"]
    msg = manager.send_message(token, LANG_QUESTION, timeout=5)
    assert msg.delivery_status == "degraded"
    assert msg.text == DEGRADED_REPLY
    assert "8192" not in msg.text
    assert provider.complete_calls == 1
    db.expire_all()
    assert db.query(ChatSession).filter(ChatSession.token == token).one().message_count == 2


@pytest.mark.timeout(10)
def test_portal_chat_settings_reach_the_model(db, make_manager, provider, seed_portal):
    portal = publish(
        db, seed_portal, provider,
        chat_settings={"temperature": 0.9, "personality": "friendly", "allowed_topics": ["skills"]},
    )
    manager = make_manager()
    token = manager.open_session(portal.slug)["token"]
    manager.send_message(token, LANG_QUESTION, timeout=5)
    used = provider.chat_settings[-1]
    assert used.temperature == 0.9
    assert used.personality == "friendly"
    assert used.allowed_topics == ("skills",)
    assert used.max_tokens is None


@pytest.mark.timeout(10)
def test_quota_is_refunded_when_processing_never_starts(db, make_manager, provider, seed_portal, monkeypatch):
    portal = publish(db, seed_portal, provider)
    manager = make_manager(chat_session_quota=5, chat_portal_quota=50)
    token = manager.open_session(portal.slug)["token"]
    manager.send_message(token, LANG_QUESTION, timeout=5)

    def broken_history(_db, _session_id):
        raise RuntimeError("history read failed")

    monkeypatch.setattr(manager, "_history", broken_history)
    with pytest.raises(RuntimeError):
        manager.send_message(token, LANG_QUESTION, timeout=5)
    assert rate_limit.remaining(db, "session", token) == 4
    assert rate_limit.remaining(db, "portal", str(portal.id)) == 49
