"""Watchdog recovery: stuck runs, lost enqueues, lapsed entitlements."""
from datetime import datetime, timedelta

import pytest

from apps.backend.models.chat import ChatSession
from apps.backend.models.deployment import DeploymentRun
from apps.backend.models.portal import Portal
from apps.backend.services import deploy_watchdog
from apps.backend.services.chat import ChatSessionManager

from conftest import make_settings, publish


def _stuck_run(db, portal, phase: str, *, age_minutes: int = 120, operations=None) -> DeploymentRun:
    old = datetime.utcnow() - timedelta(minutes=age_minutes)
    run = DeploymentRun(
        portal_id=portal.id,
        run_number=1,
        phase=phase,
        progress=0,
        operations=operations if operations is not None else [],
        active_portal_id=portal.id,
        created_at=old,
        updated_at=old,
    )
    db.add(run)
    db.commit()
    portal.active_run_id = run.id
    db.commit()
    return run


@pytest.mark.timeout(10)
def test_lost_enqueue_is_requeued(db, session_factory, seed_portal):
    portal = seed_portal(db, status="GENERATING")
    run = _stuck_run(db, portal, "INITIALIZING")
    queued = []
    out = deploy_watchdog.recover_stuck_runs_once(session_factory, stale_seconds=1800, enqueue=queued.append)
    assert out == {"runs_failed": 0, "runs_requeued": 1}
    assert queued == [run.id]
    db.expire_all()
    run = db.get(DeploymentRun, run.id)
    assert run.phase == "INITIALIZING"
    assert run.updated_at > datetime.utcnow() - timedelta(minutes=1)


@pytest.mark.timeout(10)
def test_stale_run_is_failed_and_portal_settled(db, session_factory, seed_portal):
    portal = seed_portal(db, status="GENERATING")
    run = _stuck_run(db, portal, "BUILDING", operations=[{"name": "BUILDING", "status": "running"}])
    out = deploy_watchdog.recover_stuck_runs_once(session_factory, stale_seconds=1800, enqueue=lambda _id: None)
    assert out["runs_failed"] == 1
    db.expire_all()
    run = db.get(DeploymentRun, run.id)
    assert run.phase == "FAILED"
    assert run.active_portal_id is None
    assert run.error_json["code"] == "phase_timeout"
    assert run.error_json["message"] == "stuck_run_timeout"
    assert run.error_json["phase"] == "BUILDING"
    portal = db.get(Portal, portal.id)
    assert portal.status == "FAILED"
    assert portal.active_run_id is None


@pytest.mark.timeout(10)
def test_failed_requeue_falls_back_to_failure(db, session_factory, seed_portal):
    portal = seed_portal(db, status="GENERATING")
    run = _stuck_run(db, portal, "INITIALIZING")

    def broken(_run_id):
        raise ConnectionError("redis down")

    out = deploy_watchdog.recover_stuck_runs_once(session_factory, stale_seconds=1800, enqueue=broken)
    assert out == {"runs_failed": 1, "runs_requeued": 0}
    db.expire_all()
    assert db.get(DeploymentRun, run.id).phase == "FAILED"


def test_recent_runs_are_left_alone(db, session_factory, seed_portal):
    portal = seed_portal(db, status="GENERATING")
    run = _stuck_run(db, portal, "TESTING", age_minutes=1)
    out = deploy_watchdog.recover_stuck_runs_once(session_factory, stale_seconds=1800, enqueue=lambda _id: None)
    assert out == {"runs_failed": 0, "runs_requeued": 0}
    db.expire_all()
    assert db.get(DeploymentRun, run.id).phase == "TESTING"


@pytest.mark.timeout(10)
def test_unentitled_portals_expire_and_sessions_end(db, session_factory, provider, seed_portal):
    lapsed = publish(db, seed_portal, provider, user_id="owner-lapsed", entitled=False)
    paying = publish(db, seed_portal, provider)
    building = seed_portal(db, user_id="owner-lapsed", entitled=False, status="GENERATING")
    db.add(ChatSession(portal_id=lapsed.id, token="tok-lapsed", is_active=True, message_count=0, referenced_chunk_ids=[]))
    db.commit()

    chat = ChatSessionManager(session_factory, provider=provider, settings=make_settings())
    try:
        out = deploy_watchdog.run_watchdog_once(session_factory, chat=chat, enqueue=lambda _id: None)
    finally:
        chat.shutdown()
    assert out["portals_expired"] == 1

    db.expire_all()
    expired = db.get(Portal, lapsed.id)
    assert expired.status == "EXPIRED"
    assert expired.expired_at is not None
    assert db.get(Portal, paying.id).status == "ACTIVE"
    assert db.get(Portal, building.id).status == "GENERATING"
    sess = db.query(ChatSession).filter(ChatSession.token == "tok-lapsed").one()
    assert sess.is_active is False
    assert sess.end_reason == "expired"
    # expiry is soft: the record and its content stay
    assert expired.current_run_id == 1


def test_expiry_walks_past_the_first_batch(db, session_factory, seed_portal):
    paying = [seed_portal(db, user_id=f"owner-{i}", status="ACTIVE") for i in range(5)]
    lapsed = seed_portal(db, user_id="owner-lapsed", entitled=False, status="ACTIVE")
    assert lapsed.id > max(p.id for p in paying)

    expired = deploy_watchdog.expire_unentitled_portals_once(session_factory, batch_limit=2)
    assert expired == [lapsed.id]
    db.expire_all()
    assert db.get(Portal, lapsed.id).status == "EXPIRED"
    assert all(db.get(Portal, p.id).status == "ACTIVE" for p in paying)
