"""Recovery loop: stuck deployment runs, inactive chat sessions, lapsed entitlements."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update

from apps.backend.config import get_settings
from apps.backend.database import get_session_factory
from apps.backend.models.deployment import TERMINAL_PHASES, DeploymentRun
from apps.backend.models.portal import Portal
from apps.backend.services.chat import ChatSessionManager
from apps.backend.services.deployment import settle_failed_portal, enqueue_deployment
from apps.backend.services.entitlements import PORTAL_CAPABILITY, DbEntitlementChecker
from apps.backend.services.errors import PhaseTimeoutError
from apps.backend.services.portals import set_status

logger = logging.getLogger(__name__)
_WATCHDOG_LOCK_KEY = "deploy_watchdog:lock"


def recover_stuck_runs_once(factory, stale_seconds: int = 1800, batch_limit: int = 200, enqueue=None) -> dict:
    """Fail runs with no progress for stale_seconds; re-enqueue runs that never left INITIALIZING."""
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=max(60, int(stale_seconds)))
    enqueue = enqueue or enqueue_deployment
    result = {"runs_failed": 0, "runs_requeued": 0}
    with factory() as db:
        stuck = db.execute(
            select(DeploymentRun).where(
                DeploymentRun.phase.not_in(TERMINAL_PHASES),
                DeploymentRun.updated_at < cutoff,
            ).order_by(DeploymentRun.id).limit(batch_limit)
        ).scalars().all()
        for run in stuck:
            if run.phase == "INITIALIZING" and not run.operations:
                # enqueue was lost; the worker never picked it up
                try:
                    enqueue(int(run.id))
                    db.execute(update(DeploymentRun).where(DeploymentRun.id == run.id).values(updated_at=now))
                    db.commit()
                    result["runs_requeued"] += 1
                    continue
                except Exception:
                    logger.exception("deploy_watchdog_enqueue_failed run_id=%s", run.id)
            record = PhaseTimeoutError("stuck_run_timeout").to_record(run.phase)
            res = db.execute(
                update(DeploymentRun)
                .where(DeploymentRun.id == run.id, DeploymentRun.phase.not_in(TERMINAL_PHASES))
                .values(phase="FAILED", error_json=record, active_portal_id=None, finished_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if (res.rowcount or 0) == 1:
                result["runs_failed"] += 1
                logger.warning("deploy_watchdog_run_failed run_id=%s phase=%s", run.id, run.phase)
                settle_failed_portal(db, run.portal_id, run.id, record, enqueue=enqueue)
    return result


def expire_unentitled_portals_once(factory, batch_limit: int = 200) -> list[int]:
    """Soft-expire portals whose owner lost the portal capability. Never deletes.

    Walks every live portal in id order, batch_limit rows at a time.
    """
    expired: list[int] = []
    last_id = 0
    batch_limit = max(1, int(batch_limit))
    with factory() as db:
        checker = DbEntitlementChecker(db)
        while True:
            portals = db.execute(
                select(Portal)
                .where(Portal.status.in_(("DRAFT", "ACTIVE", "FAILED", "SUSPENDED")), Portal.id > last_id)
                .order_by(Portal.id)
                .limit(batch_limit)
            ).scalars().all()
            if not portals:
                break
            last_id = portals[-1].id
            for portal in portals:
                if checker.has_capability(portal.user_id, PORTAL_CAPABILITY):
                    continue
                set_status(portal, "EXPIRED")
                db.add(portal)
                expired.append(portal.id)
            db.commit()
            if len(portals) < batch_limit:
                break
    for pid in expired:
        logger.info("portal_expired portal_id=%s", pid)
    return expired


def run_watchdog_once(factory=None, chat: ChatSessionManager | None = None, enqueue=None) -> dict:
    s = get_settings()
    factory = factory or get_session_factory()
    chat = chat or ChatSessionManager(factory)
    out = recover_stuck_runs_once(factory, stale_seconds=s.deploy_stale_seconds, enqueue=enqueue)
    out["sessions_expired"] = chat.expire_inactive_sessions()
    expired = expire_unentitled_portals_once(factory)
    for pid in expired:
        chat.end_sessions_for_portal(pid, reason="expired")
    out["portals_expired"] = len(expired)
    return out


def run_watchdog_cycle() -> dict:
    """Single guarded watchdog cycle with Redis lock."""
    s = get_settings()
    try:
        from redis import Redis

        r = Redis(host=s.redis_host, port=s.redis_port)
        lock_ttl = max(30, int((s.deploy_watchdog_interval_seconds or 120) * 0.9))
        if not r.set(_WATCHDOG_LOCK_KEY, "1", nx=True, ex=lock_ttl):
            return {"skipped": "lock_not_acquired"}
    except Exception:
        logger.exception("deploy_watchdog_lock_unavailable")
    try:
        return run_watchdog_once()
    except Exception:
        logger.exception("deploy_watchdog_cycle_failed")
        return {"error": "watchdog_failed"}
