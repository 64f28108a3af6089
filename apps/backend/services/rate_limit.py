"""Rate limits for chat: per session and per portal.

Counters live in the record store and change only through conditional UPDATEs
(compare-and-decrement), so concurrent messages on several workers cannot both
pass a nearly exhausted quota. quota <= 0 means "no limit".
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.backend.models.rate_limit import RateLimitCounter
from apps.backend.services.errors import RateLimitExceededError

logger = logging.getLogger(__name__)

CONCURRENCY_RETRY_SECONDS = 2


def _where(scope: str, key: str):
    return (RateLimitCounter.scope == scope, RateLimitCounter.key == str(key))


def _try_reset_window(db: Session, scope: str, key: str, quota: int, window_seconds: int, now: datetime) -> bool:
    res = db.execute(
        update(RateLimitCounter)
        .where(*_where(scope, key), RateLimitCounter.reset_at <= now)
        .values(quota=quota, remaining=quota - 1, reset_at=now + timedelta(seconds=window_seconds), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return (res.rowcount or 0) == 1


def _try_decrement(db: Session, scope: str, key: str, now: datetime) -> bool:
    res = db.execute(
        update(RateLimitCounter)
        .where(*_where(scope, key), RateLimitCounter.reset_at > now, RateLimitCounter.remaining > 0)
        .values(remaining=RateLimitCounter.remaining - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return (res.rowcount or 0) == 1


def _try_create(db: Session, scope: str, key: str, quota: int, window_seconds: int, now: datetime) -> bool:
    db.add(RateLimitCounter(
        scope=scope,
        key=str(key),
        quota=max(0, quota),
        remaining=max(0, quota - 1),
        reset_at=now + timedelta(seconds=window_seconds),
        in_flight=0,
        updated_at=now,
    ))
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


def _load(db: Session, scope: str, key: str) -> RateLimitCounter | None:
    row = db.get(RateLimitCounter, (scope, str(key)))
    if row is not None:
        db.refresh(row)
    return row


def consume(
    db: Session,
    scope: str,
    key: str,
    *,
    quota: int,
    window_seconds: int,
    now: datetime | None = None,
) -> None:
    """Take one unit of quota or raise RateLimitExceededError with the window reset time."""
    if not quota or quota <= 0:
        return
    now = now or datetime.utcnow()
    for _attempt in range(3):
        if _try_decrement(db, scope, key, now):
            return
        if _try_reset_window(db, scope, key, quota, window_seconds, now):
            return
        row = _load(db, scope, key)
        if row is None:
            if _try_create(db, scope, key, quota, window_seconds, now):
                return
            continue
        if row.reset_at > now and row.remaining <= 0:
            logger.info("rate_limit_exceeded scope=%s key=%s reset_at=%s", scope, key, row.reset_at.isoformat())
            raise RateLimitExceededError(scope, row.reset_at)
    row = _load(db, scope, key)
    raise RateLimitExceededError(scope, row.reset_at if row else now + timedelta(seconds=window_seconds))


def refund(db: Session, scope: str, key: str) -> None:
    db.execute(
        update(RateLimitCounter)
        .where(*_where(scope, key), RateLimitCounter.remaining < RateLimitCounter.quota)
        .values(remaining=RateLimitCounter.remaining + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def remaining(db: Session, scope: str, key: str, now: datetime | None = None) -> int | None:
    now = now or datetime.utcnow()
    row = _load(db, scope, key)
    if row is None:
        return None
    if row.reset_at <= now:
        return row.quota
    return row.remaining


def acquire_slot(db: Session, portal_id: int, limit: int, now: datetime | None = None) -> bool:
    """In-flight completion slot for the portal. Returns False when no limit applies."""
    if not limit or limit <= 0:
        return False
    now = now or datetime.utcnow()
    key = str(portal_id)
    res = db.execute(
        update(RateLimitCounter)
        .where(*_where("portal", key), RateLimitCounter.in_flight < limit)
        .values(in_flight=RateLimitCounter.in_flight + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if (res.rowcount or 0) == 1:
        return True
    if _load(db, "portal", key) is None:
        # portal quota disabled: the row does not exist yet
        _try_create(db, "portal", key, 0, 0, now)
        return acquire_slot(db, portal_id, limit, now)
    raise RateLimitExceededError("portal_concurrency", now + timedelta(seconds=CONCURRENCY_RETRY_SECONDS))


def release_slot(db: Session, portal_id: int) -> None:
    db.execute(
        update(RateLimitCounter)
        .where(*_where("portal", str(portal_id)), RateLimitCounter.in_flight > 0)
        .values(in_flight=RateLimitCounter.in_flight - 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
