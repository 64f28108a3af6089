"""Quota counters: exact boundary, no negative values, window reset, in-flight slots."""
import threading
from datetime import datetime, timedelta

import pytest

from apps.backend.models.rate_limit import RateLimitCounter
from apps.backend.services import rate_limit
from apps.backend.services.errors import RateLimitExceededError

NOW = datetime(2026, 1, 1, 12, 0, 0)


def test_quota_plus_one_fails_exactly_once(db):
    errors = 0
    for _ in range(6):
        try:
            rate_limit.consume(db, "session", "s1", quota=5, window_seconds=60, now=NOW)
        except RateLimitExceededError as exc:
            errors += 1
            assert exc.scope == "session"
            assert exc.reset_at == NOW + timedelta(seconds=60)
            assert exc.retry_after_seconds(NOW) == 60
    assert errors == 1
    assert rate_limit.remaining(db, "session", "s1", now=NOW) == 0


def test_counter_never_goes_negative(db):
    for _ in range(3):
        rate_limit.consume(db, "session", "s2", quota=3, window_seconds=60, now=NOW)
    for _ in range(5):
        with pytest.raises(RateLimitExceededError):
            rate_limit.consume(db, "session", "s2", quota=3, window_seconds=60, now=NOW)
    row = db.get(RateLimitCounter, ("session", "s2"))
    db.refresh(row)
    assert row.remaining == 0


def test_window_reset_restores_quota(db):
    for _ in range(2):
        rate_limit.consume(db, "portal", "7", quota=2, window_seconds=30, now=NOW)
    with pytest.raises(RateLimitExceededError):
        rate_limit.consume(db, "portal", "7", quota=2, window_seconds=30, now=NOW)
    later = NOW + timedelta(seconds=31)
    assert rate_limit.remaining(db, "portal", "7", now=later) == 2
    rate_limit.consume(db, "portal", "7", quota=2, window_seconds=30, now=later)
    assert rate_limit.remaining(db, "portal", "7", now=later) == 1


def test_refund_is_capped_by_quota(db):
    rate_limit.consume(db, "session", "s3", quota=2, window_seconds=60, now=NOW)
    rate_limit.refund(db, "session", "s3")
    rate_limit.refund(db, "session", "s3")
    assert rate_limit.remaining(db, "session", "s3", now=NOW) == 2


def test_zero_quota_means_unlimited(db):
    for _ in range(50):
        rate_limit.consume(db, "session", "free", quota=0, window_seconds=60, now=NOW)
    assert rate_limit.remaining(db, "session", "free", now=NOW) is None


def test_in_flight_slots(db):
    assert rate_limit.acquire_slot(db, 3, 2, now=NOW) is True
    assert rate_limit.acquire_slot(db, 3, 2, now=NOW) is True
    with pytest.raises(RateLimitExceededError) as exc_info:
        rate_limit.acquire_slot(db, 3, 2, now=NOW)
    assert exc_info.value.scope == "portal_concurrency"
    rate_limit.release_slot(db, 3)
    assert rate_limit.acquire_slot(db, 3, 2, now=NOW) is True
    for _ in range(5):
        rate_limit.release_slot(db, 3)
    row = db.get(RateLimitCounter, ("portal", "3"))
    db.refresh(row)
    assert row.in_flight == 0
    assert rate_limit.acquire_slot(db, 3, 0, now=NOW) is False


@pytest.mark.timeout(30)
def test_concurrent_consumers_respect_quota(file_session_factory):
    quota = 10
    workers = 6
    per_worker = 4
    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(workers)

    def worker():
        sess = file_session_factory()
        try:
            barrier.wait()
            for _ in range(per_worker):
                try:
                    rate_limit.consume(sess, "portal", "42", quota=quota, window_seconds=300, now=NOW)
                    ok = True
                except RateLimitExceededError:
                    ok = False
                with lock:
                    results.append(ok)
        finally:
            sess.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == workers * per_worker
    assert results.count(True) == quota
    sess = file_session_factory()
    try:
        assert rate_limit.remaining(sess, "portal", "42", now=NOW) == 0
    finally:
        sess.close()
