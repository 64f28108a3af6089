"""Analytics emitter: fire-and-forget events, failures are logged and swallowed."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable

from apps.backend.database import get_session_factory
from apps.backend.models.activity_event import ActivityEvent

logger = logging.getLogger(__name__)


def log_activity(db, *, event_type: str, portal_id: int | None = None, payload: dict | None = None) -> None:
    row = ActivityEvent(
        event_type=event_type,
        portal_id=portal_id,
        payload=payload or {},
        created_at=datetime.utcnow(),
    )
    db.add(row)
    db.commit()


class AnalyticsEmitter:
    def __init__(self, session_factory: Callable | None = None, max_workers: int = 2) -> None:
        self._session_factory = session_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analytics")
        self._pending: set[Future] = set()

    def _write(self, event_type: str, payload: dict[str, Any]) -> None:
        factory = self._session_factory or get_session_factory()
        with factory() as db:
            log_activity(db, event_type=event_type, portal_id=payload.get("portal_id"), payload=payload)

    def _run(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self._write(event_type, payload)
        except Exception:
            logger.exception("analytics_emit_failed event_type=%s", event_type)

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        try:
            fut = self._executor.submit(self._run, event_type, dict(payload or {}))
        except Exception:
            logger.exception("analytics_submit_failed event_type=%s", event_type)
            return
        self._pending.add(fut)
        fut.add_done_callback(self._pending.discard)

    def flush(self, timeout: float = 5.0) -> None:
        wait(list(self._pending), timeout=timeout)
