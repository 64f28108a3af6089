"""Deployment orchestrator: phase state machine for portal (re)generation.

Run lifecycle:
  INITIALIZING -> PROCESSING_DOCUMENT -> GENERATING_EMBEDDINGS -> PREPARING_CONTENT
  -> UPLOADING_ASSETS -> BUILDING -> DEPLOYING -> TESTING -> COMPLETED,
  FAILED from any non-terminal phase.

Записи run меняются только условными UPDATE с `phase NOT IN terminal`: отмена
из API и воркер не перетирают друг друга, терминальный run неизменяем.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.backend.config import Settings, get_settings
from apps.backend.database import get_session_factory
from apps.backend.models.deployment import PHASES, TERMINAL_PHASES, DeploymentRun
from apps.backend.models.portal import Portal
from apps.backend.services.analytics import AnalyticsEmitter
from apps.backend.services.deploy_target import DeployTarget, get_deploy_target
from apps.backend.services.document_source import get_structured_document
from apps.backend.services.embedding_pipeline import (
    generate_embeddings,
    retire_generations,
    store_chunks,
)
from apps.backend.services.entitlements import DbEntitlementChecker, EntitlementChecker, require_capability
from apps.backend.services.errors import (
    FatalDeploymentError,
    NotFoundError,
    OperationCancelled,
    PhaseTimeoutError,
    PortalEngineError,
    StateConflictError,
    TransientDependencyError,
    ValidationError,
)
from apps.backend.services.llm_client import LLMProvider, get_llm_provider
from apps.backend.services.portals import get_owned_portal, set_status
from apps.backend.services.retry import RetryPolicy
from apps.backend.services.site_content import build_site_files, filter_sections
from apps.backend.services.vector_store import ChunkFilters, SqlVectorStore

logger = logging.getLogger(__name__)

WORK_PHASES = PHASES[:8]

# progress at phase entry; fixed table keeps progress monotonic across retries
PHASE_PROGRESS: dict[str, int] = {
    "INITIALIZING": 0,
    "PROCESSING_DOCUMENT": 10,
    "GENERATING_EMBEDDINGS": 20,
    "PREPARING_CONTENT": 50,
    "UPLOADING_ASSETS": 60,
    "BUILDING": 70,
    "DEPLOYING": 85,
    "TESTING": 92,
    "COMPLETED": 100,
}

CONFLICT_MODES = ("reject", "queue")
_START_ATTEMPTS = 3

_PHASE_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="deploy-phase")


def _now() -> datetime:
    return datetime.utcnow()


def _not_terminal():
    return DeploymentRun.phase.not_in(TERMINAL_PHASES)


def enqueue_deployment(run_id: int) -> None:
    from redis import Redis
    from rq import Queue

    s = get_settings()
    r = Redis(host=s.redis_host, port=s.redis_port)
    q = Queue(s.rq_deploy_queue_name or "deploy", connection=r)
    job_timeout = max(300, int(s.deploy_job_timeout_seconds or 3600))
    q.enqueue("apps.worker.jobs.process_deployment_run", run_id, job_timeout=job_timeout)


# --- owner-facing operations -------------------------------------------------


def _active_run(db: Session, portal_id: int) -> DeploymentRun | None:
    return db.execute(
        select(DeploymentRun).where(DeploymentRun.active_portal_id == portal_id)
    ).scalars().first()


def _next_run_number(db: Session, portal_id: int) -> int:
    cur = db.execute(
        select(func.max(DeploymentRun.run_number)).where(DeploymentRun.portal_id == portal_id)
    ).scalar()
    return int(cur or 0) + 1


def start_deployment(
    db: Session,
    portal_id: int,
    *,
    user_id: str | None = None,
    checker: EntitlementChecker | None = None,
    enqueue: Callable[[int], None] | None = None,
    conflict_mode: str | None = None,
    analytics: AnalyticsEmitter | None = None,
) -> int:
    """Create a run and hand it to the worker. Returns the run id.

    При уже идущем run: reject -> StateConflictError, queue -> флаг
    redeploy_requested и id текущего run (следующий стартует после него).
    """
    mode = conflict_mode or get_settings().deploy_conflict_mode or "reject"
    if mode not in CONFLICT_MODES:
        raise ValidationError(f"conflict_mode_invalid: {mode}")
    portal = get_owned_portal(db, portal_id, user_id)
    if portal.status == "SUSPENDED":
        raise StateConflictError("portal_suspended")
    require_capability(checker or DbEntitlementChecker(db), portal.user_id)

    run: DeploymentRun | None = None
    for _attempt in range(_START_ATTEMPTS):
        candidate = DeploymentRun(
            portal_id=portal_id,
            run_number=_next_run_number(db, portal_id),
            phase="INITIALIZING",
            progress=0,
            operations=[],
            resource_usage={},
            active_portal_id=portal_id,
        )
        db.add(candidate)
        try:
            db.commit()
            run = candidate
            break
        except IntegrityError:
            db.rollback()
        in_flight = _active_run(db, portal_id)
        if in_flight is None:
            # lost the run_number race to a run that already finished
            continue
        if mode == "queue":
            db.execute(
                update(Portal).where(Portal.id == portal_id).values(redeploy_requested=True)
            )
            db.commit()
            logger.info("deployment_queued portal_id=%s behind_run_id=%s", portal_id, in_flight.id)
            return int(in_flight.id)
        raise StateConflictError(f"deployment_in_progress run_id={in_flight.id}")
    if run is None:
        raise StateConflictError("deployment_start_contended")

    portal = db.get(Portal, portal_id)
    db.refresh(portal)
    portal.active_run_id = run.id
    portal.redeploy_requested = False
    if portal.status in ("DRAFT", "FAILED", "EXPIRED"):
        set_status(portal, "GENERATING")
    db.add(portal)
    db.commit()
    logger.info("deployment_started portal_id=%s run_id=%s run_number=%s", portal_id, run.id, run.run_number)
    if analytics is not None:
        analytics.emit("deployment_started", {"portal_id": portal_id, "run_id": run.id})

    enqueue = enqueue or enqueue_deployment
    try:
        enqueue(int(run.id))
    except Exception:
        # run stays INITIALIZING; the watchdog re-enqueues stale runs
        logger.exception("deployment_enqueue_failed run_id=%s", run.id)
    return int(run.id)


def get_status(db: Session, run_id: int, *, user_id: str | None = None) -> DeploymentRun:
    run = db.get(DeploymentRun, run_id)
    if not run:
        raise NotFoundError("run_not_found")
    if user_id is not None:
        get_owned_portal(db, run.portal_id, user_id)
    db.refresh(run)
    return run


def list_runs(db: Session, portal_id: int, *, user_id: str | None = None, limit: int = 50) -> list[DeploymentRun]:
    get_owned_portal(db, portal_id, user_id)
    return list(
        db.execute(
            select(DeploymentRun)
            .where(DeploymentRun.portal_id == portal_id)
            .order_by(DeploymentRun.run_number.desc())
            .limit(max(1, min(limit, 200)))
        ).scalars().all()
    )


def cancel(
    db: Session,
    run_id: int,
    *,
    user_id: str | None = None,
    enqueue: Callable[[int], None] | None = None,
    target: DeployTarget | None = None,
) -> DeploymentRun:
    """Immediate FAILED with a `cancelled` record; the worker notices the flag cooperatively."""
    run = get_status(db, run_id, user_id=user_id)
    record = OperationCancelled("cancelled_by_owner").to_record(run.phase)
    now = _now()
    res = db.execute(
        update(DeploymentRun)
        .where(DeploymentRun.id == run_id, _not_terminal())
        .values(
            phase="FAILED",
            cancel_requested=True,
            error_json=record,
            active_portal_id=None,
            finished_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if (res.rowcount or 0) != 1:
        raise StateConflictError("run_already_terminal")
    logger.info("deployment_cancelled run_id=%s phase=%s", run_id, record.get("phase"))
    _discard_generation(db, run.portal_id, run_id, target)
    settle_failed_portal(db, run.portal_id, run_id, record, enqueue=enqueue)
    db.refresh(run)
    return run


def _discard_generation(db: Session, portal_id: int, run_id: int, target: DeployTarget | None) -> None:
    portal = db.get(Portal, portal_id)
    if portal is None:
        return
    SqlVectorStore(db).delete(ChunkFilters(user_id=portal.user_id, portal_id=portal_id, run_id=run_id))
    try:
        (target or get_deploy_target()).discard(run_id)
    except Exception:
        logger.exception("deployment_discard_failed run_id=%s", run_id)


def settle_failed_portal(
    db: Session,
    portal_id: int,
    run_id: int,
    record: dict,
    *,
    enqueue: Callable[[int], None] | None = None,
) -> None:
    portal = db.get(Portal, portal_id)
    if portal is None:
        return
    db.refresh(portal)
    if portal.active_run_id != run_id:
        return
    portal.active_run_id = None
    portal.error_json = record
    # a portal still serving an earlier generation stays ACTIVE
    if portal.status == "GENERATING":
        set_status(portal, "FAILED")
    follow_up = bool(portal.redeploy_requested)
    portal.redeploy_requested = False
    db.add(portal)
    db.commit()
    if follow_up:
        _start_follow_up(db, portal_id, enqueue)


def _start_follow_up(db: Session, portal_id: int, enqueue: Callable[[int], None] | None) -> None:
    try:
        run_id = start_deployment(db, portal_id, enqueue=enqueue, conflict_mode="reject")
        logger.info("deployment_follow_up_started portal_id=%s run_id=%s", portal_id, run_id)
    except PortalEngineError as e:
        logger.warning("deployment_follow_up_skipped portal_id=%s code=%s", portal_id, e.code)


def run_to_dict(run: DeploymentRun) -> dict:
    return {
        "id": run.id,
        "portal_id": run.portal_id,
        "run_number": run.run_number,
        "phase": run.phase,
        "progress": run.progress,
        "operations": run.operations or [],
        "retry_count": run.retry_count or 0,
        "resource_usage": run.resource_usage or {},
        "error": run.error_json,
        "cancel_requested": bool(run.cancel_requested),
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "updated_at": run.updated_at.isoformat() if run.updated_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


# --- execution ----------------------------------------------------------------


@dataclass
class RunContext:
    run_id: int
    portal_id: int
    user_id: str
    slug: str
    name: str
    document_id: int
    previous_run_id: int | None
    sections: list[dict[str, Any]] = field(default_factory=list)
    files: dict[str, bytes] = field(default_factory=dict)
    preview_url: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def add_usage(self, counters: dict[str, Any] | None) -> None:
        for k, v in (counters or {}).items():
            if isinstance(v, (int, float)):
                self.usage[k] = int(self.usage.get(k, 0) + v)


class CancelProbe:
    """Reads cancel_requested from the record store at most once per poll interval."""

    def __init__(self, session_factory, run_id: int, interval: float) -> None:
        self._factory = session_factory
        self._run_id = run_id
        self._interval = max(0.0, float(interval))
        self._last = 0.0
        self._cancelled = False
        self._lock = threading.Lock()

    def __call__(self) -> bool:
        with self._lock:
            if self._cancelled:
                return True
            now = time.monotonic()
            if self._last and now - self._last < self._interval:
                return False
            self._last = now
            with self._factory() as db:
                row = db.execute(
                    select(DeploymentRun.cancel_requested, DeploymentRun.phase).where(DeploymentRun.id == self._run_id)
                ).first()
            if row is None or row[0] or row[1] in TERMINAL_PHASES:
                self._cancelled = True
            return self._cancelled


class DeploymentRunner:
    def __init__(
        self,
        session_factory=None,
        *,
        provider: LLMProvider | None = None,
        target: DeployTarget | None = None,
        analytics: AnalyticsEmitter | None = None,
        settings: Settings | None = None,
        enqueue: Callable[[int], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self._provider = provider
        self.target = target or get_deploy_target()
        self.analytics = analytics
        self.settings = settings or get_settings()
        self.enqueue = enqueue
        self.sleep = sleep
        self._handlers: dict[str, Callable[[RunContext, Callable[[], bool]], None]] = {
            "INITIALIZING": self._initialize,
            "PROCESSING_DOCUMENT": self._process_document,
            "GENERATING_EMBEDDINGS": self._generate_embeddings,
            "PREPARING_CONTENT": self._prepare_content,
            "UPLOADING_ASSETS": self._upload_assets,
            "BUILDING": self._build,
            "DEPLOYING": self._deploy,
            "TESTING": self._test,
        }

    @property
    def provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = get_llm_provider()
        return self._provider

    def phase_timeout(self, phase: str) -> float:
        s = self.settings
        overrides = s.phase_timeouts or {}
        return float(overrides.get(phase) or s.phase_timeout_seconds or 300)

    def _retry_policy(self) -> RetryPolicy:
        s = self.settings
        return RetryPolicy(
            max_attempts=max(1, int(s.deploy_max_retries) + 1),
            base_delay=float(s.deploy_backoff_base_seconds),
            max_delay=float(s.deploy_backoff_max_seconds),
            sleep=self.sleep,
        )

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.analytics is not None:
            self.analytics.emit(event_type, payload)

    # record updates

    def _guarded_update(self, run_id: int, **values) -> bool:
        values.setdefault("updated_at", _now())
        with self.session_factory() as db:
            res = db.execute(
                update(DeploymentRun)
                .where(DeploymentRun.id == run_id, _not_terminal())
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return (res.rowcount or 0) == 1

    def _load_operations(self, run_id: int) -> list[dict]:
        with self.session_factory() as db:
            ops = db.execute(select(DeploymentRun.operations).where(DeploymentRun.id == run_id)).scalar()
        return [dict(o) for o in (ops or [])]

    def _enter_phase(self, ctx: RunContext, phase: str) -> None:
        ops = self._load_operations(ctx.run_id)
        ops.append({"name": phase, "status": "running", "started_at": _now().isoformat(), "finished_at": None, "message": None})
        ok = self._guarded_update(ctx.run_id, phase=phase, progress=PHASE_PROGRESS[phase], operations=ops)
        if not ok:
            raise OperationCancelled("run_no_longer_active")
        logger.info("deployment_phase_started run_id=%s phase=%s", ctx.run_id, phase)

    def _close_operation(self, ops: list[dict], status: str, message: str | None = None) -> list[dict]:
        if ops and ops[-1].get("status") == "running":
            ops[-1]["status"] = status
            ops[-1]["finished_at"] = _now().isoformat()
            ops[-1]["message"] = message
        return ops

    def _finish_phase(self, ctx: RunContext, phase: str) -> None:
        ops = self._close_operation(self._load_operations(ctx.run_id), "completed")
        ok = self._guarded_update(ctx.run_id, operations=ops, resource_usage=dict(ctx.usage))
        if not ok:
            raise OperationCancelled("run_no_longer_active")

    def _record_retry(self, ctx: RunContext, phase: str, attempt: int, exc: BaseException) -> None:
        ops = self._close_operation(self._load_operations(ctx.run_id), "retrying", f"attempt {attempt}: {str(exc)[:200]}")
        ops.append({"name": phase, "status": "running", "started_at": _now().isoformat(), "finished_at": None, "message": None})
        self._guarded_update(ctx.run_id, operations=ops, retry_count=DeploymentRun.retry_count + 1)
        logger.warning("deployment_phase_retry run_id=%s phase=%s attempt=%s error=%s", ctx.run_id, phase, attempt, str(exc)[:200])

    # execution

    def _load_context(self, run_id: int) -> RunContext | None:
        with self.session_factory() as db:
            run = db.get(DeploymentRun, run_id)
            if not run:
                logger.warning("deployment_run_missing run_id=%s", run_id)
                return None
            if run.is_terminal:
                logger.info("deployment_run_skip_terminal run_id=%s phase=%s", run_id, run.phase)
                return None
            portal = db.get(Portal, run.portal_id)
            return RunContext(
                run_id=run.id,
                portal_id=portal.id,
                user_id=portal.user_id,
                slug=portal.slug,
                name=portal.name,
                document_id=portal.document_id,
                previous_run_id=portal.current_run_id,
                usage=dict(run.resource_usage or {}),
            )

    def _run_phase(self, ctx: RunContext, phase: str, probe: CancelProbe) -> None:
        handler = self._handlers[phase]
        timeout = self.phase_timeout(phase)

        def attempt() -> None:
            if probe():
                raise OperationCancelled("cancelled")
            abandoned = threading.Event()

            def should_stop() -> bool:
                return abandoned.is_set() or probe()

            fut = _PHASE_EXECUTOR.submit(handler, ctx, should_stop)
            try:
                fut.result(timeout=timeout)
            except FutureTimeoutError:
                abandoned.set()
                fut.cancel()
                # the next attempt reuses the run directory: never overlap with the old handler
                done, _ = wait([fut], timeout=max(0.0, float(self.settings.phase_abandon_grace_seconds)))
                if not done:
                    logger.error("deployment_phase_stuck run_id=%s phase=%s", ctx.run_id, phase)
                    raise FatalDeploymentError(f"{phase.lower()}_did_not_stop after timeout", code="phase_timeout")
                raise PhaseTimeoutError(f"{phase.lower()}_timeout after {timeout:.0f}s")

        self._retry_policy().run(
            attempt,
            on_retry=lambda n, exc: self._record_retry(ctx, phase, n, exc),
        )

    def run(self, run_id: int) -> str:
        """Execute all phases of a run; returns the terminal phase reached (or the current one if skipped)."""
        ctx = self._load_context(run_id)
        if ctx is None:
            return "SKIPPED"
        probe = CancelProbe(self.session_factory, run_id, self.settings.cancel_poll_interval_seconds)
        for phase in WORK_PHASES:
            try:
                self._enter_phase(ctx, phase)
                self._run_phase(ctx, phase, probe)
                self._finish_phase(ctx, phase)
            except OperationCancelled:
                self._on_cancelled(ctx, phase)
                return "FAILED"
            except PortalEngineError as e:
                self._fail(ctx, phase, e)
                return "FAILED"
            except Exception as e:
                logger.exception("deployment_phase_crashed run_id=%s phase=%s", run_id, phase)
                self._fail(ctx, phase, FatalDeploymentError(f"unexpected: {str(e)[:300]}"))
                return "FAILED"
        return self._complete(ctx)

    # phase handlers

    def _initialize(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        if not ctx.slug or not ctx.name:
            raise FatalDeploymentError("portal_missing_slug_or_name")
        with self.session_factory() as db:
            require_capability(DbEntitlementChecker(db), ctx.user_id)

    def _process_document(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        with self.session_factory() as db:
            try:
                sections = get_structured_document(db, ctx.document_id)
            except PortalEngineError as e:
                raise FatalDeploymentError(e.detail, code=e.code) from e
            portal = db.get(Portal, ctx.portal_id)
            enabled = list(portal.enabled_sections or [])
        sections = filter_sections(sections, enabled)
        if not sections:
            raise FatalDeploymentError("document_has_no_enabled_sections", code="empty_document")
        ctx.sections = sections
        ctx.add_usage({"sections": len(sections)})

    def _generate_embeddings(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        s = self.settings
        result = generate_embeddings(
            ctx.user_id,
            ctx.sections,
            self.provider,
            max_tokens=s.chunk_tokens,
            overlap=s.chunk_overlap_tokens,
            retry=RetryPolicy(max_attempts=s.embed_max_attempts, base_delay=0.5, sleep=self.sleep),
            call_timeout=float(s.embed_timeout_seconds),
            should_stop=should_stop,
        )
        if not result.chunks:
            raise TransientDependencyError("no_chunks_embedded", code="embedding_unavailable")
        if should_stop():
            raise OperationCancelled("cancelled")
        with self.session_factory() as db:
            stored = store_chunks(SqlVectorStore(db), ctx.user_id, ctx.portal_id, ctx.run_id, result)
        ctx.warnings.extend(result.warnings)
        ctx.add_usage({"chunks": stored, "embed_calls": result.embed_calls, "chunks_dropped": len(result.dropped)})

    def _prepare_content(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        with self.session_factory() as db:
            portal = db.get(Portal, ctx.portal_id)
            ctx.files = build_site_files(portal, ctx.sections)

    def _upload_assets(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        ctx.add_usage(self.target.upload_assets(ctx.run_id, ctx.files, should_stop))

    def _build(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        ctx.add_usage(self.target.build(ctx.run_id, should_stop))

    def _deploy(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        ctx.preview_url = self.target.deploy(ctx.run_id)

    def _test(self, ctx: RunContext, should_stop: Callable[[], bool]) -> None:
        if not ctx.preview_url:
            raise FatalDeploymentError("nothing_deployed")
        if not self.target.health_check(ctx.preview_url, expect=ctx.name):
            raise TransientDependencyError("health_check_failed", code="health_check_failed")

    # terminal transitions

    def _complete(self, ctx: RunContext) -> str:
        now = _now()
        ops = self._load_operations(ctx.run_id)
        ops.append({"name": "COMPLETED", "status": "completed", "started_at": now.isoformat(), "finished_at": now.isoformat(), "message": "; ".join(ctx.warnings) or None})
        with self.session_factory() as db:
            res = db.execute(
                update(DeploymentRun)
                .where(DeploymentRun.id == ctx.run_id, _not_terminal())
                .values(
                    phase="COMPLETED",
                    progress=100,
                    operations=ops,
                    resource_usage=dict(ctx.usage),
                    active_portal_id=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if (res.rowcount or 0) != 1:
                db.rollback()
                self._on_cancelled(ctx, "TESTING")
                return "FAILED"
            try:
                url = self.target.promote(ctx.slug, ctx.run_id)
            except Exception as e:
                db.rollback()
                logger.exception("deployment_promote_failed run_id=%s", ctx.run_id)
                self._fail(ctx, "TESTING", FatalDeploymentError(f"promote_failed: {str(e)[:200]}"))
                return "FAILED"
            portal = db.get(Portal, ctx.portal_id)
            portal.current_run_id = ctx.run_id
            portal.deployed_at = now
            portal.url = url
            portal.error_json = None
            if portal.active_run_id == ctx.run_id:
                portal.active_run_id = None
            # SUSPENDED or EXPIRED portals keep their status; the new generation waits behind it
            if portal.status in ("GENERATING", "ACTIVE"):
                set_status(portal, "ACTIVE")
            follow_up = bool(portal.redeploy_requested)
            portal.redeploy_requested = False
            db.add(portal)
            db.commit()

            retire_generations(SqlVectorStore(db), ctx.user_id, ctx.portal_id, ctx.run_id)
            if ctx.previous_run_id and ctx.previous_run_id != ctx.run_id:
                self.target.discard(ctx.previous_run_id)
            logger.info("deployment_completed run_id=%s portal_id=%s url=%s", ctx.run_id, ctx.portal_id, url)
            self._emit("deployment_completed", {"portal_id": ctx.portal_id, "run_id": ctx.run_id, **ctx.usage})
            if follow_up:
                _start_follow_up(db, ctx.portal_id, self.enqueue)
        return "COMPLETED"

    def _fail(self, ctx: RunContext, phase: str, exc: PortalEngineError) -> None:
        record = exc.to_record(phase)
        ops = self._close_operation(self._load_operations(ctx.run_id), "failed", record["message"])
        ok = self._guarded_update(
            ctx.run_id,
            phase="FAILED",
            operations=ops,
            error_json=record,
            resource_usage=dict(ctx.usage),
            active_portal_id=None,
            finished_at=_now(),
        )
        logger.warning("deployment_phase_failed run_id=%s phase=%s code=%s retryable=%s", ctx.run_id, phase, exc.code, exc.retryable)
        with self.session_factory() as db:
            _discard_generation(db, ctx.portal_id, ctx.run_id, self.target)
            if ok:
                settle_failed_portal(db, ctx.portal_id, ctx.run_id, record, enqueue=self.enqueue)
        self._emit("deployment_failed", {"portal_id": ctx.portal_id, "run_id": ctx.run_id, "phase": phase, "code": exc.code})

    def _on_cancelled(self, ctx: RunContext, phase: str) -> None:
        logger.info("deployment_cancel_observed run_id=%s phase=%s", ctx.run_id, phase)
        with self.session_factory() as db:
            _discard_generation(db, ctx.portal_id, ctx.run_id, self.target)
        self._emit("deployment_cancelled", {"portal_id": ctx.portal_id, "run_id": ctx.run_id, "phase": phase})


def run_deployment(run_id: int, **kwargs) -> str:
    return DeploymentRunner(**kwargs).run(run_id)
