"""Health и ready endpoints."""
import logging
import os

import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.deps import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "cv-portal-engine"}


def _check_redis() -> str:
    s = get_settings()
    redis.Redis(host=s.redis_host, port=s.redis_port, socket_connect_timeout=2).ping()
    return "ok"


def _check_storage() -> str:
    root = get_settings().portal_storage_path
    os.makedirs(root, exist_ok=True)
    if not os.access(root, os.W_OK):
        raise PermissionError(f"{root} is not writable")
    return "ok"


@router.get("/ready")
def ready(db: Session = Depends(get_db)):
    """DB, очередь деплоя и каталог сайтов: без них деплой и чат не работают."""
    checks: dict[str, str] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["db"] = "ok"
    except Exception as e:
        checks["db"] = f"error: {e}"
    for name, probe in (("redis", _check_redis), ("storage", _check_storage)):
        try:
            checks[name] = probe()
        except Exception as e:
            checks[name] = f"error: {e}"
    failed = [k for k, v in checks.items() if v != "ok"]
    if failed:
        logger.warning("readiness_failed components=%s", ",".join(failed))
        return JSONResponse({"status": "error", "checks": checks}, status_code=503)
    return {"status": "ok", "checks": checks}
