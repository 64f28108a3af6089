"""Error envelope shared by every JSON error response."""
from __future__ import annotations

from typing import Any

from apps.backend.services.errors import PortalEngineError, RateLimitExceededError


def error_envelope(
    *,
    code: str,
    message: str,
    trace_id: str,
    detail: str | None = None,
    **extra: Any,
) -> dict:
    out = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if detail:
        out["detail"] = detail
    out.update(extra)
    # clients that predate `code` read `error`
    out["error"] = code
    return out


def engine_error_envelope(exc: PortalEngineError, trace_id: str) -> dict:
    """Envelope for domain errors: remediation as the message, retry hints for rate limits."""
    extra: dict[str, Any] = {"retryable": bool(exc.retryable)}
    if isinstance(exc, RateLimitExceededError):
        extra["scope"] = exc.scope
        extra["reset_at"] = exc.reset_at.isoformat()
    return error_envelope(code=exc.code, message=exc.remediation, trace_id=trace_id, detail=exc.detail, **extra)
