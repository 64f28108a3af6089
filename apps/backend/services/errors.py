"""Error taxonomy shared by the deployment, pipeline and chat services."""
from __future__ import annotations

from datetime import datetime


class PortalEngineError(Exception):
    code = "engine_error"
    retryable = False
    remediation = "Try again later or contact support."

    def __init__(self, detail: str = "", *, code: str | None = None, remediation: str | None = None) -> None:
        super().__init__(detail or code or self.code)
        if code:
            self.code = code
        if remediation:
            self.remediation = remediation
        self.detail = detail or self.code

    def to_record(self, phase: str | None = None) -> dict:
        out = {
            "code": self.code,
            "message": self.detail[:500],
            "retryable": bool(self.retryable),
            "remediation": self.remediation,
            "at": datetime.utcnow().isoformat(),
        }
        if phase:
            out["phase"] = phase
        return out


class ValidationError(PortalEngineError):
    code = "validation_error"
    remediation = "Fix the request input and retry."


class NotFoundError(PortalEngineError):
    code = "not_found"
    remediation = "Check the identifier."


class CapabilityDeniedError(PortalEngineError):
    code = "capability_denied"
    remediation = "Upgrade the subscription to enable web portals."


class StateConflictError(PortalEngineError):
    code = "state_conflict"
    remediation = "Wait for the current operation to finish."


class TransientDependencyError(PortalEngineError):
    code = "dependency_unavailable"
    retryable = True
    remediation = "A dependent service is unavailable; the operation will be retried."


class PhaseTimeoutError(TransientDependencyError):
    code = "phase_timeout"


class FatalDeploymentError(PortalEngineError):
    code = "deployment_failed"
    remediation = "Check the source document and portal settings, then start a new deployment."


class GroundingInsufficientError(PortalEngineError):
    """Not a failure: retrieval found nothing above the grounding floor."""

    code = "grounding_insufficient"


class RateLimitExceededError(PortalEngineError):
    code = "rate_limited"
    remediation = "Too many messages; wait until the limit resets."

    def __init__(self, scope: str, reset_at: datetime) -> None:
        super().__init__(f"{scope}_quota_exhausted")
        self.scope = scope
        self.reset_at = reset_at

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        now = now or datetime.utcnow()
        return max(1, int((self.reset_at - now).total_seconds()))


class OperationCancelled(PortalEngineError):
    code = "cancelled"
    remediation = "The deployment was cancelled; start a new one when ready."
