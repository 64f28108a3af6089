"""Entitlement check (subscription capability), consumed as a boolean."""
from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.document import UserEntitlement
from apps.backend.services.errors import CapabilityDeniedError

PORTAL_CAPABILITY = "portal"


class EntitlementChecker(Protocol):
    def has_capability(self, user_id: str, capability: str) -> bool: ...


class DbEntitlementChecker:
    def __init__(self, db: Session) -> None:
        self.db = db

    def has_capability(self, user_id: str, capability: str) -> bool:
        if not get_settings().entitlements_enforced:
            return True
        if not user_id:
            return False
        now = datetime.utcnow()
        row = self.db.execute(
            select(UserEntitlement.id).where(
                UserEntitlement.user_id == str(user_id),
                UserEntitlement.capability == capability,
                or_(UserEntitlement.expires_at.is_(None), UserEntitlement.expires_at > now),
            ).limit(1)
        ).first()
        return row is not None


def grant_capability(db: Session, user_id: str, capability: str = PORTAL_CAPABILITY, expires_at: datetime | None = None) -> UserEntitlement:
    row = UserEntitlement(user_id=str(user_id), capability=capability, expires_at=expires_at)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def require_capability(checker: EntitlementChecker, user_id: str, capability: str = PORTAL_CAPABILITY) -> None:
    if not checker.has_capability(user_id, capability):
        raise CapabilityDeniedError(f"{capability}_not_entitled")
