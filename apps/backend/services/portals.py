"""Portal configuration lifecycle: create/update by the owner, status transitions."""
from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from apps.backend.models.document import SourceDocument
from apps.backend.models.portal import DEFAULT_SECTIONS, PORTAL_STATUSES, PORTAL_VISIBILITY, Portal
from apps.backend.services.errors import NotFoundError, StateConflictError, ValidationError
from apps.backend.services.llm_client import PERSONALITIES

logger = logging.getLogger(__name__)

# allowed status graph; any other transition is a bug or a conflict
PORTAL_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "DRAFT": ("GENERATING", "EXPIRED"),
    "GENERATING": ("ACTIVE", "FAILED", "SUSPENDED", "EXPIRED"),
    "ACTIVE": ("ACTIVE", "SUSPENDED", "EXPIRED"),
    "FAILED": ("GENERATING", "EXPIRED"),
    "SUSPENDED": ("ACTIVE", "DRAFT", "EXPIRED"),
    "EXPIRED": ("GENERATING",),
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_UPDATABLE = ("name", "visibility", "enabled_sections", "theme", "feature_flags", "chat_settings")


def can_transition(current: str, new: str) -> bool:
    return new in PORTAL_TRANSITIONS.get(current, ())


def set_status(portal: Portal, new: str) -> None:
    if new not in PORTAL_STATUSES:
        raise ValidationError(f"unknown_status: {new}")
    if portal.status == new and new != "ACTIVE":
        return
    if not can_transition(portal.status, new):
        raise StateConflictError(f"portal_status_transition {portal.status}->{new}")
    if new == "ACTIVE" and (not portal.deployed_at or not portal.slug):
        raise StateConflictError("portal_not_deployed")
    logger.info("portal_status portal_id=%s %s->%s", portal.id, portal.status, new)
    portal.status = new
    if new == "EXPIRED":
        portal.expired_at = datetime.utcnow()


def slugify(name: str) -> str:
    base = _SLUG_RE.sub("-", (name or "").lower()).strip("-")
    return base[:64] or "portal"


def _unique_slug(db: Session, name: str) -> str:
    base = slugify(name)
    slug = base
    for _ in range(5):
        exists = db.execute(select(Portal.id).where(Portal.slug == slug)).first()
        if not exists:
            return slug
        slug = f"{base}-{secrets.token_hex(3)}"
    raise StateConflictError("slug_unavailable")


_CHAT_SETTING_KEYS = ("temperature", "max_tokens", "system_prompt", "personality", "allowed_topics")


def validate_chat_settings(raw: Any) -> dict[str, Any] | None:
    """Нормализует настройки ассистента; неизвестные ключи и значения вне диапазона отклоняются."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("chat_settings_invalid")
    unknown = set(raw) - set(_CHAT_SETTING_KEYS)
    if unknown:
        raise ValidationError(f"chat_settings_unknown_keys: {','.join(sorted(unknown))}")
    out: dict[str, Any] = {}
    if raw.get("temperature") is not None:
        t = raw["temperature"]
        if isinstance(t, bool) or not isinstance(t, (int, float)) or not 0 <= t <= 2:
            raise ValidationError("chat_temperature_out_of_range")
        out["temperature"] = float(t)
    if raw.get("max_tokens") is not None:
        n = raw["max_tokens"]
        if isinstance(n, bool) or not isinstance(n, int) or not 50 <= n <= 2000:
            raise ValidationError("chat_max_tokens_out_of_range")
        out["max_tokens"] = n
    if raw.get("system_prompt") is not None:
        prompt = raw["system_prompt"]
        if not isinstance(prompt, str) or len(prompt) > 2000:
            raise ValidationError("chat_system_prompt_invalid")
        if prompt.strip():
            out["system_prompt"] = prompt.strip()
    if raw.get("personality") is not None:
        if raw["personality"] not in PERSONALITIES:
            raise ValidationError("chat_personality_invalid")
        out["personality"] = raw["personality"]
    if raw.get("allowed_topics") is not None:
        topics = raw["allowed_topics"]
        if not isinstance(topics, list) or not topics or not all(isinstance(x, str) and x.strip() for x in topics):
            raise ValidationError("chat_allowed_topics_invalid")
        out["allowed_topics"] = [x.strip().lower()[:48] for x in topics][:20]
    return out


def _validate_fields(fields: dict[str, Any]) -> None:
    if "name" in fields:
        name = (fields["name"] or "").strip()
        if not name or len(name) > 128:
            raise ValidationError("name_required")
        fields["name"] = name
    if "visibility" in fields and fields["visibility"] not in PORTAL_VISIBILITY:
        raise ValidationError("visibility_invalid")
    if "enabled_sections" in fields and fields["enabled_sections"] is not None:
        secs = fields["enabled_sections"]
        if not isinstance(secs, list) or not all(isinstance(x, str) for x in secs):
            raise ValidationError("enabled_sections_invalid")
    if "feature_flags" in fields and fields["feature_flags"] is not None and not isinstance(fields["feature_flags"], dict):
        raise ValidationError("feature_flags_invalid")
    if "chat_settings" in fields:
        fields["chat_settings"] = validate_chat_settings(fields["chat_settings"])


def create_portal(
    db: Session,
    user_id: str,
    document_id: int,
    name: str,
    *,
    visibility: str = "public",
    enabled_sections: list[str] | None = None,
    theme: str | None = None,
    feature_flags: dict | None = None,
    chat_settings: dict | None = None,
) -> Portal:
    if not user_id:
        raise ValidationError("missing_user_id")
    fields: dict[str, Any] = {
        "name": name,
        "visibility": visibility,
        "enabled_sections": enabled_sections if enabled_sections is not None else list(DEFAULT_SECTIONS),
        "feature_flags": feature_flags,
        "chat_settings": chat_settings,
    }
    _validate_fields(fields)
    doc = db.get(SourceDocument, document_id)
    if not doc or doc.user_id != str(user_id):
        raise NotFoundError("document_not_found")
    portal = Portal(
        user_id=str(user_id),
        document_id=document_id,
        name=fields["name"],
        slug=_unique_slug(db, fields["name"]),
        status="DRAFT",
        visibility=fields["visibility"],
        enabled_sections=fields["enabled_sections"],
        theme=theme,
        feature_flags=fields["feature_flags"] or {"chat": True},
        chat_settings=fields["chat_settings"],
    )
    db.add(portal)
    db.commit()
    db.refresh(portal)
    logger.info("portal_created portal_id=%s user_id=%s slug=%s", portal.id, user_id, portal.slug)
    return portal


def get_owned_portal(db: Session, portal_id: int, user_id: str | None) -> Portal:
    portal = db.get(Portal, portal_id)
    # чужой портал неотличим от несуществующего
    if not portal or (user_id is not None and portal.user_id != str(user_id)):
        raise NotFoundError("portal_not_found")
    return portal


def update_portal(db: Session, portal_id: int, user_id: str, changes: dict[str, Any]) -> Portal:
    portal = get_owned_portal(db, portal_id, user_id)
    if portal.status == "EXPIRED":
        raise StateConflictError("portal_expired")
    fields = {k: v for k, v in changes.items() if k in _UPDATABLE}
    _validate_fields(fields)
    for key, value in fields.items():
        setattr(portal, key, value)
    db.add(portal)
    db.commit()
    db.refresh(portal)
    return portal


def suspend_portal(db: Session, portal_id: int, user_id: str | None) -> Portal:
    portal = get_owned_portal(db, portal_id, user_id)
    set_status(portal, "SUSPENDED")
    db.add(portal)
    db.commit()
    db.refresh(portal)
    return portal


def resume_portal(db: Session, portal_id: int, user_id: str | None) -> Portal:
    portal = get_owned_portal(db, portal_id, user_id)
    if portal.status != "SUSPENDED":
        raise StateConflictError("portal_not_suspended")
    set_status(portal, "ACTIVE" if portal.current_run_id and portal.deployed_at else "DRAFT")
    db.add(portal)
    db.commit()
    db.refresh(portal)
    return portal


def portal_to_dict(portal: Portal) -> dict:
    return {
        "id": portal.id,
        "user_id": portal.user_id,
        "document_id": portal.document_id,
        "name": portal.name,
        "slug": portal.slug,
        "status": portal.status,
        "visibility": portal.visibility,
        "enabled_sections": portal.enabled_sections or [],
        "theme": portal.theme,
        "feature_flags": portal.feature_flags or {},
        "chat_settings": portal.chat_settings or {},
        "view_count": portal.view_count or 0,
        "session_count": portal.session_count or 0,
        "url": portal.url,
        "error": portal.error_json,
        "current_run_id": portal.current_run_id,
        "active_run_id": portal.active_run_id,
        "created_at": portal.created_at.isoformat() if portal.created_at else None,
        "updated_at": portal.updated_at.isoformat() if portal.updated_at else None,
        "deployed_at": portal.deployed_at.isoformat() if portal.deployed_at else None,
        "expired_at": portal.expired_at.isoformat() if portal.expired_at else None,
    }


def record_view(db: Session, slug: str) -> Portal:
    """Публичная карточка портала: только ACTIVE и не private; счётчик просмотров атомарно."""
    portal = db.execute(select(Portal).where(Portal.slug == str(slug))).scalars().first()
    if not portal or portal.visibility == "private" or portal.status != "ACTIVE":
        raise NotFoundError("portal_not_found")
    db.execute(update(Portal).where(Portal.id == portal.id).values(view_count=Portal.view_count + 1))
    db.commit()
    db.refresh(portal)
    return portal


def public_portal_to_dict(portal: Portal) -> dict:
    return {
        "name": portal.name,
        "slug": portal.slug,
        "url": portal.url,
        "theme": portal.theme,
        "enabled_sections": portal.enabled_sections or [],
        "chat_enabled": portal.chat_enabled(),
        "view_count": portal.view_count or 0,
    }
