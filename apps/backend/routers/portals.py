"""Owner endpoints: portal configuration, deployments, chat analytics."""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from apps.backend.auth import get_current_user_id
from apps.backend.deps import get_analytics, get_chat, get_db
from apps.backend.services import deployment
from apps.backend.services.analytics import AnalyticsEmitter
from apps.backend.services.chat import ChatSessionManager, get_chat_analytics
from apps.backend.services.document_source import save_structured_document
from apps.backend.services.portals import (
    create_portal,
    get_owned_portal,
    portal_to_dict,
    public_portal_to_dict,
    record_view,
    resume_portal,
    suspend_portal,
    update_portal,
)

router = APIRouter()


class DocumentCreateRequest(BaseModel):
    title: str | None = None
    sections: list[dict[str, Any]]


class PortalCreateRequest(BaseModel):
    document_id: int
    name: str = Field(min_length=1, max_length=128)
    visibility: str = "public"
    enabled_sections: list[str] | None = None
    theme: str | None = None
    feature_flags: dict[str, Any] | None = None
    chat_settings: dict[str, Any] | None = None


class PortalUpdateRequest(BaseModel):
    name: str | None = None
    visibility: str | None = None
    enabled_sections: list[str] | None = None
    theme: str | None = None
    feature_flags: dict[str, Any] | None = None
    chat_settings: dict[str, Any] | None = None


@router.post("/documents", status_code=201)
def create_document(
    data: DocumentCreateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    doc = save_structured_document(db, user_id, data.sections, title=data.title)
    return {"id": doc.id, "title": doc.title, "sections": len(doc.sections or [])}


@router.post("/portals", status_code=201)
def create(
    data: PortalCreateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    portal = create_portal(
        db,
        user_id,
        data.document_id,
        data.name,
        visibility=data.visibility,
        enabled_sections=data.enabled_sections,
        theme=data.theme,
        feature_flags=data.feature_flags,
        chat_settings=data.chat_settings,
    )
    return portal_to_dict(portal)


@router.get("/portals/{portal_id}")
def get_portal(
    portal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return portal_to_dict(get_owned_portal(db, portal_id, user_id))


@router.patch("/portals/{portal_id}")
def patch_portal(
    portal_id: int,
    data: PortalUpdateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    changes = data.model_dump(exclude_unset=True)
    return portal_to_dict(update_portal(db, portal_id, user_id, changes))


@router.post("/portals/{portal_id}/deployments", status_code=202)
def start_deployment(
    portal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    analytics: AnalyticsEmitter = Depends(get_analytics),
):
    run_id = deployment.start_deployment(db, portal_id, user_id=user_id, analytics=analytics)
    run = deployment.get_status(db, run_id, user_id=user_id)
    return deployment.run_to_dict(run)


@router.get("/portals/{portal_id}/deployments")
def list_deployments(
    portal_id: int,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    runs = deployment.list_runs(db, portal_id, user_id=user_id, limit=limit)
    return {"items": [deployment.run_to_dict(r) for r in runs]}


@router.get("/deployments/{run_id}")
def get_deployment(
    run_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return deployment.run_to_dict(deployment.get_status(db, run_id, user_id=user_id))


@router.post("/deployments/{run_id}/cancel")
def cancel_deployment(
    run_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return deployment.run_to_dict(deployment.cancel(db, run_id, user_id=user_id))


@router.post("/portals/{portal_id}/suspend")
def suspend(
    portal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    chat: ChatSessionManager = Depends(get_chat),
):
    portal = suspend_portal(db, portal_id, user_id)
    ended = chat.end_sessions_for_portal(portal_id, reason="suspended")
    return {**portal_to_dict(portal), "sessions_ended": ended}


@router.post("/portals/{portal_id}/resume")
def resume(
    portal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    return portal_to_dict(resume_portal(db, portal_id, user_id))


@router.get("/portals/{portal_id}/chat/analytics")
def chat_analytics(
    portal_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    get_owned_portal(db, portal_id, user_id)
    return get_chat_analytics(db, portal_id)


@router.get("/public/portals/{slug}")
def public_portal(
    slug: str,
    db: Session = Depends(get_db),
    analytics: AnalyticsEmitter = Depends(get_analytics),
):
    portal = record_view(db, slug)
    analytics.emit("portal_viewed", {"portal_id": portal.id})
    return public_portal_to_dict(portal)
