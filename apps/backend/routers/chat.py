"""Visitor chat endpoints (anonymous, session token in path)."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.backend.deps import get_chat
from apps.backend.services.chat import ChatSessionManager, message_to_dict

router = APIRouter()


class OpenSessionRequest(BaseModel):
    visitor_id: str | None = None
    language: str = "en"


class MessageRequest(BaseModel):
    text: str


class CloseSessionRequest(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None


@router.post("/{slug}/sessions", status_code=201)
def open_session(
    slug: str,
    data: OpenSessionRequest | None = None,
    chat: ChatSessionManager = Depends(get_chat),
):
    data = data or OpenSessionRequest()
    return chat.open_session(slug, visitor_id=data.visitor_id, language=data.language)


@router.post("/sessions/{token}/messages")
def send_message(
    token: str,
    data: MessageRequest,
    chat: ChatSessionManager = Depends(get_chat),
):
    msg = chat.send_message(token, data.text)
    return message_to_dict(msg)


@router.post("/sessions/{token}/close")
def close_session(
    token: str,
    data: CloseSessionRequest | None = None,
    chat: ChatSessionManager = Depends(get_chat),
):
    data = data or CloseSessionRequest()
    return chat.close_session(token, rating=data.rating, feedback=data.feedback)
