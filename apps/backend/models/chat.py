"""Модели чат-сессий посетителей и сообщений."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    id = Column(Integer, primary_key=True, index=True)
    portal_id = Column(Integer, ForeignKey("portals.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    visitor_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    language = Column(String(8), nullable=False, default="en")
    message_count = Column(Integer, nullable=False, default=0)
    last_query = Column(Text, nullable=True)
    referenced_chunk_ids = Column(JSONB, nullable=True)
    rating = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)
    end_reason = Column(String(16), nullable=True)  # closed|inactive|suspended|expired
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    portal = relationship("Portal", back_populates="sessions")
    messages = relationship("ChatMessage", back_populates="session", order_by="ChatMessage.seq")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    role = Column(String(16), nullable=False)  # visitor|assistant|system
    text = Column(Text, nullable=False)
    citations = Column(JSONB, nullable=True)  # [{chunk_id, section, score}]
    confidence = Column(Float, nullable=True)
    delivery_status = Column(String(16), nullable=False, default="delivered")  # delivered|not_covered|degraded
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    session = relationship("ChatSession", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_chat_messages_session_seq"),
    )
