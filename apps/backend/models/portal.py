"""Модели порталов (сгенерированных сайтов-визиток)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base

PORTAL_STATUSES = ("DRAFT", "GENERATING", "ACTIVE", "FAILED", "SUSPENDED", "EXPIRED")
PORTAL_VISIBILITY = ("public", "unlisted", "private")
DEFAULT_SECTIONS = ["summary", "experience", "skills", "education", "achievements"]


class Portal(Base):
    __tablename__ = "portals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    document_id = Column(Integer, ForeignKey("source_documents.id"), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    slug = Column(String(96), unique=True, nullable=False, index=True)
    status = Column(String(16), nullable=False, default="DRAFT")  # DRAFT|GENERATING|ACTIVE|FAILED|SUSPENDED|EXPIRED
    visibility = Column(String(16), nullable=False, default="public")  # public|unlisted|private
    enabled_sections = Column(JSONB, nullable=True)
    theme = Column(String(64), nullable=True)
    feature_flags = Column(JSONB, nullable=True)
    # per-portal assistant tuning: temperature, max_tokens, system_prompt, personality, allowed_topics
    chat_settings = Column(JSONB, nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    session_count = Column(Integer, nullable=False, default=0)
    url = Column(Text, nullable=True)
    error_json = Column(JSONB, nullable=True)
    # blue/green: generation being served vs. generation being built
    current_run_id = Column(Integer, nullable=True)
    active_run_id = Column(Integer, nullable=True)
    redeploy_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    deployed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    document = relationship("SourceDocument")
    runs = relationship("DeploymentRun", back_populates="portal", cascade="all, delete-orphan")
    sessions = relationship("ChatSession", back_populates="portal", cascade="all, delete-orphan")

    def chat_enabled(self) -> bool:
        flags = self.feature_flags or {}
        return bool(flags.get("chat", True))
