"""Content chunks with embeddings (one generation per deployment run)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base

CONTENT_TYPES = ("text", "skill", "organization", "title", "achievement")


class ContentChunk(Base):
    __tablename__ = "content_chunks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    # scoping by metadata, not FK: chunks outlive their run records
    portal_id = Column(Integer, nullable=True, index=True)
    run_id = Column(Integer, nullable=True, index=True)
    section = Column(String(64), nullable=False)
    ordinal = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    embedding = Column(JSONB, nullable=True)
    importance = Column(Float, nullable=False, default=0.5)
    token_count = Column(Integer, nullable=False, default=0)
    content_type = Column(String(16), nullable=False, default="text")  # text|skill|organization|title|achievement
    model = Column(String(64), nullable=True)
    sha256 = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_content_chunks_portal_run", "portal_id", "run_id", "ordinal"),
    )
