"""Activity events: default analytics sink (portal views, chat usage, deployments)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base


class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id = Column(Integer, primary_key=True, index=True)
    portal_id = Column(Integer, nullable=True, index=True)
    event_type = Column(String(48), nullable=False, index=True)  # chat_message|chat_session_opened|deployment_completed|...
    payload = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_activity_events_type_time", "event_type", "created_at"),
    )
