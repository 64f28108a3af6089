"""Deployment runs: one per (re)generation attempt."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base

PHASES = (
    "INITIALIZING",
    "PROCESSING_DOCUMENT",
    "GENERATING_EMBEDDINGS",
    "PREPARING_CONTENT",
    "UPLOADING_ASSETS",
    "BUILDING",
    "DEPLOYING",
    "TESTING",
    "COMPLETED",
    "FAILED",
)
TERMINAL_PHASES = ("COMPLETED", "FAILED")


class DeploymentRun(Base):
    __tablename__ = "deployment_runs"

    id = Column(Integer, primary_key=True, index=True)
    portal_id = Column(Integer, ForeignKey("portals.id", ondelete="CASCADE"), nullable=False, index=True)
    run_number = Column(Integer, nullable=False, default=1)
    phase = Column(String(32), nullable=False, default="INITIALIZING")
    progress = Column(Integer, nullable=False, default=0)
    operations = Column(JSONB, nullable=True)  # [{name, status, started_at, finished_at, message}]
    retry_count = Column(Integer, nullable=False, default=0)
    resource_usage = Column(JSONB, nullable=True)
    error_json = Column(JSONB, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    # set while non-terminal; unique => at most one in-flight run per portal
    active_portal_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    portal = relationship("Portal", back_populates="runs")

    __table_args__ = (
        UniqueConstraint("active_portal_id", name="uq_deployment_runs_active_portal"),
        UniqueConstraint("portal_id", "run_number", name="uq_deployment_runs_portal_number"),
        Index("ix_deployment_runs_portal_phase", "portal_id", "phase"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES
