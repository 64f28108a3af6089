"""Rate limit counters (session / portal), mutated via conditional UPDATE only."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from apps.backend.database import Base


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    scope = Column(String(16), primary_key=True)  # session|portal
    key = Column(String(64), primary_key=True)
    quota = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    reset_at = Column(DateTime, nullable=False)
    in_flight = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
