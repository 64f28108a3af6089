"""Зависимости FastAPI."""
from functools import lru_cache
from typing import Generator

from sqlalchemy.orm import Session

from apps.backend.database import get_session_factory
from apps.backend.services.analytics import AnalyticsEmitter
from apps.backend.services.chat import ChatSessionManager, get_chat_manager


def get_db() -> Generator[Session, None, None]:
    factory = get_session_factory()
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@lru_cache
def _analytics() -> AnalyticsEmitter:
    return AnalyticsEmitter()


def get_analytics() -> AnalyticsEmitter:
    return _analytics()


def get_chat() -> ChatSessionManager:
    return get_chat_manager()
