"""Модели SQLAlchemy."""
from apps.backend.models.document import SourceDocument, UserEntitlement
from apps.backend.models.portal import Portal
from apps.backend.models.deployment import DeploymentRun
from apps.backend.models.chunk import ContentChunk
from apps.backend.models.chat import ChatSession, ChatMessage
from apps.backend.models.rate_limit import RateLimitCounter
from apps.backend.models.activity_event import ActivityEvent

__all__ = [
    "SourceDocument",
    "UserEntitlement",
    "Portal",
    "DeploymentRun",
    "ContentChunk",
    "ChatSession",
    "ChatMessage",
    "RateLimitCounter",
    "ActivityEvent",
]
