"""Общие фикстуры: SQLite-движки, фейковый LLM-провайдер, аналитика, seed портала."""
import re
import threading
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from apps.backend.config import Settings
from apps.backend.database import Base, get_file_test_engine, get_test_engine
from apps.backend.models.document import SourceDocument, UserEntitlement
from apps.backend.models.portal import Portal
from apps.backend.services.errors import TransientDependencyError
from apps.backend.services.llm_client import Completion

# topic buckets of the fake embedding space
CONCEPTS = {
    "lang": {"python", "go", "golang", "java", "rust", "language", "languages", "programming"},
    "experience": {"experience", "engineer", "worked", "role", "led", "company", "developer", "team"},
    "education": {"education", "university", "degree", "studied", "bachelor", "master"},
    "cloud": {"docker", "kubernetes", "terraform", "aws", "cloud"},
    "data": {"sql", "postgresql", "redis", "kafka", "pipelines", "data"},
}
_WORD_RE = re.compile(r"[a-z+#]+")

RESUME_SECTIONS = [
    {
        "label": "Summary",
        "kind": "summary",
        "text": "Backend engineer with eight years of experience building reliable services.",
    },
    {
        "label": "Experience",
        "kind": "experience",
        "items": [
            {
                "title": "Senior Backend Engineer",
                "organization": "Acme Inc",
                "start": "2019",
                "end": "2024",
                "description": "Led the payments platform team and worked on billing services.",
            },
            {
                "title": "Software Engineer",
                "organization": "Globex LLC",
                "start": "2015",
                "end": "2019",
                "description": "Built internal tooling for the operations team.",
            },
        ],
    },
    {
        "label": "Skills",
        "kind": "skills",
        "items": ["Python", "Go", "SQL", "Docker", "Kubernetes", "PostgreSQL", "Redis", "Kafka", "Terraform", "AWS"],
    },
]


def fake_vector(text: str) -> list[float]:
    words = _WORD_RE.findall((text or "").lower())
    return [float(sum(1 for w in words if w in vocab)) for vocab in CONCEPTS.values()]


class FakeProvider:
    model_version = "fake-embed-1"

    def __init__(self, answer: str = "Grounded answer [S1].") -> None:
        self.answer = answer
        self.embed_calls = 0
        self.complete_calls = 0
        self.fail_embed_for: set[str] = set()
        self.fail_complete = False
        self.contexts: list[list[dict]] = []
        self.chat_settings: list = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.embed_calls += 1
        if any(marker in text for marker in self.fail_embed_for):
            raise TransientDependencyError("embed_down", code="llm_unavailable")
        return fake_vector(text)

    def complete(self, context: list[dict], history: list[dict], chat_settings=None) -> Completion:
        with self._lock:
            self.complete_calls += 1
            self.contexts.append(context)
            self.chat_settings.append(chat_settings)
        if self.fail_complete:
            raise TransientDependencyError("completion_down", code="llm_unavailable")
        used = [context[0]["chunk_id"]] if context else []
        return Completion(text=self.answer, used_chunk_ids=used)


class FakeAnalytics:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def emit(self, event_type: str, payload: dict | None = None) -> None:
        with self._lock:
            self.events.append((event_type, dict(payload or {})))

    def types(self) -> list[str]:
        return [t for t, _ in self.events]


def make_settings(**overrides) -> Settings:
    base = dict(
        cancel_poll_interval_seconds=0.01,
        deploy_max_retries=2,
        deploy_backoff_base_seconds=0.0,
        deploy_backoff_max_seconds=0.0,
        phase_timeout_seconds=10,
        phase_timeouts={},
        embed_max_attempts=2,
        completion_max_attempts=2,
        grounding_floor=0.25,
        chat_session_quota=20,
        chat_portal_quota=600,
        chat_portal_max_in_flight=8,
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def session_factory():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Отдельное соединение на поток: для тестов с конкурентными вызовами."""
    engine = get_file_test_engine(str(tmp_path / "engine.sqlite3"))
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def analytics():
    return FakeAnalytics()


@pytest.fixture
def seed_portal():
    def _seed(db, *, user_id: str = "owner-1", name: str = "Jane Doe", sections=None, entitled: bool = True, **fields) -> Portal:
        doc = SourceDocument(user_id=user_id, title="CV", sections=sections if sections is not None else RESUME_SECTIONS)
        db.add(doc)
        db.flush()
        if entitled:
            db.add(UserEntitlement(user_id=user_id, capability="portal", expires_at=None))
        portal = Portal(
            user_id=user_id,
            document_id=doc.id,
            name=name,
            slug=fields.pop("slug", None) or f"{user_id}-{datetime.utcnow().timestamp():.0f}-{doc.id}",
            status=fields.pop("status", "DRAFT"),
            visibility=fields.pop("visibility", "public"),
            enabled_sections=fields.pop("enabled_sections", None),
            feature_flags=fields.pop("feature_flags", {"chat": True}),
            **fields,
        )
        db.add(portal)
        db.commit()
        db.refresh(portal)
        return portal

    return _seed


def publish(db, seed, provider, run_id: int = 1, **fields) -> Portal:
    """ACTIVE portal with one stored generation, without running the deploy phases."""
    from apps.backend.services.embedding_pipeline import generate_embeddings, store_chunks
    from apps.backend.services.retry import RetryPolicy
    from apps.backend.services.vector_store import SqlVectorStore

    portal = seed(db, status="ACTIVE", deployed_at=datetime.utcnow(), current_run_id=run_id, **fields)
    result = generate_embeddings(
        portal.user_id, RESUME_SECTIONS, provider, retry=RetryPolicy(max_attempts=1, sleep=lambda _s: None)
    )
    store_chunks(SqlVectorStore(db), portal.user_id, portal.id, run_id, result)
    provider.embed_calls = 0
    return portal
