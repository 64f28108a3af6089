"""Конфигурация приложения."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "cvportal"
    postgres_user: str = "cvportal"
    postgres_password: str = "changeme"
    # full SQLAlchemy URL; overrides the postgres_* parts when set
    database_url: str | None = None

    redis_host: str = "localhost"
    redis_port: int = 6379
    rq_deploy_queue_name: str = "deploy"

    # LLM provider (OpenAI-compatible REST)
    llm_api_base: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    chat_temperature: float = 0.2
    chat_max_tokens: int = 500
    embed_timeout_seconds: float = 30.0
    completion_timeout_seconds: float = 60.0
    retrieval_timeout_seconds: float = 10.0
    embed_max_attempts: int = 3
    completion_max_attempts: int = 2

    # chunking / retrieval
    chunk_tokens: int = 500
    chunk_overlap_tokens: int = 50
    retrieval_top_k: int = 5
    grounding_floor: float = 0.25
    vector_pgvector_enabled: bool = False

    # chat
    chat_context_tokens: int = 1500
    chat_history_turns: int = 6
    chat_session_quota: int = 20
    chat_session_window_seconds: int = 600
    chat_portal_quota: int = 600
    chat_portal_window_seconds: int = 3600
    chat_portal_max_in_flight: int = 8
    chat_inactivity_minutes: int = 30
    # idle per-session queues are released after this; sessions may be ended by another process
    chat_queue_idle_seconds: int = 300
    chat_message_max_chars: int = 2000

    # deployment
    phase_timeout_seconds: int = 300
    phase_timeouts: dict[str, int] = {
        "GENERATING_EMBEDDINGS": 900,
        "UPLOADING_ASSETS": 600,
        "BUILDING": 600,
        "TESTING": 120,
    }
    deploy_max_retries: int = 3
    deploy_backoff_base_seconds: float = 2.0
    deploy_backoff_max_seconds: float = 60.0
    cancel_poll_interval_seconds: float = 1.0
    # how long a timed-out phase handler gets to notice should_stop() before the run fails
    phase_abandon_grace_seconds: float = 30.0
    deploy_conflict_mode: str = "reject"  # reject | queue
    deploy_job_timeout_seconds: int = 3600
    deploy_stale_seconds: int = 1800
    deploy_watchdog_interval_seconds: int = 120
    portal_storage_path: str = "/app/storage/portals"
    portal_public_base_url: str | None = None

    entitlements_enforced: bool = True

    # owner tokens are issued by the external auth layer with the shared secret
    jwt_secret: str = "changeme"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
