import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    database_url: str = os.getenv(
        "DATABASE_URL",
        f"postgresql://{os.getenv('POSTGRES_USER', 'whatnext')}:{os.getenv('POSTGRES_PASSWORD', 'whatnext')}@db:5432/{os.getenv('POSTGRES_DB', 'whatnext')}",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Shared secret for admin endpoints
    admin_key: str = os.getenv("ADMIN_KEY", "")

    # Catalog provider
    tmdb_api_key: str = os.getenv("TMDB_API_KEY", "")
    tmdb_rate_limit_per_second: int = int(os.getenv("TMDB_RATE_LIMIT_PER_SECOND", "2"))
    tmdb_timeout_seconds: float = float(os.getenv("TMDB_TIMEOUT_SECONDS", "10"))

    # Embedding provider: "openai" (any OpenAI-compatible /embeddings endpoint) or "local"
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "openai")
    embedding_api_key: str = os.getenv("EMBEDDING_API_KEY", os.getenv("OPENAI_API_KEY", ""))
    embedding_api_base: str = os.getenv("EMBEDDING_API_BASE", "https://api.openai.com/v1")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-ada-002")
    local_embedding_model: str = os.getenv("LOCAL_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
    embedding_rate_limit_per_second: int = int(os.getenv("EMBEDDING_RATE_LIMIT_PER_SECOND", "10"))
    embedding_batch_size: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "50"))
    embedding_timeout_seconds: float = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30"))

    # Vector index
    vector_index_dir: str = os.getenv("VECTOR_INDEX_DIR", "/data/vectors")
    vector_batch_size: int = int(os.getenv("VECTOR_BATCH_SIZE", "500"))
    vector_min_batch_size: int = int(os.getenv("VECTOR_MIN_BATCH_SIZE", "50"))

    # Pipeline limits (one invocation)
    max_daily_new_movies: int = int(os.getenv("MAX_DAILY_NEW_MOVIES", "50"))
    processing_sub_batch_size: int = int(os.getenv("PROCESSING_SUB_BATCH_SIZE", "10"))
    invocation_time_budget_seconds: float = float(os.getenv("INVOCATION_TIME_BUDGET_SECONDS", "25"))
    max_processing_attempts: int = int(os.getenv("MAX_PROCESSING_ATTEMPTS", "3"))

    # Recommendations
    similarity_threshold: float = float(os.getenv("SIMILARITY_THRESHOLD", "0.7"))

    # Scheduler cadence (seconds)
    process_schedule_seconds: int = int(os.getenv("PROCESS_SCHEDULE_SECONDS", str(60 * 30)))
    reprocess_schedule_seconds: int = int(os.getenv("REPROCESS_SCHEDULE_SECONDS", str(60 * 60 * 24)))
    cleanup_schedule_seconds: int = int(os.getenv("CLEANUP_SCHEDULE_SECONDS", str(60 * 60 * 24 * 7)))

settings = Settings()
