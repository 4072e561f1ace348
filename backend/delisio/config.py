"""Application configuration using Pydantic Settings."""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Application
    APP_NAME: str = "Delisio API"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | production | test
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./data/delisio.db"

    # Redis (Celery broker/backend, cancellation flags, rate limits, progress pub/sub)
    REDIS_URL: str = "redis://redis:6379/0"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    GPT_MODEL: str = "gpt-4o-mini"
    IMAGE_MODEL: str = "dall-e-3"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 2000

    # Identity / storage platform
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    SUPABASE_JWT_SECRET: str = "change-me-in-production"
    SUPABASE_JWT_AUDIENCE: str = "authenticated"
    STORAGE_BUCKET: str = "recipe-images"
    ADMIN_USER_IDS: str = ""

    # Cancellation registry
    CANCELLATION_BACKEND: str = "redis"  # redis | memory
    CANCELLATION_RETENTION_SECONDS: int = 900
    CANCELLATION_SWEEP_INTERVAL_SECONDS: int = 900

    # Rate limiting (fixed window)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 900
    RATE_LIMIT_DEFAULT: int = 100
    RATE_LIMIT_RECIPES: int = 15
    RATE_LIMIT_RECIPE_STATUS: int = 60
    RATE_LIMIT_CHAT: int = 50
    RATE_LIMIT_AUTHENTICATED: int = 150

    # Celery
    CELERY_CONCURRENCY: int = 2

    # Retry policy per job kind (retries after the first attempt)
    RECIPE_MAX_RETRIES: int = 0
    CHAT_MAX_RETRIES: int = 2
    CHAT_RETRY_BACKOFF_SECONDS: float = 2.0
    IMAGE_MAX_RETRIES: int = 3
    IMAGE_RETRY_BACKOFF_SECONDS: float = 3.0

    # Generation pipeline
    STEP_IMAGES_ENABLED: bool = True
    IMAGE_WAIT_TIMEOUT_SECONDS: int = 300
    IMAGE_POLL_INTERVAL_SECONDS: float = 2.0
    CHAT_RESPONSE_TIMEOUT_SECONDS: float = 25.0
    CHAT_POLL_INTERVAL_SECONDS: float = 0.5
    PARTIAL_RECIPE_TTL_SECONDS: int = 3600
    QUALITY_PASS_THRESHOLD: float = 7.0
    DUPLICATE_SIMILARITY_THRESHOLD: float = 0.8

    # Cleanup
    STALE_JOB_SECONDS: int = 3600
    JOB_RETENTION_DAYS: int = 30

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def admin_user_ids(self) -> set[str]:
        return {u.strip() for u in self.ADMIN_USER_IDS.split(",") if u.strip()}

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
