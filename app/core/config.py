from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./valet_pricing.db"

    REDIS_URL: str = "redis://localhost:6379/0"

    SECRET_KEY: str = "change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # "memory" or "redis"
    STATE_BACKEND: str = "memory"
    # "memory" or "database"
    AUDIT_BACKEND: str = "memory"

    FALLBACK_TO_DEFAULT_CONFIG: bool = True

    SMOOTHING_MAX_RETRIES: int = 5
    SMOOTHING_RETRY_BACKOFF: float = 0.01  # seconds, doubled per attempt

    API_TITLE: str = "Valet Pricing Engine"
    API_DESCRIPTION: str = "Dynamic pricing quotes for valet parking scopes"
    API_VERSION: str = "1.0.0"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
