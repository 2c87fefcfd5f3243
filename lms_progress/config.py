from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./progress.db"
    REDIS_URL: str = "redis://localhost:6379/2"
    SECRET_KEY: str = "dev-secret-progress"
    JWT_ALGORITHM: str = "HS256"
    LOG_LEVEL: str = "INFO"
    CACHE_TTL: int = 300  # 5 minutes

    # Completion triggers
    COMPLETION_DEBOUNCE_SECONDS: float = 0.5
    DWELL_SECONDS: float = 15.0
    LINKED_VIDEO_DWELL_SECONDS: float = 30.0
    VIDEO_COMPLETION_RATIO: float = 0.8
    POSITION_SAVE_MIN_DELTA: float = 10.0

    REALTIME_DEBOUNCE_SECONDS: float = 0.5

    # HTTP client
    API_BASE_URL: str = "http://localhost:8000"
    REQUEST_TIMEOUT_SECONDS: float = 20.0
    SESSION_CHECK_TIMEOUT_SECONDS: float = 5.0
    READ_RETRIES: int = 2
    RETRY_BASE_SECONDS: float = 1.0
    RETRY_MAX_SECONDS: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
