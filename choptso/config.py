from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings."""

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow"  # Allow extra fields from .env
    )

    # Application
    APP_NAME: str = "Choptso Sync API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # API
    API_PREFIX: str = "/api/chat"
    HOST: str = "0.0.0.0"
    PORT: int = 8001

    # Document store
    STORE_BACKEND: str = "mongodb"  # mongodb, memory
    MONGODB_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"  # change streams need a replica set
    DATABASE_NAME: str = "choptso"

    # Redis (optional - for caching)
    REDIS_URL: str = ""  # Example: "redis://localhost:6379/0"
    CONVERSATION_CACHE_TTL: int = 300  # seconds

    # Bearer tokens are issued elsewhere; we only validate them
    JWT_SECRET_KEY: str = "dev_secret_key_change_in_production_min_32_chars_required"
    JWT_ALGORITHM: str = "HS256"
    ADMIN_SCOPE: str = "chat:admin"

    # Live view
    LIVE_WINDOW_SIZE: int = 50  # messages kept per conversation view
    PAGE_SIZE_MAX: int = 100

    # Typing indicators
    TYPING_TIMEOUT_MS: int = 3000  # keystroke staleness window
    TYPING_WRITE_DEBOUNCE_MS: int = 1000  # min gap between remote "typing" writes

    # Remote writes
    WRITE_TIMEOUT_SECONDS: float = 10.0  # per attempt
    WRITE_MAX_ATTEMPTS: int = 3
    WRITE_BACKOFF_BASE_SECONDS: float = 0.5  # base * 2**attempt

    # Change feed reconnection
    RECONNECT_GRACE_SECONDS: float = 30.0  # outage length before subscribers hear about it
    RECONNECT_BACKOFF_BASE_SECONDS: float = 0.5
    RECONNECT_BACKOFF_MAX_SECONDS: float = 10.0

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON_FORMAT: bool = False  # Set to True in production for structured logging

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]

    # API Documentation (Swagger UI / OpenAPI)
    ENABLE_DOCS: bool = True
    PROJECT_NAME: str = "Choptso - Message Sync API"


settings = Settings()
