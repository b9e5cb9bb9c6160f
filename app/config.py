from pydantic_settings import BaseSettings
from typing import List

class Settings(BaseSettings):
    # App
    APP_NAME: str = "ShareTrack"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./sharetrack.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # JWT (tokens are issued by the identity provider, we only verify them)
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Security
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    RATE_LIMIT_PER_MINUTE: int = 60

    # Monitoring
    SENTRY_DSN: str = ""
    SLOW_REQUEST_SECONDS: float = 1.0

    # Delivery
    DELIVERY_MAX_RETRIES: int = 3
    DELIVERY_TTL_DAYS: int = 7
    DELIVERY_ATTEMPT_TIMEOUT_SECONDS: float = 10.0
    DEFAULT_NOTIFICATION_CHANNELS: List[str] = ["email", "push"]

    # Presence
    PRESENCE_ONLINE_WINDOW_SECONDS: int = 300

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
