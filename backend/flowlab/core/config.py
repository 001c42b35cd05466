"""
Runtime and session service configuration using Pydantic Settings
"""
from typing import List
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Settings loaded from environment variables (or .env)"""

    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Session service storage
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB: str = "flowlab"
    MONGO_TIMEOUT_SECONDS: int = 30
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_TIMEOUT_SECONDS: int = 30

    # Randomization
    # Base secret for every derived seed. Changing it re-rolls all future assignments.
    SEED_SECRET: str = "flowlab_dev_seed_change_in_production"
    ASSIGNMENT_LOCK_TIMEOUT_SECONDS: int = 10

    # Remote-mode client
    SESSION_SERVICE_URL: str = "http://localhost:8000/api"
    SESSION_SERVICE_TIMEOUT_SECONDS: float = 10.0

    # Local-mode configs: <experiment_id>.json / .yaml
    CONFIGS_DIR: str = "configs"

    # Retake policy for configs served from CONFIGS_DIR
    ALLOW_RETAKE_DEFAULT: bool = False

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
