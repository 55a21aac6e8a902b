"""Application configuration using environment variables."""
import os
from functools import lru_cache
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Application settings loaded from environment variables."""

    # Server
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS - Frontend URL
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Roll Engine
    ROLL_TIMEOUT_MS: int = int(os.getenv("ROLL_TIMEOUT_MS", "5000"))
    ROLL_HISTORY_LIMIT: int = int(os.getenv("ROLL_HISTORY_LIMIT", "100"))
    RULES_PRESET: str = os.getenv("RULES_PRESET", "standard")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
