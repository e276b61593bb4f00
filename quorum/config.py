"""Configuration settings for the review workflow."""

from pathlib import Path
from typing import Final

from pydantic_settings import BaseSettings

# Workflow constants shared by the store, the services and the CLI
DEFAULT_BALLOT_THRESHOLD: Final[int] = 3
MIN_RATIONALE_LENGTH: Final[int] = 10
MIN_CONFIDENCE: Final[int] = 1
MAX_CONFIDENCE: Final[int] = 5
LOW_CONFIDENCE_NUDGE_BELOW: Final[int] = 3

SCHEMA_VERSION: Final[str] = "1"


def _default_db_path() -> Path:
    """Resolve the default database location.

    Priority:
    1. QUORUM_DB_PATH environment variable (handled by pydantic)
    2. ~/.quorum/quorum.db
    """
    return Path.home() / ".quorum" / "quorum.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    db_path: Path = _default_db_path()
    echo_sql: bool = False

    # Ballot policy
    strict_language: bool = False

    # Logging
    log_level: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"sqlite+aiosqlite:///{self.db_path}"

    class Config:
        env_prefix = "QUORUM_"
        env_file = ".env"


# Global settings instance
settings = Settings()
