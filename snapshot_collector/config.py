import os
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from dotenv import load_dotenv

from snapshot_collector.domain.exceptions import ConfigurationException
from snapshot_collector.domain.models import MAX_CHUNK_SIZE


class Settings(BaseModel):
    """
    Runtime settings read from the environment (and a local .env file).
    """
    model_config = ConfigDict(frozen=True)

    github_token: str = Field(..., min_length=1)
    database_url: str = Field(..., min_length=1)
    snapshot_limit: int = Field(1000, ge=1, description="Default maximum repositories per run")
    chunk_size: int = Field(MAX_CHUNK_SIZE, ge=1, le=MAX_CHUNK_SIZE)
    min_remaining: int = Field(50, ge=0, description="Runs stop early below this many remaining API calls")
    budget_reserve: int = Field(50, ge=0, description="API calls kept back for other consumers of the token")
    inter_chunk_delay: float = Field(1.1, ge=0)
    log_level: str = "INFO"


# Environment variable -> Settings field
_OPTIONAL_KEYS = {
    "SNAPSHOT_LIMIT": "snapshot_limit",
    "SNAPSHOT_CHUNK_SIZE": "chunk_size",
    "SNAPSHOT_MIN_REMAINING": "min_remaining",
    "SNAPSHOT_BUDGET_RESERVE": "budget_reserve",
    "SNAPSHOT_INTER_CHUNK_DELAY": "inter_chunk_delay",
    "LOG_LEVEL": "log_level",
}


def load_settings() -> Settings:
    """
    Loads settings from the environment.

    Raises:
        ConfigurationException: If GITHUB_TOKEN or DATABASE_URL is missing,
            or an optional value cannot be parsed.
    """
    # Load environment variables from .env file
    load_dotenv()

    github_token = os.getenv("GITHUB_TOKEN")
    db_url = os.getenv("DATABASE_URL")

    if not github_token:
        raise ConfigurationException("GITHUB_TOKEN")
    if not db_url:
        raise ConfigurationException("DATABASE_URL")

    overrides = {
        field: os.getenv(key)
        for key, field in _OPTIONAL_KEYS.items()
        if os.getenv(key)
    }

    try:
        return Settings(github_token=github_token, database_url=db_url, **overrides)
    except ValidationError as e:
        raise ConfigurationException("Settings", f"are invalid: {e}") from e
