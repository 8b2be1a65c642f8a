from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import field_validator
from pathlib import Path
from typing import Annotated, Literal
from functools import lru_cache
from ..validators.config_validators import to_uppercase, to_lowercase, normalize_mutation_kinds

MutationKind = Literal["create", "update", "delete"]


class Settings(BaseSettings):
    """
    Package settings loaded from the environment (and an optional `.env` file).
    """

    # Environment
    ENV: Literal["development", "testing", "staging", "production"] = "development"

    # Database configuration
    POSTGRES_DRIVER: str = "asyncpg"
    POSTGRES_USERNAME: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "postgres"

    # Test database configuration
    TEST_POSTGRES_DB: str | None = None
    TESTING: bool = False

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI: str | None = None
    SQLALCHEMY_ECHO: bool = False

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "json"
    LOG_TO_STDOUT: bool = True
    LOG_DIR: Path = Path("/var/log/entity-repository")
    LOG_MAX_BYTES: int = 10_000_000  # 10 MB
    LOG_BACKUP_COUNT: int = 5
    ENABLE_SQL_LOGGING: bool = False
    LOG_USE_QUEUE: bool = False
    LOG_QUEUE_MAX_SIZE: int = 0
    LOG_QUEUE_BLOCKING: bool = False

    # Repository cache
    REPOSITORY_CACHE_ENABLED: bool = True
    # seconds; 0 keeps entries until evicted, negative disables read caching
    REPOSITORY_CACHE_LIFETIME: int = 600
    REPOSITORY_CACHE_CLEAR_ENABLED: bool = True
    REPOSITORY_CACHE_CLEAR_ON: Annotated[list[MutationKind], NoDecode] = ["create", "update", "delete"]

    # Repository transactions
    REPOSITORY_TRANSACTION_ATTEMPTS: int = 1

    # --- Derived settings ---
    @property
    def DATABASE_URL(self) -> str:
        """
        Return the database URL for the current environment.

        - `SQLALCHEMY_DATABASE_URI` wins when set (any SQLAlchemy async URL).
        - With `TESTING=True` and `TEST_POSTGRES_DB` set, the test database is used.
        - Otherwise the URL is assembled from the POSTGRES_* parts.
        """
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI

        database = self.POSTGRES_DB
        if self.TESTING and self.TEST_POSTGRES_DB:
            database = self.TEST_POSTGRES_DB

        return (
            f"postgresql+{self.POSTGRES_DRIVER}://"
            f"{self.POSTGRES_USERNAME}:{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{database}"
        )

    # --- Validators ---
    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str | None) -> str | None:
        """Logging expects upper-case level names ("DEBUG", "INFO", ...)."""
        return to_uppercase(v)

    @field_validator("LOG_FORMAT", mode="before")
    @classmethod
    def normalize_log_format(cls, v: str | None) -> str | None:
        return to_lowercase(v)

    @field_validator("REPOSITORY_CACHE_CLEAR_ON", mode="before")
    @classmethod
    def normalize_clear_on(cls, v):
        """
        Accept a list or a comma separated string ("create,update") and
        lower-case / de-duplicate the entries.
        """
        return normalize_mutation_kinds(v)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Settings are read from the environment once per process.
@lru_cache()
def get_settings() -> Settings:
    return Settings()
