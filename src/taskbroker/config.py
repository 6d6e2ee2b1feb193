"""Task broker configuration management."""

from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Task broker configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="TASKBROKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # General
    env: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./taskbroker.db"

    # Claim behavior
    claim_poll_interval_seconds: float = Field(
        default=1.0, description="Initial wait between empty claim attempts"
    )
    claim_max_poll_interval_seconds: float = Field(
        default=10.0, description="Upper bound for the claim backoff"
    )

    # Observation
    observe_poll_interval_seconds: float = Field(
        default=1.0, description="Event polling cadence for live subscriptions"
    )

    # Liveness
    heartbeat_interval_seconds: float = Field(
        default=1.0, description="How often a claimed task refreshes its heartbeat"
    )
    vacuum_interval_seconds: float = Field(default=5, description="Vacuum sweep cadence")
    vacuum_timeout_seconds: float = Field(
        default=30, description="Heartbeat age after which a processing task is failed"
    )

    # Store fault handling
    store_fault_max_retries: int = Field(
        default=3, description="Consecutive store faults tolerated by claim/observe"
    )
    store_fault_backoff_seconds: float = Field(
        default=0.5, description="Base backoff after a store fault (doubles per retry)"
    )

    # Worker
    workspace_root: str = Field(
        default="./workspaces", description="Parent directory for task workspaces"
    )
    worker_concurrency: int = Field(default=1, description="Tasks executed in parallel")
    run_worker: bool = Field(
        default=True, description="Run an embedded worker inside the API server"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Validators
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "database_url must be a PostgreSQL URL (postgresql:// or postgresql+asyncpg://) "
                "or a SQLite URL (sqlite+aiosqlite://)"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator("worker_concurrency", "store_fault_max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Value must not be negative, got {v}")
        return v

    @model_validator(mode="after")
    def validate_heartbeat_below_timeout(self) -> "Settings":
        """A task must heartbeat more often than the vacuum would reclaim it."""
        if self.heartbeat_interval_seconds >= self.vacuum_timeout_seconds:
            raise ValueError(
                "heartbeat_interval_seconds must be smaller than vacuum_timeout_seconds "
                f"({self.heartbeat_interval_seconds} >= {self.vacuum_timeout_seconds})"
            )
        return self

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver selected."""
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


settings = Settings()
