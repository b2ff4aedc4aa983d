"""Configuration models for the wallabag sync engine."""

from pathlib import Path

from pydantic import BaseModel, Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WallabagConfig(BaseModel):
    """Connection and credentials for the wallabag server."""

    base_url: HttpUrl = Field(default=..., description="wallabag instance URL")
    client_id: str = Field(default=..., min_length=1, description="OAuth client id")
    client_secret: str = Field(default=..., min_length=1, description="OAuth client secret")
    username: str = Field(default=..., min_length=1)
    password: str = Field(default=..., min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")


class StoreConfig(BaseModel):
    """Configuration for the embedded local store."""

    db_file: Path = Field(default=Path("db.sqlite3"), description="SQLite database file")


class SyncSettings(BaseModel):
    """Retry and concurrency settings for a sync run."""

    max_retries: int = Field(
        default=3, ge=0, le=10, description="Retries for transient remote failures"
    )
    base_delay: float = Field(default=1.0, ge=0.0, description="Initial backoff delay in seconds")
    max_delay: float = Field(default=60.0, ge=0.0, description="Backoff delay cap in seconds")
    max_workers: int = Field(
        default=4, ge=1, le=32, description="Concurrent remote calls within a push wave"
    )

    @model_validator(mode="after")
    def check_delays(self) -> "SyncSettings":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Values come from keyword arguments (usually a parsed YAML file) and from
    environment variables with the WALLABAG_ prefix, e.g.
    ``WALLABAG_WALLABAG__BASE_URL`` or ``WALLABAG_SYNC__MAX_RETRIES``.
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLABAG_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    wallabag: WallabagConfig
    store: StoreConfig = Field(default_factory=StoreConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
