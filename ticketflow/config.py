"""Configuration settings for the ticket engine."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="TICKETFLOW_", env_file=".env", extra="ignore")

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "ticketflow"
    db_user: str = "ticketflow"
    db_password: str = "ticketflow"
    db_url: str | None = None  # full override, e.g. sqlite+aiosqlite:///tickets.db
    db_echo: bool = False

    # Engine behaviour
    default_workflow: str = "kanban"
    activity_limit: int = 50
    propagate_event_errors: bool = False

    # Redis fan-out of domain events
    redis_url: str = "redis://localhost:6379/0"
    redis_publish_enabled: bool = False
    redis_channel_prefix: str = "channel"

    log_level: str = "INFO"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


# Global settings instance
settings = Settings()
