"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str
    DATABASE_ECHO: bool = False  # Log SQL statements

    # Logging (used by the CLI; library code never configures handlers)
    LOG_LEVEL: str = "INFO"

    # Invitations
    INVITATION_EXPIRY_DAYS: int = 7

    # Agency assignments
    DEFAULT_PERFORMANCE_SCORE: int = 75

    @property
    def is_sqlite(self) -> bool:
        """True when running against SQLite (tests, local tooling)."""
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
