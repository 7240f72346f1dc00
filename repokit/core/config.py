"""
Library configuration module.

Loads settings from environment variables (or .env file) using pydantic-settings.
All sensitive values (DB credentials) come from the environment, never from code.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for repokit.

    Environment variables are loaded automatically from .env if present.
    Host applications normally inject them through their own deployment
    tooling; the defaults below are suitable for local development.
    """

    PROJECT_NAME: str = "repokit"

    # ── SQLite mode (no external DB required) ──
    USE_SQLITE: bool = False

    # ── PostgreSQL connection parameters ──
    # Empty defaults let USE_SQLITE=true run without dummy credentials;
    # the validator below still fails fast in PostgreSQL mode.
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SERVER: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: int = 5432

    @model_validator(mode="after")
    def _require_pg_credentials_unless_sqlite(self) -> "Settings":
        """Fail fast if PostgreSQL credentials are missing in PostgreSQL mode."""
        if not self.USE_SQLITE:
            missing = [
                name
                for name in (
                    "POSTGRES_USER",
                    "POSTGRES_PASSWORD",
                    "POSTGRES_SERVER",
                    "POSTGRES_DB",
                )
                if not getattr(self, name)
            ]
            if missing:
                vars_list = ", ".join(missing)
                raise ValueError(
                    f"PostgreSQL mode requires these environment variables: "
                    f"{vars_list}.\n\n"
                    f"Either export them (or put them in a .env file), e.g.\n"
                    f"       POSTGRES_USER=repokit\n"
                    f"       POSTGRES_PASSWORD=repokit\n"
                    f"       POSTGRES_SERVER=127.0.0.1\n"
                    f"       POSTGRES_DB=repokit\n\n"
                    f"or use the in-memory SQLite engine instead:\n"
                    f"       USE_SQLITE=true"
                )
        return self

    # ── Connection pool tuning ──
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30  # seconds to wait for a connection from the pool
    DB_POOL_RECYCLE: int = 1800  # seconds before a pooled connection is recycled

    # ── Paging ──
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 1000

    # ── Circuit breaker (database) ──
    CB_ENABLED: bool = True
    CB_FAILURE_THRESHOLD: int = 5
    CB_RECOVERY_TIMEOUT: float = 30.0

    # ── Logging ──
    LOG_LEVEL: str = "INFO"
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    # ── Misc ──
    DEBUG: bool = False

    @property
    def DATABASE_URL(self) -> str:
        """Construct the async database DSN.

        Returns an in-memory SQLite URL when ``USE_SQLITE`` is enabled,
        otherwise a PostgreSQL DSN for asyncpg.
        """
        if self.USE_SQLITE:
            return "sqlite+aiosqlite://"
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
