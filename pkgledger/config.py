"""Configuration settings for the package ledger."""

from pathlib import Path

from pydantic_settings import BaseSettings


def _default_db_path() -> Path:
    """Resolve the default ledger location.

    Priority:
    1. PKGLEDGER_DB_PATH environment variable (handled by pydantic)
    2. ~/.local/share/pkgledger/ledger.db
    """
    return Path.home() / ".local" / "share" / "pkgledger" / "ledger.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_path: Path = _default_db_path()
    sql_echo: bool = False
    busy_timeout_ms: int = 5000

    # Gateways enabled for discover/sync fan-out
    managers: list[str] = ["pip", "apt"]

    # Timeouts (seconds)
    query_timeout: float = 30.0
    gateway_timeout: float = 120.0

    # Package manager commands
    pip_cmd: str = "pip"
    apt_cmd: str = "apt-get"
    dpkg_query_cmd: str = "dpkg-query"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL (sync, used by Alembic)."""
        return f"sqlite:///{self.db_path}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"sqlite+aiosqlite:///{self.db_path}"

    class Config:
        env_prefix = "PKGLEDGER_"
        env_file = ".env"


# Global settings instance
settings = Settings()
