from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "agent.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"


class Settings(BaseSettings):
    # Broker (TopstepX / ProjectX gateway)
    BROKER_MODE: Literal["live", "simulated"] = "live"
    BROKER_API_URL: str = "https://api.topstepx.com"
    BROKER_USER_HUB_URL: str = "https://rtc.topstepx.com/hubs/user"
    BROKER_TOKEN_LIFETIME_SECONDS: float = 23.5 * 60 * 60  # 30 min buffer under 24h
    BROKER_RECONNECT_DELAY_SECONDS: float = 5.0  # Fixed realtime retry delay
    BROKER_KEEP_ALIVE_SECONDS: float = 10.0

    # Cloud engine
    CLOUD_API_URL: str = "http://127.0.0.1:3000"
    CLOUD_WS_URL: str = "ws://127.0.0.1:3000/v1/agent"
    CLOUD_CERT_FINGERPRINT: Optional[str] = None  # base64 SHA-256 of pinned cert
    CLOUD_HEARTBEAT_INTERVAL_SECONDS: float = 25.0  # Server times out at 30s
    CLOUD_RECONNECT_DELAY_SECONDS: float = 5.0
    CLOUD_CONNECT_TIMEOUT_SECONDS: float = 10.0
    CLOUD_TELEMETRY_INTERVAL_SECONDS: float = 30.0
    CLOUD_TOKEN_REFRESH_INTERVAL_SECONDS: float = 10 * 60  # Access tokens last 15min

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Client-side rate limits (requests per rolling window)
    ACTIVATION_RATE_LIMIT: int = 5
    ACTIVATION_RATE_WINDOW_SECONDS: float = 60 * 60
    REFRESH_RATE_LIMIT: int = 20
    REFRESH_RATE_WINDOW_SECONDS: float = 60 * 60
    TELEMETRY_RATE_LIMIT: int = 100
    TELEMETRY_RATE_WINDOW_SECONDS: float = 15 * 60

    # Trading permission
    ENABLE_TRADING_ON_STARTUP: bool = True  # Master switch on once accounts load
    DIRECTIVE_DEDUP_TTL_SECONDS: float = 600.0
    DIRECTIVE_DEDUP_MAX_ENTRIES: int = 5000

    # Credential storage
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"
    AGENT_SECRETS_KEY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # Local UI API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8765
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    @field_validator(
        "BROKER_API_URL",
        "BROKER_USER_HUB_URL",
        "CLOUD_API_URL",
        "CLOUD_WS_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("CLOUD_CERT_FINGERPRINT", "AGENT_SECRETS_KEY", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if value is None:
            return None
        text = str(value).strip().strip('"').strip("'")
        return text or None

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text.startswith(_SQLITE_ASYNC_PREFIX):
            return text
        path_part = text[len(_SQLITE_ASYNC_PREFIX) :]
        if not path_part or path_part in {":memory:", "/:memory:"}:
            return f"{_SQLITE_ASYNC_PREFIX}:memory:"
        absolute = (
            Path(path_part).resolve()
            if path_part.startswith("/")
            else (_PROJECT_ROOT / path_part).resolve()
        )
        return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
