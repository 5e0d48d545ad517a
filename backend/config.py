import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "patternlab.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Historical archive feed (one of the two is used; URL wins)
    HISTORY_FEED_URL: Optional[str] = None
    HISTORY_CSV_PATH: Optional[str] = None
    HISTORY_FEED_TIMEOUT_SECONDS: float = 30.0
    SIGNIFICANT_INTENSITY_THRESHOLD: float = 5.0  # neighbors() keeps events above this

    # Live market data
    MARKET_DATA_URL: str = (
        "https://api.coingecko.com/api/v3/coins/markets"
        "?vs_currency=usd&order=market_cap_desc&per_page=50&page=1&sparkline=false"
    )
    SENTIMENT_FEED_URL: Optional[str] = None
    MARKET_DATA_TIMEOUT_SECONDS: float = 10.0

    # Experiment lifecycle
    EXPERIMENT_POLL_INTERVAL_SECONDS: float = 5.0
    EXPERIMENT_MAX_RUNNING_SECONDS: Optional[float] = None  # None = poll until the trade closes
    ACTIVITY_LOG_LIMIT: int = 100

    # Signals
    SIGNAL_COOLDOWN_SECONDS: float = 3600.0
    SIGNAL_EVENT_LIMIT: int = 50
    SIGNAL_WORKER_INTERVAL_SECONDS: int = 30

    # Trade simulation ledger
    BASE_TRADE_SIZE_USD: float = 1000.0

    # Pattern refinement (OpenAI-compatible chat completions endpoint)
    REFINEMENT_API_URL: str = "https://api.openai.com/v1"
    REFINEMENT_API_KEY: Optional[str] = None
    REFINEMENT_MODEL: str = "gpt-4o-mini"
    REFINEMENT_TIMEOUT_SECONDS: float = 60.0

    # Database - key-value store under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # API
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    @field_validator(
        "HISTORY_FEED_URL",
        "MARKET_DATA_URL",
        "SENTIMENT_FEED_URL",
        "REFINEMENT_API_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return None
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            return f"{prefix}{absolute}"

        return text

    @field_validator("ACTIVITY_LOG_LIMIT", "SIGNAL_EVENT_LIMIT")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            _LOGGER.warning("Retention limit below 1 clamped to 1", extra={"value": value})
            return 1
        return value

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
