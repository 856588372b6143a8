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
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "polytrader.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # API Base URLs
    GAMMA_API_URL: str = "https://gamma-api.polymarket.com"
    CLOB_API_URL: str = "https://clob.polymarket.com"
    DATA_API_URL: str = "https://data-api.polymarket.com"

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    # API Settings
    API_TIMEOUT_SECONDS: int = 30
    MAX_RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0

    # Trading Configuration (Polymarket CLOB)
    # Get these from: https://polymarket.com/settings/api-keys
    POLYMARKET_PRIVATE_KEY: Optional[str] = None  # Wallet private key for signing
    POLYMARKET_API_KEY: Optional[str] = None
    POLYMARKET_API_SECRET: Optional[str] = None
    POLYMARKET_API_PASSPHRASE: Optional[str] = None
    POLYMARKET_FUNDER_ADDRESS: Optional[str] = None
    # 0 = EOA, 1 = POLY_PROXY (email / magic link), 2 = GNOSIS_SAFE (browser wallet)
    POLYMARKET_SIGNATURE_TYPE: int = 1
    CHAIN_ID: int = 137  # Polygon mainnet

    # Advisory providers (tried in this order: Anthropic, Google, local)
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5-20250929"
    ANTHROPIC_MAX_TOKENS: int = 2048
    GOOGLE_API_KEY: Optional[str] = None
    GOOGLE_MODEL: str = "gemini-2.0-flash"
    LOCAL_LLM_URL: Optional[str] = None  # e.g. http://localhost:1234/v1 (LM Studio)
    LOCAL_LLM_MODEL: str = "qwen3-8b"
    LOCAL_LLM_TEMPERATURE: float = 0.3
    LOCAL_LLM_MAX_TOKENS: int = 2000
    ADVISORY_TIMEOUT_SECONDS: float = 120.0

    # AI trading loop
    TRADING_INTER_MARKET_DELAY_SECONDS: float = 2.0
    PRICE_HISTORY_INTERVAL: str = "1d"
    PRICE_HISTORY_FIDELITY: int = 15
    RESOLUTION_WIN_PRICE: float = 0.9  # Outcome price above this marks the winner

    # Spread (arbitrage) engine
    SPREAD_MARKET_SCAN_LIMIT: int = 100
    SPREAD_EVENT_SCAN_LIMIT: int = 100
    SPREAD_STALE_SECONDS: int = 300  # Deactivate opportunities not re-seen within this window
    SPREAD_ORDER_GAP_SECONDS: float = 0.5

    # Resolution scheduler
    RESOLVER_END_BUFFER_SECONDS: int = 60  # Check this long after the earliest end date
    RESOLVER_MIN_DELAY_SECONDS: int = 10
    RESOLVER_RETRY_SECONDS: int = 300  # Back-off when closed markets are still open in-store
    RESOLVER_ITEM_GAP_SECONDS: float = 0.1

    # Copy trading (snipe)
    SNIPE_INTERVAL_SECONDS: int = 300
    SNIPE_LEADERBOARD_LIMIT: int = 5
    SNIPE_ACTIVITY_LIMIT: int = 50
    SNIPE_TOP_POSITIONS: int = 10
    SNIPE_TRADER_GAP_SECONDS: float = 0.2
    SNIPE_ORDER_GAP_SECONDS: float = 0.5

    # Paper-position price drift used when no live quote is available
    PAPER_DRIFT_ENABLED: bool = True
    PAPER_DRIFT_CENTER: float = 0.45  # random() - center; below 0.5 biases upward
    PAPER_DRIFT_SCALE: float = 0.1
    PAPER_DRIFT_MIN_PRICE: float = 0.01
    PAPER_DRIFT_MAX_PRICE: float = 0.99

    @field_validator(
        "GAMMA_API_URL",
        "CLOB_API_URL",
        "DATA_API_URL",
        "LOCAL_LLM_URL",
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
        """Normalize DB URL so working-directory changes never split databases."""
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
            absolute = (
                Path(path_part).resolve()
                if path_part.startswith("/")
                else (_PROJECT_ROOT / path_part).resolve()
            )
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning(
                    "Could not create database directory",
                    extra={"path": str(absolute.parent), "error": str(exc)},
                )
            return f"{prefix}{absolute}"

        return text

    @property
    def has_clob_credentials(self) -> bool:
        return bool(self.POLYMARKET_PRIVATE_KEY)

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
