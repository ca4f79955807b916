"""
Environment configuration with validation.

REQUIRED ENV:
- TELEGRAM_BOT_TOKEN
- HEYGEN_API_KEY

OPTIONAL ENV:
- HEYGEN_API_BASE_URL (default: https://api.heygen.com)
- HEYGEN_TIMEOUT_SECONDS (default: 10)
- HEYGEN_MAX_RETRIES (default: 2)
- CRON_SECRET (bearer secret for the cron endpoint)
- DISPATCH_MODE (direct or relay, default: direct)
- RELAY_CHAT_ID (chat that receives relayed generation requests)
- STORAGE_MODE (auto, postgres, json)
- DATABASE_URL (for postgres storage)
- STORAGE_DATA_DIR (for json storage, default: ./data)
- RECONCILE_INTERVAL_SECONDS (default: 120, 0 disables the in-process loop)
- RECONCILE_CONCURRENCY (default: 1)
- RECONCILE_INCLUDE_PENDING (default: false)
- BOT_LANGUAGE (ru or en, default: ru)
- PORT (default: 8080)
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from avatar_relay.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

DISPATCH_MODES = ("direct", "relay")
STORAGE_MODES = ("auto", "postgres", "json")


@dataclass
class Config:
    """Application configuration with validation."""

    # REQUIRED fields
    telegram_bot_token: str = field(default="")
    heygen_api_key: str = field(default="")

    # OPTIONAL - Provider
    heygen_base_url: str = field(default="https://api.heygen.com")
    heygen_timeout_seconds: float = field(default=10.0)
    heygen_max_retries: int = field(default=2)

    # OPTIONAL - Trigger surface
    cron_secret: Optional[str] = field(default=None)
    port: int = field(default=8080)

    # OPTIONAL - Dispatch
    dispatch_mode: str = field(default="direct")
    relay_chat_id: Optional[int] = field(default=None)

    # OPTIONAL - Storage
    storage_mode: str = field(default="auto")
    database_url: Optional[str] = field(default=None)
    storage_data_dir: str = field(default="./data")

    # OPTIONAL - Reconciler
    reconcile_interval_seconds: int = field(default=120)
    reconcile_concurrency: int = field(default=1)
    reconcile_include_pending: bool = field(default=False)

    # OPTIONAL - Messages
    bot_language: str = field(default="ru")

    def __post_init__(self):
        """Load and validate configuration from ENV after dataclass init."""
        # REQUIRED
        self.telegram_bot_token = self._get_required("TELEGRAM_BOT_TOKEN")
        self.heygen_api_key = self._get_required("HEYGEN_API_KEY")

        # OPTIONAL - Provider
        self.heygen_base_url = os.getenv("HEYGEN_API_BASE_URL", "https://api.heygen.com").rstrip("/")
        self.heygen_timeout_seconds = self._get_float("HEYGEN_TIMEOUT_SECONDS", 10.0)
        self.heygen_max_retries = max(0, self._get_int("HEYGEN_MAX_RETRIES", 2))

        # OPTIONAL - Trigger surface
        self.cron_secret = os.getenv("CRON_SECRET") or None
        self.port = self._get_int("PORT", 8080)

        # OPTIONAL - Dispatch
        self.dispatch_mode = os.getenv("DISPATCH_MODE", "direct").strip().lower()
        relay_chat = os.getenv("RELAY_CHAT_ID", "").strip()
        self.relay_chat_id = int(relay_chat) if relay_chat.lstrip("-").isdigit() else None

        # OPTIONAL - Storage
        self.storage_mode = os.getenv("STORAGE_MODE", "auto").strip().lower()
        self.database_url = os.getenv("DATABASE_URL") or None
        self.storage_data_dir = os.getenv("STORAGE_DATA_DIR", "./data")

        # OPTIONAL - Reconciler
        self.reconcile_interval_seconds = max(0, self._get_int("RECONCILE_INTERVAL_SECONDS", 120))
        self.reconcile_concurrency = max(1, self._get_int("RECONCILE_CONCURRENCY", 1))
        self.reconcile_include_pending = os.getenv("RECONCILE_INCLUDE_PENDING", "0").lower() in ("1", "true", "yes")

        # OPTIONAL - Messages
        self.bot_language = os.getenv("BOT_LANGUAGE", "ru").strip().lower() or "ru"

        self._validate()

        logger.info(
            "Config loaded: dispatch=%s storage=%s reconcile_interval=%ss",
            self.dispatch_mode,
            self.storage_mode,
            self.reconcile_interval_seconds,
        )

    def _get_required(self, key: str) -> str:
        """Get required ENV variable or fail."""
        value = os.getenv(key)
        if not value:
            logger.error("Missing required ENV variable: %s", key)
            raise ConfigurationError(f"Required ENV variable {key} not set")
        return value

    def _get_int(self, key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Invalid %s=%s, using default=%s", key, raw, default)
            return default

    def _get_float(self, key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return float(raw)
        except ValueError:
            logger.warning("Invalid %s=%s, using default=%s", key, raw, default)
            return default

    def _validate(self):
        """Validate configuration consistency."""
        if self.dispatch_mode not in DISPATCH_MODES:
            raise ConfigurationError(f"DISPATCH_MODE must be one of {DISPATCH_MODES}, got: {self.dispatch_mode}")
        if self.dispatch_mode == "relay" and self.relay_chat_id is None:
            raise ConfigurationError("DISPATCH_MODE=relay requires RELAY_CHAT_ID")
        if self.storage_mode not in STORAGE_MODES:
            raise ConfigurationError(f"STORAGE_MODE must be one of {STORAGE_MODES}, got: {self.storage_mode}")
        if self.storage_mode == "postgres" and not self.database_url:
            raise ConfigurationError("STORAGE_MODE=postgres requires DATABASE_URL")

    @property
    def resolved_storage_mode(self) -> str:
        if self.storage_mode == "auto":
            return "postgres" if self.database_url else "json"
        return self.storage_mode

    @staticmethod
    def mask_secret(value: Optional[str], show_chars: int = 4) -> str:
        """Mask secret for logging."""
        if not value or len(value) <= show_chars:
            return "****"
        return f"{value[:show_chars]}{'*' * (len(value) - show_chars)}"


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get global config instance (singleton)."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    global _config
    _config = None
