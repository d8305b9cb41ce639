"""
Run configuration for supportsync.

Every engine builds one Settings object at startup and passes it (or the
pieces it needs) to the components it drives. Nothing reads os.environ after
that point.

Env files: .env.local wins over .env when present in the working directory,
matching how the deploy boxes are provisioned.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini-2024-07-18"


class ConfigError(Exception):
    """Required configuration is missing or unusable."""


def load_environment(base_dir: Optional[Path] = None) -> Optional[Path]:
    """Load .env.local (preferred) or .env into os.environ.

    Existing environment variables are never overridden.

    Returns:
        Path of the file that was loaded, or None if neither exists
    """
    base_dir = base_dir or Path.cwd()
    for name in (".env.local", ".env"):
        env_path = base_dir / name
        if env_path.exists():
            load_dotenv(env_path)
            return env_path
    return None


def _parse_env_int(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds checking.

    Args:
        name: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        Parsed integer within bounds, or default if invalid
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        logger.warning(f"{name} invalid, using {default}")
        return default
    if not (min_val <= val <= max_val):
        logger.warning(f"{name}={val} out of bounds [{min_val}, {max_val}], using {default}")
        return default
    return val


def _parse_env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


class Settings(BaseModel):
    """Resolved configuration for one run."""

    # Chat API
    freshchat_token: Optional[str] = None
    freshchat_domain: Optional[str] = None
    freshchat_rpm: int = 0  # 0 = no client-side limit

    # Classification capability
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_MODEL
    openai_rpm: int = 500

    # Store
    database_url: Optional[str] = None

    # Sync
    lookback_hours: int = 2
    verbose_log: bool = False

    # Backfill
    batch_size: int = 50
    rate_limit_delay_ms: int = 1000
    batch_delay_ms: int = 5000

    # Classification
    max_conversations: int = 100

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment."""
        return cls(
            freshchat_token=_env_str("FRESHCHAT_TOKEN"),
            freshchat_domain=_env_str("FRESHCHAT_DOMAIN"),
            freshchat_rpm=_parse_env_int("FRESHCHAT_RPM", 0, 0, 10000),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_model=_env_str("OPENAI_MODEL") or DEFAULT_MODEL,
            openai_rpm=_parse_env_int("OPENAI_RPM", 500, 1, 100000),
            database_url=_env_str("DATABASE_URL"),
            lookback_hours=_parse_env_int("LOOKBACK_HOURS", 2, 1, 24 * 30),
            verbose_log=_parse_env_flag("VERBOSE_LOG"),
            batch_size=_parse_env_int("BATCH_SIZE", 50, 1, 1000),
            rate_limit_delay_ms=_parse_env_int("RATE_LIMIT_DELAY", 1000, 0, 60000),
            batch_delay_ms=_parse_env_int("BATCH_DELAY", 5000, 0, 600000),
            max_conversations=_parse_env_int("MAX_CONVERSATIONS", 100, 1, 100000),
        )

    def require(self, *fields: str) -> "Settings":
        """Raise ConfigError listing every named field that is unset.

        Returns self so callers can chain: Settings.from_env().require(...)
        """
        missing = [f for f in fields if not getattr(self, f)]
        if missing:
            names = ", ".join(f.upper() for f in missing)
            raise ConfigError(f"Missing required configuration: {names}")
        return self

    @property
    def freshchat_base_url(self) -> str:
        domain = (self.freshchat_domain or "").rstrip("/")
        if domain.startswith("http://") or domain.startswith("https://"):
            return f"{domain}/v2"
        return f"https://{domain}/v2"


# Fields each run needs before it touches the network or the store
SYNC_FIELDS = ("freshchat_token", "freshchat_domain", "database_url")
ANALYZE_FIELDS = ("openai_api_key", "database_url")
DB_FIELDS = ("database_url",)
LOOKUP_FIELDS = ("freshchat_token", "freshchat_domain")
