"""Runtime configuration for the consultation core.

Settings are read from environment variables (optionally via a .env file) and
can be overridden explicitly when constructing ConsultSettings.

Environment Variables:
    CONSULT_REPLY_DELAY_MIN_MS: Lower bound of the synthetic reply delay (default: 2000)
    CONSULT_REPLY_DELAY_MAX_MS: Upper bound of the synthetic reply delay (default: 4000)
    CONSULT_SUPPRESS_SYNTHETIC_ON_REAL_REPLY: Cancel a pending synthetic reply
        when a real responder message arrives first (default: false)
    CONSULT_OPTIMISTIC_STATUS_UPDATES: Guard status writes with the case
        version (compare-and-swap) instead of last-write-wins (default: false)
    CONSULT_STORE_RETRY_ATTEMPTS: Attempts per store call, 1 disables retry (default: 1)
    CONSULT_STORE_URL: Record store REST endpoint (default: http://localhost:3000)
    CONSULT_STORE_API_KEY: Record store API key (optional)
    CONSULT_STORE_TIMEOUT: Record store request timeout in seconds (default: 10.0)
    CONSULT_CHANNEL_PREFIX: Redis pub/sub channel prefix (default: "consult")
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean in {name}: {raw}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer in {name}: {raw}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid number in {name}: {raw}") from None


@dataclass(frozen=True)
class ConsultSettings:
    """Configuration shared by the core components.

    Attributes:
        reply_delay_min_ms: Minimum synthetic reply delay in milliseconds
        reply_delay_max_ms: Maximum synthetic reply delay in milliseconds
        suppress_synthetic_on_real_reply: Cancel pending synthetic replies when
            a real responder message arrives first
        optimistic_status_updates: Use version-guarded status writes
        store_retry_attempts: Attempts per store call (1 = no retry)
        store_url: Record store REST endpoint
        store_api_key: Record store API key
        store_timeout: Record store request timeout in seconds
        channel_prefix: Prefix for notification channel names
    """

    reply_delay_min_ms: int = 2000
    reply_delay_max_ms: int = 4000
    suppress_synthetic_on_real_reply: bool = False
    optimistic_status_updates: bool = False
    store_retry_attempts: int = 1
    store_url: str = "http://localhost:3000"
    store_api_key: Optional[str] = None
    store_timeout: float = 10.0
    channel_prefix: str = "consult"

    def __post_init__(self):
        if self.reply_delay_min_ms < 0:
            raise ValueError("reply_delay_min_ms must be >= 0")
        if self.reply_delay_max_ms < self.reply_delay_min_ms:
            raise ValueError(
                f"reply_delay_max_ms ({self.reply_delay_max_ms}) must be >= "
                f"reply_delay_min_ms ({self.reply_delay_min_ms})"
            )
        if self.store_retry_attempts < 1:
            raise ValueError("store_retry_attempts must be >= 1")
        if self.store_timeout <= 0:
            raise ValueError("store_timeout must be > 0")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ConsultSettings":
        """Build settings from environment variables.

        Args:
            env_file: Optional .env path; defaults to searching from the CWD.
                Existing environment variables are never overridden.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        load_dotenv(env_file)

        settings = cls(
            reply_delay_min_ms=_env_int("CONSULT_REPLY_DELAY_MIN_MS", 2000),
            reply_delay_max_ms=_env_int("CONSULT_REPLY_DELAY_MAX_MS", 4000),
            suppress_synthetic_on_real_reply=_env_bool(
                "CONSULT_SUPPRESS_SYNTHETIC_ON_REAL_REPLY", False
            ),
            optimistic_status_updates=_env_bool("CONSULT_OPTIMISTIC_STATUS_UPDATES", False),
            store_retry_attempts=_env_int("CONSULT_STORE_RETRY_ATTEMPTS", 1),
            store_url=os.getenv("CONSULT_STORE_URL", "http://localhost:3000"),
            store_api_key=os.getenv("CONSULT_STORE_API_KEY") or None,
            store_timeout=_env_float("CONSULT_STORE_TIMEOUT", 10.0),
            channel_prefix=os.getenv("CONSULT_CHANNEL_PREFIX", "consult"),
        )

        logger.info(
            f"ConsultSettings loaded: reply_delay={settings.reply_delay_min_ms}-"
            f"{settings.reply_delay_max_ms}ms, "
            f"optimistic_status_updates={settings.optimistic_status_updates}, "
            f"suppress_synthetic_on_real_reply={settings.suppress_synthetic_on_real_reply}"
        )
        return settings


# Global settings instance
_settings: Optional[ConsultSettings] = None


def get_settings() -> ConsultSettings:
    """Get the process-wide settings (created from the environment on first use)."""
    global _settings

    if _settings is None:
        _settings = ConsultSettings.from_env()

    return _settings


def reset_settings() -> None:
    """Reset the process-wide settings (for testing)."""
    global _settings
    _settings = None
