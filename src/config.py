"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults. Settings are read once and passed to the
services that need them; request handlers never read the environment.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        DATABASE_PATH: SQLite database file holding planner data.
        API_KEY_PREFIX: Fixed prefix every raw automation key starts with.
        API_KEY_LOOKUP_PREFIX_LENGTH: Characters of the raw key stored for lookup.
        WEBHOOK_MAX_ATTEMPTS: Total delivery attempts per subscription.
        WEBHOOK_BACKOFF_MULTIPLIER_SECONDS: Base of the exponential backoff.
        WEBHOOK_ATTEMPT_TIMEOUT_SECONDS: HTTP timeout for a single attempt.
        WEBHOOK_DISPATCH_DEADLINE_SECONDS: Upper bound for a whole dispatch.
        WEBHOOK_RESPONSE_BODY_LIMIT: Stored response body length.
        SCHEDULER_MAX_CONCURRENT_USERS: Users processed in parallel.
        DEBUG: Include exception details in 500 responses.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: "json" or "console".
    """

    # Storage
    DATABASE_PATH: str = "./data/planner.db"

    # API keys
    API_KEY_PREFIX: str = "jee_"
    API_KEY_LOOKUP_PREFIX_LENGTH: int = 12

    # Webhooks
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_BACKOFF_MULTIPLIER_SECONDS: float = 2.0
    WEBHOOK_ATTEMPT_TIMEOUT_SECONDS: float = 8.0
    WEBHOOK_DISPATCH_DEADLINE_SECONDS: float = 30.0
    WEBHOOK_RESPONSE_BODY_LIMIT: int = 1000

    # Scheduler
    SCHEDULER_MAX_CONCURRENT_USERS: int = 5

    # API
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "./data/planner.db"),
            API_KEY_PREFIX=os.getenv("API_KEY_PREFIX", "jee_"),
            API_KEY_LOOKUP_PREFIX_LENGTH=_get_int_env("API_KEY_LOOKUP_PREFIX_LENGTH", 12),
            WEBHOOK_MAX_ATTEMPTS=_get_int_env("WEBHOOK_MAX_ATTEMPTS", 3),
            WEBHOOK_BACKOFF_MULTIPLIER_SECONDS=_get_float_env(
                "WEBHOOK_BACKOFF_MULTIPLIER_SECONDS", 2.0
            ),
            WEBHOOK_ATTEMPT_TIMEOUT_SECONDS=_get_float_env("WEBHOOK_ATTEMPT_TIMEOUT_SECONDS", 8.0),
            WEBHOOK_DISPATCH_DEADLINE_SECONDS=_get_float_env(
                "WEBHOOK_DISPATCH_DEADLINE_SECONDS", 30.0
            ),
            WEBHOOK_RESPONSE_BODY_LIMIT=_get_int_env("WEBHOOK_RESPONSE_BODY_LIMIT", 1000),
            SCHEDULER_MAX_CONCURRENT_USERS=_get_int_env("SCHEDULER_MAX_CONCURRENT_USERS", 5),
            DEBUG=_get_bool_env("DEBUG", default=False),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "json"),
        )
