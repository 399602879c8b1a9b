"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import math
import os
from dataclasses import dataclass

# Headroom between the longest possible attempt and a claim counting as abandoned
CLAIM_STALE_MARGIN_SECONDS = 60


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
    """Get an integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """Get a float value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def min_claim_stale_seconds(request_timeout_seconds: float) -> int:
    """Shortest stale-claim window that outlives a redelivery at this timeout."""
    return math.ceil(request_timeout_seconds) + CLAIM_STALE_MARGIN_SECONDS


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        WEBHOOK_DB_PATH: SQLite file holding subscriptions and delivery attempts.
        WEBHOOK_REQUEST_TIMEOUT_SECONDS: Timeout for a single outbound HTTP attempt.
        WEBHOOK_MAX_CONCURRENT_DELIVERIES: Upper bound on in-flight attempts.
        WEBHOOK_RESPONSE_BODY_MAX_LENGTH: Response bodies are truncated to this length.
        WEBHOOK_DEFAULT_MAX_RETRIES: Retry budget for new subscriptions.
        WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS: Fixed delay between attempts.
        WEBHOOK_RETRY_POLL_INTERVAL_SECONDS: How often the retry scheduler scans.
        WEBHOOK_RETRY_BATCH_SIZE: Due attempts fetched per scan.
        WEBHOOK_RETRY_CLAIM_STALE_SECONDS: Age after which an unresolved claim is released.
        WEBHOOK_RETRY_SCHEDULER_ENABLED: Start the scheduler with the application.
        WEBHOOK_HIERARCHY_MAX_DEPTH: Bound on the resource ancestor walk.
        WEBHOOK_USER_AGENT: User-Agent sent with outbound deliveries.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: Log renderer (console, json or kv).
    """

    # Storage
    WEBHOOK_DB_PATH: str = "./data/webhooks.db"

    # Delivery
    WEBHOOK_REQUEST_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_MAX_CONCURRENT_DELIVERIES: int = 10
    WEBHOOK_RESPONSE_BODY_MAX_LENGTH: int = 4000
    WEBHOOK_USER_AGENT: str = "ResourceWebhooks/1.0"

    # Retry policy defaults
    WEBHOOK_DEFAULT_MAX_RETRIES: int = 3
    WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS: int = 60

    # Retry scheduler
    WEBHOOK_RETRY_POLL_INTERVAL_SECONDS: float = 60.0
    WEBHOOK_RETRY_BATCH_SIZE: int = 100
    WEBHOOK_RETRY_CLAIM_STALE_SECONDS: int = 600
    WEBHOOK_RETRY_SCHEDULER_ENABLED: bool = True

    # Matching
    WEBHOOK_HIERARCHY_MAX_DEPTH: int = 64

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        A stale-claim window that could expire while a redelivery is still
        within its request timeout is raised to `min_claim_stale_seconds`.

        Returns:
            Settings instance populated from environment.
        """
        timeout = _get_float_env("WEBHOOK_REQUEST_TIMEOUT_SECONDS", 10.0)
        claim_stale = max(
            _get_int_env("WEBHOOK_RETRY_CLAIM_STALE_SECONDS", 600),
            min_claim_stale_seconds(timeout),
        )
        return cls(
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH", "./data/webhooks.db"),
            WEBHOOK_REQUEST_TIMEOUT_SECONDS=timeout,
            WEBHOOK_MAX_CONCURRENT_DELIVERIES=_get_int_env("WEBHOOK_MAX_CONCURRENT_DELIVERIES", 10),
            WEBHOOK_RESPONSE_BODY_MAX_LENGTH=_get_int_env("WEBHOOK_RESPONSE_BODY_MAX_LENGTH", 4000),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "ResourceWebhooks/1.0"),
            WEBHOOK_DEFAULT_MAX_RETRIES=_get_int_env("WEBHOOK_DEFAULT_MAX_RETRIES", 3),
            WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS=_get_int_env(
                "WEBHOOK_DEFAULT_RETRY_DELAY_SECONDS", 60
            ),
            WEBHOOK_RETRY_POLL_INTERVAL_SECONDS=_get_float_env(
                "WEBHOOK_RETRY_POLL_INTERVAL_SECONDS", 60.0
            ),
            WEBHOOK_RETRY_BATCH_SIZE=_get_int_env("WEBHOOK_RETRY_BATCH_SIZE", 100),
            WEBHOOK_RETRY_CLAIM_STALE_SECONDS=claim_stale,
            WEBHOOK_RETRY_SCHEDULER_ENABLED=_get_bool_env(
                "WEBHOOK_RETRY_SCHEDULER_ENABLED", default=True
            ),
            WEBHOOK_HIERARCHY_MAX_DEPTH=_get_int_env("WEBHOOK_HIERARCHY_MAX_DEPTH", 64),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "console"),
        )


# Global settings instance
settings = Settings.from_env()
