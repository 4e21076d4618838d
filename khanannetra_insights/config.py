"""
Environment-driven settings for the insights service.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:5000/api"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_INITIAL_POLL_DELAY_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


def _read_float_env(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        return float(raw) if raw is not None else float(default)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Invalid value for {name}, using default {default}")
        return float(default)


def _read_int_env(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        return int(raw) if raw is not None else int(default)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Invalid value for {name}, using default {default}")
        return int(default)


@dataclass(frozen=True)
class Settings:
    api_base_url: str
    poll_interval_seconds: float
    initial_poll_delay_seconds: float
    request_timeout_seconds: float
    max_polls: int
    log_level: str


def load_settings() -> Settings:
    """Read settings from the environment; invalid numbers fall back to defaults."""
    return Settings(
        api_base_url=os.getenv("ANALYSIS_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
        poll_interval_seconds=max(0.0, _read_float_env("ANALYSIS_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)),
        initial_poll_delay_seconds=max(
            0.0, _read_float_env("ANALYSIS_INITIAL_POLL_DELAY_SECONDS", DEFAULT_INITIAL_POLL_DELAY_SECONDS)
        ),
        request_timeout_seconds=_read_float_env("ANALYSIS_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS),
        # 0 polls forever
        max_polls=max(0, _read_int_env("ANALYSIS_MAX_POLLS", 0)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
