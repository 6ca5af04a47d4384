"""
Configuration constants for the Letterboxd stats pipeline.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Upstream services
LETTERBOXD_BASE = "https://letterboxd.com"
TMDB_API_BASE = "https://api.themoviedb.org/3"
TMDB_API_KEY = os.environ.get("TMDB_API_KEY") or None
LETTERBOXD_COOKIE = os.environ.get("LETTERBOXD_COOKIE") or None
USER_AGENT = "Mozilla/5.0 (compatible; letterboxd-stats/1.0)"

# HTTP behaviour
HTTP_TIMEOUT = 30.0  # HTTP request timeout in seconds
MAX_HTTP_RETRIES = 3
DEFAULT_RETRY_AFTER = 5  # Wait time if Retry-After header missing
MAX_429_RETRY_SECONDS = 30  # Total 429 wait budget per request

# Pagination
DEFAULT_MAX_PAGES = _get_int_env("LETTERBOXD_STATS_MAX_PAGES", 5, min_val=1)

# Chunked enrichment (admission control against upstream throttling)
NATIVE_CHUNK_SIZE = _get_int_env("LETTERBOXD_STATS_NATIVE_CHUNK_SIZE", 5, min_val=1)
NATIVE_CHUNK_DELAY = _get_float_env("LETTERBOXD_STATS_NATIVE_CHUNK_DELAY", 0.2, min_val=0.0)
PROVIDER_CHUNK_SIZE = _get_int_env("LETTERBOXD_STATS_PROVIDER_CHUNK_SIZE", 3, min_val=1)
PROVIDER_CHUNK_DELAY = _get_float_env("LETTERBOXD_STATS_PROVIDER_CHUNK_DELAY", 0.3, min_val=0.0)
PROVIDER_MAX_CAST = 10  # Top-billed cast kept per provider match

# Cache
CACHE_BACKEND = os.environ.get("LETTERBOXD_STATS_CACHE_BACKEND", "memory").strip().lower()
CACHE_DB_PATH = Path(os.environ.get("LETTERBOXD_STATS_CACHE_DB", "data/cache.db"))
MEMORY_CACHE_MAX_ENTRIES = _get_int_env("LETTERBOXD_STATS_MEMORY_CACHE_SIZE", 10000, min_val=1)
MEMORY_CACHE_SWEEP_INTERVAL = _get_float_env("LETTERBOXD_STATS_MEMORY_CACHE_SWEEP", 60.0, min_val=0.0)

HOUR = 60 * 60
DAY = 24 * HOUR
USER_CACHE_TTL = _get_float_env("LETTERBOXD_STATS_USER_TTL", 6 * HOUR, min_val=1)
FILM_DETAIL_CACHE_TTL = _get_float_env("LETTERBOXD_STATS_DETAIL_TTL", 30 * DAY, min_val=1)
PROVIDER_CACHE_TTL = _get_float_env("LETTERBOXD_STATS_PROVIDER_TTL", 30 * DAY, min_val=1)
PROVIDER_NOT_FOUND_TTL = _get_float_env("LETTERBOXD_STATS_NOT_FOUND_TTL", DAY, min_val=1)

# Cache schema versioning
# Bump a scope's token when the shape of its cached value changes; the
# other scopes keep their entries.
USER_CACHE_VERSION = "v1"
FILM_DETAIL_CACHE_VERSION = "v1"
PROVIDER_CACHE_VERSION = "v1"

# HTTP API
API_HOST = os.environ.get("LETTERBOXD_STATS_HOST", "127.0.0.1")
API_PORT = _get_int_env("LETTERBOXD_STATS_PORT", 8000, min_val=1)


def require_tmdb_api_key() -> str:
    """Return the TMDB credential or fail before any work begins."""
    if not TMDB_API_KEY:
        raise ConfigurationError("Server configuration error: TMDB_API_KEY missing")
    return TMDB_API_KEY
