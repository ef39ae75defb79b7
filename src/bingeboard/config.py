"""
Configuration constants for the BingeBoard recommendation core.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

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


def _get_str_env(key: str, default: str) -> str:
    """Read a string env var, treating blank values as unset."""
    val = os.environ.get(key, "").strip()
    return val or default


# Availability fan-out
DEFAULT_MAX_CONCURRENT = _get_int_env("BINGEBOARD_MAX_CONCURRENT", 5, min_val=1)
DEFAULT_BATCH_DELAY_MS = _get_int_env("BINGEBOARD_BATCH_DELAY_MS", 500, min_val=0)
DEFAULT_BATCH_SIZE = _get_int_env("BINGEBOARD_BATCH_SIZE", 0, min_val=0)  # 0 = use concurrency limit
SOURCE_TIMEOUT = _get_float_env("BINGEBOARD_SOURCE_TIMEOUT", 8.0, min_val=0.1)
HTTP_TIMEOUT = _get_float_env("BINGEBOARD_HTTP_TIMEOUT", 10.0, min_val=0.1)
HTTP2_ENABLED = os.environ.get("BINGEBOARD_HTTP2", "0").lower() in ("1", "true", "yes")
CATALOG_REGION = _get_str_env("BINGEBOARD_REGION", "US")

# Retry and Rate Limiting
MAX_HTTP_RETRIES = _get_int_env("BINGEBOARD_MAX_RETRIES", 3, min_val=1)
RETRY_INITIAL_DELAY = _get_float_env("BINGEBOARD_RETRY_DELAY", 0.5, min_val=0.0)
RETRY_BACKOFF_FACTOR = 2.0

# Availability cache
CACHE_TTL_SECONDS = _get_float_env("BINGEBOARD_CACHE_TTL", 30 * 60, min_val=0.0)
CACHE_DB_PATH = Path(os.environ.get("BINGEBOARD_CACHE_DB", "data/availability_cache.db"))

# Provider credentials
TMDB_API_KEY = os.environ.get("TMDB_API_KEY")
WATCHMODE_API_KEY = os.environ.get("WATCHMODE_API_KEY")
UTELLY_API_KEY = os.environ.get("UTELLY_API_KEY")
STREAMING_AVAILABILITY_API_KEY = os.environ.get("STREAMING_AVAILABILITY_API_KEY")

# Provider endpoints
TMDB_BASE_URL = "https://api.themoviedb.org/3"
WATCHMODE_BASE_URL = "https://api.watchmode.com/v1"
UTELLY_HOST = "utelly-tv-shows-and-movies-availability-v1.p.rapidapi.com"
STREAMING_AVAILABILITY_HOST = "streaming-availability.p.rapidapi.com"

# Embedding / model versioning
# Bump this whenever encoder weights or feature tables change; cached
# embeddings are keyed by version and become unreachable on a bump.
MODEL_VERSION = _get_str_env("BINGEBOARD_MODEL_VERSION", "1.0.0")
MODEL_DIR = Path(os.environ.get("BINGEBOARD_MODEL_DIR", "models"))
EMBEDDING_CACHE_TTL = _get_float_env("BINGEBOARD_EMBEDDING_CACHE_TTL", 24 * 60 * 60, min_val=1.0)
EMBEDDING_CACHE_MAX_ENTRIES = _get_int_env("BINGEBOARD_EMBEDDING_CACHE_MAX", 50_000, min_val=1)

# Matrix factorization (ALS)
ALS_FACTORS = _get_int_env("BINGEBOARD_ALS_FACTORS", 50, min_val=1)
ALS_LAMBDA = _get_float_env("BINGEBOARD_ALS_LAMBDA", 0.01, min_val=1e-9)
ALS_MAX_ITERATIONS = _get_int_env("BINGEBOARD_ALS_MAX_ITER", 100, min_val=1)
ALS_TOLERANCE = _get_float_env("BINGEBOARD_ALS_TOLERANCE", 1e-4, min_val=0.0)
ALS_CHECK_EVERY = 10  # RMSE is recomputed every N iterations
ALS_PATIENCE = 3  # Consecutive sub-threshold RMSE checks before stopping
ALS_INIT_SCALE = 0.1
ALS_MODEL_PATH = Path(os.environ.get("BINGEBOARD_ALS_MODEL", "data/als_model.npz"))

# Monetization
AFFILIATE_PREFIX = _get_str_env("BINGEBOARD_AFFILIATE_PREFIX", "BINGEBOARD")
AMAZON_ASSOCIATE_TAG = _get_str_env("BINGEBOARD_AMAZON_TAG", "bingeboard-20")
REVENUE_PER_AFFILIATE_PLATFORM = 25.50
TOP_AFFILIATE_LIMIT = 5
