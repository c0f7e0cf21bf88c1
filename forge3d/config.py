"""Configuration loading and environment setup."""
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .utils.logging import get_logger

logger = get_logger(__name__)

# Load environment variables from .env in the working directory, then the project root
load_dotenv(dotenv_path=Path.cwd() / '.env', verbose=False)
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env', verbose=False)


def _clean_env_value(value: Optional[str]) -> Optional[str]:
    """Strip inline comments and whitespace from an environment value."""
    if not value:
        return value
    return value.split('#')[0].strip()


def _safe_int(value: Optional[str], default: str, var_name: str) -> int:
    """Safely convert environment variable to int, handling malformed values."""
    try:
        clean_value = _clean_env_value(value) or default
        return int(clean_value)
    except (ValueError, AttributeError):
        logger.warning(f"Invalid {var_name} value '{value}', using default {default}")
        return int(default)


def _safe_float(value: Optional[str], default: str, var_name: str) -> float:
    """Safely convert environment variable to float, handling malformed values."""
    try:
        clean_value = _clean_env_value(value) or default
        return float(clean_value)
    except (ValueError, AttributeError):
        logger.warning(f"Invalid {var_name} value '{value}', using default {default}")
        return float(default)


def _safe_bool(value: Optional[str], default: str) -> bool:
    return (_clean_env_value(value) or default).lower() == "true"


def validate_required_env() -> None:
    """
    Validate that the provider connection settings are present.
    """
    required_vars = [
        "FORGE_PROVIDER_BASE_URL",
        "FORGE_PROVIDER_API_KEY",
    ]

    missing_vars = [var for var in required_vars if not _clean_env_value(os.getenv(var))]
    if missing_vars:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing_vars)}"
        )


_config_cache: Optional[Dict[str, Any]] = None
_cache_timestamp: float = 0
CACHE_TTL = 300  # 5 minute cache TTL


def load_config(refresh: bool = False) -> Dict[str, Any]:
    """
    Load configuration from environment variables with caching.
    """
    global _config_cache, _cache_timestamp

    current_time = time.time()
    if not refresh and _config_cache and (current_time - _cache_timestamp) < CACHE_TTL:
        return _config_cache

    data_dir = Path(os.getenv("FORGE_DATA_DIR", "forge_data"))

    config = {
        # STORAGE
        "FORGE_DATA_DIR": data_dir,
        "FORGE_JOBS_DIR": Path(os.getenv("FORGE_JOBS_DIR", str(data_dir / "jobs"))),
        "FORGE_CACHE_DIR": Path(os.getenv("FORGE_CACHE_DIR", str(data_dir / "cache"))),
        "FORGE_LEDGER_PATH": Path(os.getenv("FORGE_LEDGER_PATH", str(data_dir / "ledger.jsonl"))),

        # DISPATCH
        "FORGE_WORKERS": _safe_int(os.getenv("FORGE_WORKERS"), "5", "FORGE_WORKERS"),
        "FORGE_QUEUE_SIZE": _safe_int(os.getenv("FORGE_QUEUE_SIZE"), "100", "FORGE_QUEUE_SIZE"),

        # POLLING
        "FORGE_POLL_INTERVAL_S": _safe_float(os.getenv("FORGE_POLL_INTERVAL_S"), "10", "FORGE_POLL_INTERVAL_S"),
        "FORGE_SUBMIT_TIMEOUT_S": _safe_float(os.getenv("FORGE_SUBMIT_TIMEOUT_S"), "300", "FORGE_SUBMIT_TIMEOUT_S"),
        "FORGE_QUERY_TIMEOUT_S": _safe_float(os.getenv("FORGE_QUERY_TIMEOUT_S"), "60", "FORGE_QUERY_TIMEOUT_S"),
        "FORGE_POLL_MAX_CONSECUTIVE_ERRORS": _safe_int(
            os.getenv("FORGE_POLL_MAX_CONSECUTIVE_ERRORS"), "30", "FORGE_POLL_MAX_CONSECUTIVE_ERRORS"
        ),
        # 0 disables the wall-clock budget
        "FORGE_POLL_MAX_SECONDS": _safe_float(os.getenv("FORGE_POLL_MAX_SECONDS"), "0", "FORGE_POLL_MAX_SECONDS"),

        # RESULT CACHE
        "FORGE_CACHE_TTL_S": _safe_float(os.getenv("FORGE_CACHE_TTL_S"), "86400", "FORGE_CACHE_TTL_S"),
        "FORGE_CACHE_MAX_ENTRIES": _safe_int(os.getenv("FORGE_CACHE_MAX_ENTRIES"), "2000", "FORGE_CACHE_MAX_ENTRIES"),

        # PROVIDER
        "FORGE_PROVIDER_BASE_URL": _clean_env_value(os.getenv("FORGE_PROVIDER_BASE_URL")),
        "FORGE_PROVIDER_API_KEY": _clean_env_value(os.getenv("FORGE_PROVIDER_API_KEY")),  # never log
        "FORGE_PROVIDER_RESULT_FORMAT": (_clean_env_value(os.getenv("FORGE_PROVIDER_RESULT_FORMAT")) or "OBJ").upper(),
        "FORGE_PROVIDER_ENABLE_PBR": _safe_bool(os.getenv("FORGE_PROVIDER_ENABLE_PBR"), "false"),
        "FORGE_PROVIDER_MAX_RETRIES": _safe_int(os.getenv("FORGE_PROVIDER_MAX_RETRIES"), "3", "FORGE_PROVIDER_MAX_RETRIES"),
        "FORGE_PROVIDER_RETRY_DELAY_S": _safe_float(
            os.getenv("FORGE_PROVIDER_RETRY_DELAY_S"), "2", "FORGE_PROVIDER_RETRY_DELAY_S"
        ),

        # LOGGING
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "LOG_JSONL_PATH": os.getenv("LOG_JSONL_PATH", "logs/forge3d.jsonl"),
    }

    _config_cache = config
    _cache_timestamp = current_time
    logger.debug(f"Configuration cached for {CACHE_TTL}s")

    return config
