import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_MAX_AGE_SECONDS = 3600
DEFAULT_MAX_UPLOAD_SIZE = 5 * 1024 ** 3
DEFAULT_SHORT_URL_SERVICE = "https://suosuo.de/short"
DEFAULT_SHORT_URL_TIMEOUT_SECONDS = 5
DEFAULT_SWEEP_INTERVAL_MINUTES = 5
DEFAULT_SWEEP_WORKERS = 16
DEFAULT_DELETE_DELAY_MS = 100
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = 100
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120

logger = logging.getLogger("oneshare.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""

    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value.strip())
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    if value < min_value:
        logger.warning(
            "Value for %s below minimum %d: %s. Using default: %d",
            key,
            min_value,
            raw_value,
            default,
        )
        return default
    return value


def _get_bool_env(key: str, default: bool) -> bool:
    raw_value = os.environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid boolean for %s: %s. Using default: %s", key, raw_value, default)
    return default


def _get_str_env(key: str, default: str) -> str:
    raw_value = os.environ.get(key)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip()


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Read the relay configuration from the environment.

    Numeric values that fail to parse, or fall below their minimum, are
    replaced by their defaults so a typo in a deployment never takes the
    service down. ``overrides`` is applied last and is meant for tests and
    embedding.
    """

    storage_root = _resolve_env_path("ONESHARE_STORAGE_ROOT", BASE_DIR)
    config: Dict[str, Any] = {
        "max_age_seconds": _safe_int_env("MAX_AGE", DEFAULT_MAX_AGE_SECONDS, min_value=0),
        "max_upload_size": _safe_int_env("MAX_UPLOAD_SIZE", DEFAULT_MAX_UPLOAD_SIZE),
        "short_url_service": _get_str_env("SHORT_URL_SERVICE", DEFAULT_SHORT_URL_SERVICE),
        "short_url_enabled": _get_bool_env("ONESHARE_SHORT_URL_ENABLED", True),
        "short_url_timeout": _safe_int_env(
            "ONESHARE_SHORT_URL_TIMEOUT", DEFAULT_SHORT_URL_TIMEOUT_SECONDS
        ),
        "storage_root": storage_root,
        "objects_dir": _resolve_env_path("ONESHARE_OBJECTS_DIR", storage_root / "objects"),
        "logs_dir": _resolve_env_path("ONESHARE_LOGS_DIR", storage_root / "logs"),
        "static_dir": _resolve_env_path("ONESHARE_STATIC_DIR", BASE_DIR / "static"),
        "sweep_interval_minutes": _safe_int_env(
            "ONESHARE_SWEEP_INTERVAL_MINUTES", DEFAULT_SWEEP_INTERVAL_MINUTES
        ),
        "sweep_workers": _safe_int_env("ONESHARE_SWEEP_WORKERS", DEFAULT_SWEEP_WORKERS),
        "delete_delay_ms": _safe_int_env(
            "ONESHARE_DELETE_DELAY_MS", DEFAULT_DELETE_DELAY_MS, min_value=0
        ),
        "scheduler_enabled": _get_bool_env("ONESHARE_SCHEDULER_ENABLED", True),
        "rate_limit_enabled": _get_bool_env("ONESHARE_RATE_LIMIT_ENABLED", True),
        "upload_rate_limit_per_hour": _safe_int_env(
            "ONESHARE_RATE_LIMIT_UPLOADS_PER_HOUR", DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR
        ),
        "download_rate_limit_per_minute": _safe_int_env(
            "ONESHARE_RATE_LIMIT_DOWNLOADS_PER_MINUTE",
            DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
        ),
        "rate_limit_storage": _get_str_env("ONESHARE_RATE_LIMIT_STORAGE", "memory://"),
        "log_level": _get_str_env("LOG_LEVEL", "INFO").upper(),
    }
    if overrides:
        config.update(overrides)
    return config
