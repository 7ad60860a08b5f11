import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

DEFAULT_POOL_SIZE = 8
DEFAULT_DB_TIMEOUT_SECONDS = 30
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120

logger = logging.getLogger("fileserve.config")


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(
    environ: Mapping[str, str], key: str, default: int, min_value: int = 1
) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build the runtime settings from the process environment."""

    if environ is None:
        environ = os.environ

    storage_root = _resolve_env_path(environ, "FILESERVE_STORAGE_ROOT", Path.cwd())
    data_dir = _resolve_env_path(environ, "FILESERVE_DATA_DIR", storage_root / "data")
    logs_dir = _resolve_env_path(environ, "FILESERVE_LOGS_DIR", storage_root / "logs")
    db_path = _resolve_env_path(environ, "FILESERVE_DB_PATH", data_dir / "data.db")

    return {
        "storage_root": storage_root,
        "data_dir": data_dir,
        "logs_dir": logs_dir,
        "db_path": db_path,
        "db_pool_size": _safe_int_env(environ, "FILESERVE_DB_POOL_SIZE", DEFAULT_POOL_SIZE),
        "db_timeout_seconds": _safe_int_env(
            environ, "FILESERVE_DB_TIMEOUT_SECONDS", DEFAULT_DB_TIMEOUT_SECONDS
        ),
        "download_rate_limit_per_minute": _safe_int_env(
            environ,
            "FILESERVE_RATE_LIMIT_DOWNLOADS_PER_MINUTE",
            DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
        ),
        "rate_limit_storage": environ.get("FILESERVE_RATE_LIMIT_STORAGE", "memory://"),
        "log_level": environ.get("LOG_LEVEL", "INFO").upper(),
    }
