"""
Configuration Loader for studyportal.

Config sources in priority order:
1. Environment variables
2. JSON config file (STUDYPORTAL_CONFIG_FILE, default ~/.studyportal/config.json)
3. Schema defaults

Usage:
    from studyportal.config_loader import get_config, load_config, validate_config

    load_config()
    cache_size = get_config("ATTACHMENT_CACHE_SIZE", type_=int)

    for problem in validate_config():
        logger.warning(problem)
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Type

logger = logging.getLogger("studyportal.config")

DEFAULT_CONFIG_FILE = str(Path.home() / ".studyportal" / "config.json")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_config_lock = threading.RLock()
_config_cache: Dict[str, Any] = {}
_config_sources: Dict[str, str] = {}
_config_file_path: Optional[str] = None


# =============================================================================
# Type Conversion
# =============================================================================

def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


TYPE_CONVERTERS: Dict[Type, Callable[[Any], Any]] = {
    bool: _to_bool,
    int: int,
    float: float,
    str: str,
}


# =============================================================================
# Schema
# =============================================================================

class ConfigKey(NamedTuple):
    """A known setting: its default, the type it converts to, and an optional check."""

    default: Any
    type_: Type = str
    check: Optional[Callable[[Any], Optional[str]]] = None


def _positive(value: Any) -> Optional[str]:
    return None if value > 0 else f"must be positive, got {value}"


def _non_negative(value: Any) -> Optional[str]:
    return None if value >= 0 else f"must be 0 (disabled) or more, got {value}"


def _log_level(value: Any) -> Optional[str]:
    return None if str(value).upper() in LOG_LEVELS else f"unknown log level {value!r}"


CONFIG_SCHEMA: Dict[str, ConfigKey] = {
    "STUDYPORTAL_DATA_DIR": ConfigKey(str(Path.home() / ".studyportal")),
    "STORAGE_DB_FILE": ConfigKey("storage.db"),
    # Browser local storage gives roughly 5MB per origin
    "STORAGE_QUOTA_BYTES": ConfigKey(5 * 1024 * 1024, int, _non_negative),
    "ATTACHMENT_CACHE_SIZE": ConfigKey(10, int, _positive),
    "SYNC_INTERVAL_SECONDS": ConfigKey(1.0, float, _positive),
    "EXPORT_FILE_NAME": ConfigKey("study_portal_export.json"),
    "LOG_LEVEL": ConfigKey("INFO", str, _log_level),
}


# =============================================================================
# Core Functions
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the configuration from defaults, the config file and the environment.

    Args:
        config_path: JSON file to read. Falls back to STUDYPORTAL_CONFIG_FILE,
            then DEFAULT_CONFIG_FILE.

    Returns:
        The merged configuration (raw values, not type-converted)
    """
    global _config_cache, _config_sources, _config_file_path

    with _config_lock:
        _config_file_path = (
            config_path
            or os.environ.get("STUDYPORTAL_CONFIG_FILE")
            or DEFAULT_CONFIG_FILE
        )

        config: Dict[str, Any] = {}
        sources: Dict[str, str] = {}

        for key, spec in CONFIG_SCHEMA.items():
            config[key] = spec.default
            sources[key] = "default"

        for key, value in _read_config_file(_config_file_path).items():
            config[key] = value
            sources[key] = "file"

        # Environment wins, including for keys only the file mentions
        for key in set(config):
            env_value = os.environ.get(key)
            if env_value is not None:
                config[key] = env_value
                sources[key] = "env"

        _config_cache = config
        _config_sources = sources

        logger.debug(
            f"Config loaded from {_config_file_path}: "
            f"{sum(1 for s in sources.values() if s != 'default')} overrides"
        )
        return dict(config)


def _read_config_file(path: str) -> Dict[str, Any]:
    file_path = Path(path)
    if not file_path.exists():
        return {}

    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring config file {path}, invalid JSON: {e}")
        return {}
    except OSError as e:
        logger.warning(f"Ignoring config file {path}, unreadable: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}, top level is not an object")
        return {}
    return data


def _convert(value: Any, type_: Type) -> Any:
    converter = TYPE_CONVERTERS.get(type_, type_)
    return converter(value)


def get_config(
    key: str,
    default: Any = None,
    type_: Optional[Type] = None,
) -> Any:
    """
    Current value of a setting.

    The environment is consulted on every call, so a variable set after
    load_config() still takes effect.

    Args:
        key: Setting name
        default: Returned when the key is unknown or fails conversion
        type_: Convert to this type (bool, int, float, str)
    """
    with _config_lock:
        value = os.environ.get(key)
        if value is None:
            value = _config_cache.get(key)
        if value is None and key in CONFIG_SCHEMA:
            value = CONFIG_SCHEMA[key].default
        if value is None:
            return default

        if type_ is None:
            return value
        try:
            return _convert(value, type_)
        except (TypeError, ValueError) as e:
            logger.warning(f"Config {key}={value!r} is not a valid {type_.__name__}: {e}")
            return default


def reload_config() -> Dict[str, Any]:
    """Re-read the config file used by the last load_config()."""
    with _config_lock:
        return load_config(config_path=_config_file_path)


def validate_config() -> List[str]:
    """
    Check every schema setting converts to its type and passes its check.

    Returns:
        Problems found, one message per setting (empty if valid)
    """
    problems: List[str] = []

    with _config_lock:
        for key, spec in CONFIG_SCHEMA.items():
            raw = get_config(key)
            try:
                value = _convert(raw, spec.type_)
            except (TypeError, ValueError):
                problems.append(f"{key}: expected {spec.type_.__name__}, got {raw!r}")
                continue

            if spec.check is not None:
                problem = spec.check(value)
                if problem:
                    problems.append(f"{key}: {problem}")

    return problems


def get_config_debug_info() -> str:
    """Every loaded setting with the source it came from."""
    with _config_lock:
        lines = [f"Configuration Debug Info ({_config_file_path}):", "-" * 40]
        for key in sorted(_config_cache):
            lines.append(f"  {key}: {_config_cache[key]!r} [{_config_sources.get(key, '?')}]")
        return "\n".join(lines)


# =============================================================================
# Convenience Functions
# =============================================================================

def get_db_path() -> str:
    """Absolute path of the storage database file."""
    data_dir = get_config("STUDYPORTAL_DATA_DIR")
    return str(Path(data_dir) / get_config("STORAGE_DB_FILE"))


def get_cache_size() -> int:
    return get_config("ATTACHMENT_CACHE_SIZE", default=10, type_=int)


def get_quota_bytes() -> Optional[int]:
    """Storage quota in bytes, or None when disabled (0)."""
    return get_config("STORAGE_QUOTA_BYTES", default=0, type_=int) or None


def get_sync_interval() -> float:
    return get_config("SYNC_INTERVAL_SECONDS", default=1.0, type_=float)


def get_log_level() -> int:
    """LOG_LEVEL as a logging module constant; INFO if unrecognized."""
    name = str(get_config("LOG_LEVEL", default="INFO")).upper()
    return getattr(logging, name) if name in LOG_LEVELS else logging.INFO


__all__ = [
    "get_config",
    "load_config",
    "reload_config",
    "validate_config",
    "get_config_debug_info",
    "get_db_path",
    "get_cache_size",
    "get_quota_bytes",
    "get_sync_interval",
    "get_log_level",
    "CONFIG_SCHEMA",
    "DEFAULT_CONFIG_FILE",
]
