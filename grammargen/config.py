"""Runtime configuration for the generator worker subsystem.

Every setting is read from a ``GRAMMARGEN_<KEY>`` environment variable and
falls back to a default when unset or invalid.
"""

import os
from typing import Any, Optional

ENV_PREFIX = "GRAMMARGEN_"

# Default executor run inside the worker process
DEFAULT_EXECUTOR = "grammargen.worker.executor:AntlrToolExecutor"


def _env_name(key: str) -> str:
    return f"{ENV_PREFIX}{key.upper()}"


def get_setting(key: str, default: Any = None) -> Optional[str]:
    """
    Get a setting value by key.

    Args:
        key: Setting key (e.g. 'worker_startup_timeout_seconds')
        default: Default value if the variable is unset or empty

    Returns:
        Setting value as string, or default
    """
    value = os.getenv(_env_name(key))
    if value is None or value.strip() == "":
        return default
    return value


def get_setting_int(key: str, default: int = 0) -> int:
    value = get_setting(key)
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def get_setting_float(key: str, default: Optional[float] = None) -> Optional[float]:
    value = get_setting(key)
    if value is None:
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def get_setting_bool(key: str, default: bool = False) -> bool:
    value = get_setting(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def get_worker_startup_timeout() -> float:
    """Seconds to wait for a spawned worker to answer /healthz."""
    return get_setting_float("worker_startup_timeout_seconds", 60.0)


def get_worker_request_timeout() -> Optional[float]:
    """
    Seconds to wait for the /run response.

    Returns None (block until the worker answers or dies) unless
    GRAMMARGEN_WORKER_REQUEST_TIMEOUT_SECONDS is set to a positive number.
    """
    timeout = get_setting_float("worker_request_timeout_seconds", None)
    if timeout is None or timeout <= 0:
        return None
    return timeout


def get_worker_idle_timeout() -> int:
    """Seconds a worker waits for its request before exiting on its own."""
    return get_setting_int("worker_idle_timeout_seconds", 300)


def get_log_level() -> str:
    return (get_setting("log_level") or "INFO").upper()


def get_antlr_command() -> str:
    """
    Get the ANTLR tool command with priority order:
    1. Environment variable (GRAMMARGEN_ANTLR_COMMAND)
    2. Default ('antlr4', as installed by antlr4-tools)
    """
    return get_setting("antlr_command") or "antlr4"
