"""config.py — Configuration loading from testgate.toml."""

import copy
import logging
import os
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

logger = logging.getLogger(__name__)


def get_state_root() -> Path:
    """User-level state directory ($TESTGATE_HOME or ~/.claude/test_mode)."""
    env_root = os.environ.get("TESTGATE_HOME")
    if env_root:
        return Path(env_root).expanduser()
    return Path.home() / ".claude" / "test_mode"


def get_config_path() -> Path:
    return get_state_root() / "config" / "testgate.toml"


_DEFAULTS = {
    "validation": {
        "max_json_bytes": 32 * 1024,
        "max_path_length": 4096,
    },
    "backups": {
        "retention": 10,
    },
    "audit": {
        "max_log_bytes": 1024 * 1024,
        "retention_days": 30,
        "compress": True,
        "burst_window_seconds": 300,
        "burst_threshold": 10,
    },
    "decision": {
        "extra_dangerous_patterns": [],
        "extra_allowed_patterns": [],
    },
    "mode": {
        "default_scope": "all",
        "default_duration": "1h",
        "default_strict": False,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base, recursing into nested dicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def get_config() -> dict:
    """Load config from testgate.toml, merged with defaults.

    A missing file yields the defaults. An unreadable or malformed file is
    logged and ignored: hooks must never fail on configuration parsing.
    """
    config_path = get_config_path()
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                user_config = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Ignoring unreadable config %s: %s", config_path, e)
            return copy.deepcopy(_DEFAULTS)
        return _deep_merge(copy.deepcopy(_DEFAULTS), user_config)
    return copy.deepcopy(_DEFAULTS)


def ensure_config() -> Path:
    """Create default testgate.toml if it doesn't exist."""
    config_path = get_config_path()
    if config_path.exists():
        return config_path

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        "[validation]\n"
        "max_json_bytes = 32768\n"
        "max_path_length = 4096\n\n"
        "[backups]\n"
        "retention = 10\n\n"
        "[audit]\n"
        "max_log_bytes = 1048576\n"
        "retention_days = 30\n"
        "compress = true\n"
        "burst_window_seconds = 300\n"
        "burst_threshold = 10\n\n"
        "[decision]\n"
        "# Regexes appended to the built-in lists\n"
        "extra_dangerous_patterns = []\n"
        "extra_allowed_patterns = []\n\n"
        "[mode]\n"
        'default_scope = "all"\n'
        'default_duration = "1h"\n'
        "default_strict = false\n"
    )
    return config_path
