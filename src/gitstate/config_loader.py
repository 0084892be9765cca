"""Configuration loading and merging for gitstate.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli on 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import GitStateConfig


CONFIG_FILENAME = "config.toml"

# Directory names
USER_CONFIG_DIR = ".gitstate"
PROJECT_CONFIG_DIR = ".gitstate"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    # Git
    "GITSTATE_GIT_BINARY": (["git"], "binary"),
    "GITSTATE_LFS_BUNDLE_DIR": (["git"], "lfs_bundle_dir"),
    # Locking
    "GITSTATE_USE_LFS_LOCKING": (["locking"], "use_lfs_locking"),
    "GITSTATE_LOCK_USER": (["locking"], "lock_user"),
    "GITSTATE_LOCK_CACHE_TTL": (["locking"], "cache_ttl"),
    "GITSTATE_LOCKABLE_PATTERNS": (["locking"], "lockable_patterns"),
    # Remote
    "GITSTATE_STATUS_BRANCHES": (["remote"], "status_branches"),
    "GITSTATE_CONTENT_DIRS": (["remote"], "content_dirs"),
    # Runner
    "GITSTATE_MAX_FILES_PER_BATCH": (["runner"], "max_files_per_batch"),
    "GITSTATE_COMMAND_TIMEOUT": (["runner"], "timeout"),
    # Logging
    "GITSTATE_LOG_LEVEL": (["logging"], "level"),
    "GITSTATE_LOG_DIR": (["logging"], "dir"),
    "GITSTATE_LOG_MAX_BYTES": (["logging"], "max_bytes"),
    "GITSTATE_LOG_BACKUP_COUNT": (["logging"], "backup_count"),
    "GITSTATE_LOG_DISABLE_FILE": (["logging"], "disable_file"),
}

# Keys whose environment value is a comma-separated list
_LIST_KEYS = {"lockable_patterns", "status_branches", "content_dirs"}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.gitstate/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Get project-level config directory (.gitstate/).

    Searches upward from project_path to find .gitstate/ directory.
    """
    if project_path is None:
        project_path = Path.cwd()

    if not project_path.is_absolute():
        project_path = project_path.resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir():
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _env_to_config_key(env_var: str) -> tuple[list[str], str]:
    """Map environment variable to config path.

    Examples:
        GITSTATE_LOCK_USER -> (["locking"], "lock_user")
        GITSTATE_LOG_DIR -> (["logging"], "dir")
    """
    return ENV_MAPPING.get(env_var, ([], env_var))


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = _deep_merge({}, config_dict)

    for env_var in ENV_MAPPING:
        value = os.getenv(env_var)
        if value is None:
            continue

        section_path, key_name = _env_to_config_key(env_var)

        current = result
        for section in section_path:
            if section not in current:
                current[section] = {}
            current = current[section]

        if key_name in _LIST_KEYS:
            current[key_name] = [part.strip() for part in value.split(",") if part.strip()]
        else:
            # Type conversion happens during Pydantic validation
            current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> GitStateConfig:
    """Load and merge gitstate configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.gitstate/config.toml)
    3. Project config (.gitstate/config.toml)
    4. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If config files are invalid
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                config_dict = _deep_merge(config_dict, _load_toml(project_config_path))
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}")

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return GitStateConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Get paths to the user and project config files."""
    project_dir = _get_project_config_dir(project_path)
    return {
        "user_config": _get_user_config_dir() / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
    }


def export_logging_env(config: GitStateConfig) -> None:
    """Expose logging settings to the observability layer.

    Explicit environment variables win over the config file.
    """
    log = config.logging
    os.environ.setdefault("GITSTATE_LOG_LEVEL", log.level)
    if log.dir:
        os.environ.setdefault("GITSTATE_LOG_DIR", str(Path(log.dir).expanduser()))
    os.environ.setdefault("GITSTATE_LOG_MAX_BYTES", str(log.max_bytes))
    os.environ.setdefault("GITSTATE_LOG_BACKUP_COUNT", str(log.backup_count))
    if log.disable_file:
        os.environ.setdefault("GITSTATE_LOG_DISABLE_FILE", "1")


# Global cached config (thread-safe)
_cached_config: Optional[GitStateConfig] = None
_cached_project_path: Optional[Path] = None
_config_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> GitStateConfig:
    """Get cached config, loading if necessary."""
    global _cached_config, _cached_project_path

    if project_path and str(project_path):
        normalized_path = project_path.resolve()
    else:
        normalized_path = None

    with _config_lock:
        if (
            force_reload
            or _cached_config is None
            or _cached_project_path != normalized_path
        ):
            _cached_config = load_config(project_path)
            _cached_project_path = normalized_path

        return _cached_config


def clear_config_cache() -> None:
    """Clear cached config (thread-safe)."""
    global _cached_config, _cached_project_path
    with _config_lock:
        _cached_config = None
        _cached_project_path = None
