"""
Configuration file loader for pagesync.

Provides convention-based config file discovery, env var interpolation, and
``PAGESYNC_*`` environment overrides.  Exactly one config file is read;
merging several profiles is the job of the caller.

Precedence (highest to lowest):
    Environment variables > .env file > YAML config > Built-in defaults

Usage:
    from pagesync.config_loader import load_config

    config = load_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from pagesync.config_schema import PageSyncConfig, build_config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with ``os.environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * Literal ``${`` with no closing ``}`` is left untouched.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no :- clause
        env_val = os.environ.get(var_name)
        if env_val is not None and env_val != "":
            return env_val
        if default is not None:
            return default
        return ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    """Walk a nested dict/list and interpolate env vars in all strings."""
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_file() -> Path | None:
    """Return the config file to use, or ``None`` for zero-config.

    Search order:
        1. ``PAGESYNC_CONFIG`` env var (explicit single path).
        2. ``.pagesync/config.yml`` in CWD (project-level)
        3. ``~/.config/pagesync/config.yml`` (XDG global)

    The first path that exists on disk wins.
    """
    candidates: list[Path] = []

    env_path = os.environ.get("PAGESYNC_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    candidates.append(Path.cwd() / ".pagesync" / "config.yml")
    candidates.append(
        Path.home() / ".config" / "pagesync" / "config.yml"
    )

    for path in candidates:
        if path.exists():
            return path
    return None


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load one YAML config file and interpolate env vars.

    Args:
        path: Explicit config file.  Discovered when ``None``.

    Returns:
        The parsed mapping, or an empty dict when no file exists.

    Raises:
        ValueError: If the file's root is not a mapping.
    """
    if path is None:
        path = discover_config_file()
    if path is None:
        logger.debug("No config file found, using zero-config defaults")
        return {}

    logger.debug("Loading config: %s", path)
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Config file {path} must contain a mapping, got {type(data).__name__}"
        )
    return _interpolate_recursive(data)


# ---------------------------------------------------------------------------
# 3. Environment overrides
# ---------------------------------------------------------------------------

# env var -> (section, key)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PAGESYNC_URL": ("remote", "url"),
    "PAGESYNC_USERNAME": ("remote", "username"),
    "PAGESYNC_TOKEN": ("remote", "token"),
    "PAGESYNC_SPACE": ("remote", "space_id"),
    "PAGESYNC_INSECURE": ("remote", "insecure"),
    "PAGESYNC_CONCURRENCY": ("sync", "concurrency_limit"),
    "PAGESYNC_RETRY_ATTEMPTS": ("sync", "retry_attempts"),
    "PAGESYNC_CONFLICT_STRATEGY": ("sync", "conflict_strategy"),
    "PAGESYNC_LOG_LEVEL": ("logging", "level"),
    "PAGESYNC_LOG_FILE": ("logging", "file"),
}


def apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *raw* with ``PAGESYNC_*`` env vars applied.

    Values are passed through as strings; pydantic coerces them to the
    field types (``"8"`` -> ``8``, ``"true"`` -> ``True``).
    """
    merged = {
        section: dict(values) if isinstance(values, dict) else values
        for section, values in raw.items()
    }
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        merged.setdefault(section, {})[key] = value
    return merged


def load_config(
    path: Path | None = None, dotenv: bool = True
) -> PageSyncConfig:
    """Load configuration with unified precedence.

    Args:
        path: Explicit config file path (discovered when ``None``).
        dotenv: Call ``load_dotenv()`` before reading env vars.

    Returns:
        Validated ``PageSyncConfig``.

    Raises:
        pydantic.ValidationError: If a value is out of range or mistyped.
    """
    if dotenv:
        load_dotenv()
    raw = apply_env_overrides(load_config_file(path))
    return build_config(raw)
