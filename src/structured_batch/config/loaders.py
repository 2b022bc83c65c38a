"""Raw configuration sources: environment, project file and home file.

Loaders return plain dictionaries and do no validation; the resolver merges
them and validates the result once.
"""

from __future__ import annotations

import os
from pathlib import Path
import tomllib
from typing import Any

import dotenv

from .schema import ENV_PREFIX

CONFIG_TOOL_NAME = "structured_batch"

# Meta/control variables that steer resolution but aren't config fields
META_ENV_FIELDS = {"profile", "pyproject_path", "config_home", "telemetry"}


class ConfigFileError(Exception):
    """Raised when a configuration file exists but cannot be parsed."""

    def __init__(
        self, file_path: Path, message: str, cause: Exception | None = None
    ) -> None:
        """Initialize with file path, message, and optional cause."""
        self.file_path = file_path
        self.message = message
        self.cause = cause
        super().__init__(f"Config file error in {file_path}: {message}")


# --- Paths ---


def get_pyproject_path(project_root: Path | None = None) -> Path:
    """Project file location; ``STRUCTURED_BATCH_PYPROJECT_PATH`` wins."""
    override = os.getenv(f"{ENV_PREFIX}PYPROJECT_PATH")
    if override:
        return Path(override)
    return Path(project_root or Path.cwd()) / "pyproject.toml"


def get_home_config_path() -> Path:
    """Home file location; ``STRUCTURED_BATCH_CONFIG_HOME`` wins."""
    override = os.getenv(f"{ENV_PREFIX}CONFIG_HOME")
    if override:
        return Path(override)
    return Path.home() / ".config" / f"{CONFIG_TOOL_NAME}.toml"


def get_effective_profile(profile: str | None = None) -> str | None:
    """Explicit profile, else ``STRUCTURED_BATCH_PROFILE``, else None."""
    return profile or os.getenv(f"{ENV_PREFIX}PROFILE") or None


# --- Environment ---


def load_env_file(env_file: str | Path) -> None:
    """Load a ``.env`` file without overriding variables already set.

    Raises:
        FileNotFoundError: The file does not exist.
    """
    path = Path(env_file)
    if not path.exists():
        raise FileNotFoundError(f"Environment file not found: {path}")
    dotenv.load_dotenv(path, override=False)


def load_env() -> dict[str, Any]:
    """Collect ``STRUCTURED_BATCH_*`` variables as raw strings, keyed by field."""
    config: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.upper().startswith(ENV_PREFIX):
            continue
        field = key[len(ENV_PREFIX) :].lower()
        if field in META_ENV_FIELDS:
            continue
        config[field] = value
    return config


# --- Files ---


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigFileError(path, f"Failed to parse TOML: {e}", cause=e) from e


def _overlay_profile(section: dict[str, Any], profile: str | None) -> dict[str, Any]:
    config = {k: v for k, v in section.items() if k != "profiles"}
    if profile:
        config.update(section.get("profiles", {}).get(profile, {}))
    return config


def load_pyproject(
    profile: str | None = None, project_root: Path | None = None
) -> dict[str, Any]:
    """``[tool.structured_batch]`` plus the selected profile overlay."""
    data = _read_toml(get_pyproject_path(project_root))
    section = data.get("tool", {}).get(CONFIG_TOOL_NAME, {})
    return _overlay_profile(section, get_effective_profile(profile))


def load_home(profile: str | None = None) -> dict[str, Any]:
    """Root-level keys of the home file plus ``[profiles.<name>]``."""
    data = _read_toml(get_home_config_path())
    return _overlay_profile(data, get_effective_profile(profile))


def list_profiles(project_root: Path | None = None) -> dict[str, list[str]]:
    """Profile names available in the project and home files."""
    project = _read_toml(get_pyproject_path(project_root))
    home = _read_toml(get_home_config_path())
    return {
        "project": sorted(
            project.get("tool", {}).get(CONFIG_TOOL_NAME, {}).get("profiles", {})
        ),
        "home": sorted(home.get("profiles", {})),
    }
