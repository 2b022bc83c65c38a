"""Configuration for structured-batch.

Resolve once, freeze, then flow: `resolve_config()` merges programmatic
overrides, ``STRUCTURED_BATCH_*`` environment variables, the project file
(``[tool.structured_batch]`` in ``pyproject.toml``), the home file
(``~/.config/structured_batch.toml``) and defaults, and records where every
value came from. Library code only ever sees the resulting `FrozenConfig`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .loaders import ConfigFileError, list_profiles
from .resolver import ConfigResolver, SourceTracker
from .schema import BatchSettings
from .types import ConfigOrigin, FrozenConfig, ResolvedConfig, SourceMap

_resolver = ConfigResolver()


def resolve_config(
    programmatic: dict[str, Any] | None = None,
    *,
    profile: str | None = None,
    use_env_file: str | Path | None = None,
    project_root: Path | None = None,
) -> ResolvedConfig:
    """Resolve configuration from all sources.

    Example:
        config = resolve_config({"concurrency": 8}, profile="fast")
        print(config.audit())
        frozen = config.to_frozen()
    """
    return _resolver.resolve(
        programmatic=programmatic,
        profile=profile,
        use_env_file=use_env_file,
        project_root=project_root,
    )


__all__ = [  # noqa: RUF022
    "resolve_config",
    "list_profiles",
    "ResolvedConfig",
    "FrozenConfig",
    "SourceMap",
    "ConfigOrigin",
    "BatchSettings",
    "ConfigResolver",
    "SourceTracker",
    "ConfigFileError",
]
