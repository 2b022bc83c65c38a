"""Configuration resolution with precedence handling.

Programmatic > Environment > Project file > Home file > Defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import loaders
from .schema import BatchSettings
from .types import FIELD_ORDER, ConfigOrigin, ResolvedConfig


class SourceTracker:
    """Tracks the origin of each field while sources are merged."""

    def __init__(self) -> None:
        """Initialize an empty tracker."""
        self._origins: dict[str, ConfigOrigin] = {}

    def set_origin(self, field: str, origin: ConfigOrigin) -> None:
        """Record that `field` now comes from `origin`."""
        self._origins[field] = origin

    def get_source_map(self) -> dict[str, ConfigOrigin]:
        """Snapshot of the tracked origins."""
        return dict(self._origins)


class ConfigResolver:
    """Merges configuration sources and validates the result once."""

    def resolve(
        self,
        programmatic: dict[str, Any] | None = None,
        *,
        profile: str | None = None,
        use_env_file: str | Path | None = None,
        project_root: Path | None = None,
    ) -> ResolvedConfig:
        """Resolve configuration from all sources with proper precedence.

        Raises:
            ValueError: A value failed validation; the message names the
                offending fields and where they came from, or the selected
                profile exists in no file.
            ConfigFileError: A configuration file is malformed.
        """
        tracker = SourceTracker()
        merged: dict[str, Any] = {}
        profile = loaders.get_effective_profile(profile)

        if profile:
            available = loaders.list_profiles(project_root)
            if profile not in available["project"] + available["home"]:
                raise ValueError(
                    f"Profile '{profile}' not found. Available profiles: "
                    f"{available['project'] + available['home']}"
                )

        if use_env_file:
            loaders.load_env_file(use_env_file)

        layers: list[tuple[ConfigOrigin, dict[str, Any]]] = [
            ("default", BatchSettings.defaults()),
            ("file", loaders.load_home(profile)),
            ("file", loaders.load_pyproject(profile, project_root)),
            ("env", loaders.load_env()),
            ("programmatic", dict(programmatic or {})),
        ]
        for origin, values in layers:
            for field, value in values.items():
                if field in FIELD_ORDER:  # Only known fields
                    merged[field] = value
                    tracker.set_origin(field, origin)

        source_map = tracker.get_source_map()
        try:
            settings = BatchSettings(**merged)
        except ValidationError as e:
            offending = sorted(
                {
                    f"{err['loc'][0]} (from {source_map.get(str(err['loc'][0]), 'default')})"
                    for err in e.errors()
                    if err["loc"]
                }
            )
            raise ValueError(
                f"Configuration validation failed for {', '.join(offending)}: {e}"
            ) from e

        values = settings.to_dict()
        return ResolvedConfig(
            **{f: values[f] for f in FIELD_ORDER},
            origin=source_map,
        )
