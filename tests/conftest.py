"""
Global test configuration with support for different test types.
"""

from collections.abc import Generator
from contextlib import contextmanager, suppress
import logging
import os
from unittest.mock import patch

import pytest

from structured_batch.backends.mock import ScriptedBackend
from structured_batch.config import FrozenConfig
from structured_batch.core.schema import array_of, object_of, string
from structured_batch.features.registry import FeatureConfig, FeatureRegistry

ENV_PREFIX = "STRUCTURED_BATCH_"


# --- Environment Isolation (Autouse) ---
@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Tests should only see environment that they explicitly set.

    Opt-in escape hatch: mark a test with @pytest.mark.allow_dotenv
    to permit .env loading for that specific test.
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_structured_batch_env(request, monkeypatch):
    """Ensure a clean STRUCTURED_BATCH_* environment for each test.

    Escape hatch: @pytest.mark.allow_env_pollution keeps the current env.
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    # Avoid DEBUG toggles affecting telemetry paths
    monkeypatch.delenv("DEBUG", raising=False)


@pytest.fixture(autouse=True)
def neutral_home_config(request, monkeypatch, tmp_path):
    """Point home-config path to an isolated temp file by default.

    Prevents reading a developer's real ~/.config/structured_batch.toml.

    Escape hatch: mark test with @pytest.mark.allow_real_home_config.
    """
    if request.node.get_closest_marker("allow_real_home_config"):
        return

    fake_home_dir = tmp_path / "home_config_isolated"
    fake_home_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv(
        f"{ENV_PREFIX}CONFIG_HOME", str(fake_home_dir / "structured_batch.toml")
    )


@pytest.fixture
def isolated_config_sources(tmp_path):
    """Completely isolate configuration sources for testing.

    Returns a context manager factory that writes the given project and home
    TOML content, sets the given environment variables (prefix added
    automatically) and points path overrides at the temp files.
    """

    @contextmanager
    def _setup(
        *,
        pyproject_content: str = "",
        home_content: str = "",
        env_vars: dict[str, str] | None = None,
    ) -> Generator[None]:
        clean_env = {k: v for k, v in os.environ.items() if not k.startswith(ENV_PREFIX)}
        if env_vars:
            for key, value in env_vars.items():
                if not key.startswith(ENV_PREFIX):
                    key = f"{ENV_PREFIX}{key.upper()}"
                clean_env[key] = value

        project_dir = tmp_path / "project"
        project_dir.mkdir(exist_ok=True)
        pyproject_path = project_dir / "pyproject.toml"

        home_dir = tmp_path / "home"
        home_dir.mkdir(exist_ok=True)
        home_config_path = home_dir / "structured_batch.toml"

        if pyproject_content:
            pyproject_path.write_text(pyproject_content)
        if home_content:
            home_config_path.write_text(home_content)

        clean_env[f"{ENV_PREFIX}PYPROJECT_PATH"] = str(pyproject_path)
        clean_env[f"{ENV_PREFIX}CONFIG_HOME"] = str(home_config_path)

        with patch.dict(os.environ, clean_env, clear=True):
            yield

    return _setup


# --- Logging Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Sets the log level for noisy external libraries to WARNING."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def pytest_configure(config):
    """Configure custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "integration: Component integration tests with scripted backends",
        "slow: Tests that take >1 second",
        "allow_dotenv: Permit python-dotenv to load .env files",
        "allow_env_pollution: Keep STRUCTURED_BATCH_* variables from the outer env",
        "allow_real_home_config: Read the real home config file",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# --- Core Fixtures ---


@pytest.fixture
def fast_config() -> FrozenConfig:
    """Deterministic config with small bounds for executor tests."""
    return FrozenConfig(
        max_retries=2,
        request_timeout_s=5.0,
        concurrency=2,
        breaker_threshold=5,
        yield_every=10,
    )


@pytest.fixture
def chapter_schema():
    """Object wrapping a single array of chapter objects."""
    chapter = object_of(
        {"title": string(), "start": string()}, required=["title", "start"]
    )
    return object_of({"chapters": array_of(chapter)}, required=["chapters"])


@pytest.fixture
def registry(chapter_schema) -> FeatureRegistry:
    """A fresh registry with one structured and one text feature."""
    return FeatureRegistry(
        [
            FeatureConfig(
                id="chapters",
                name="Chapter detection",
                system_prompt="Split the transcript into chapters.",
                user_prompt_template="Transcript:\n{{ text }}",
                category="structural",
                response_schema=chapter_schema,
            ),
            FeatureConfig(
                id="revise",
                name="Revision",
                system_prompt="Revise the text.",
                user_prompt_template="{{ text }}",
                category="text",
                clean_text=True,
            ),
        ]
    )


@pytest.fixture
def scripted_backend():
    """Factory for `ScriptedBackend` instances."""

    def _make(script, **kwargs) -> ScriptedBackend:
        return ScriptedBackend(script, **kwargs)

    return _make
