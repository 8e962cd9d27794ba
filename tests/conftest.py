"""Shared test fixtures for authprofiles.

Provides reusable fixtures for isolated config environments, a store on
disk, a controllable clock, managing output state, and running CLI
commands. These fixtures are automatically discovered by pytest and
available to all test modules without explicit imports.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from authprofiles.manager import AuthProfileManager
from authprofiles.models import Settings
from authprofiles.output import OutputFormat, OutputManager, reset_output, set_output
from authprofiles.store.lock import StoreAccessor
from authprofiles.timeutil import MS_PER_HOUR

NOW = 1_700_000_000_000
"""Fixed epoch-ms 'now' used across the suite."""


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, now: int = NOW) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    def advance_hours(self, hours: float) -> None:
        self.now += int(hours * MS_PER_HOUR)


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file"). Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME, XDG_CACHE_HOME, and XDG_DATA_HOME to
    subdirectories of tmp_path so that tests never touch real user
    config. Clears all AUTHPROFILES_* environment variables and changes
    the working directory to tmp_path.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("authprofiles.config._is_xdg_platform", lambda: True)

    for var in [
        "AUTHPROFILES_STORE",
        "AUTHPROFILES_LOCK_TIMEOUT",
        "AUTHPROFILES_REMOTE",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store_path(isolated_config: Path) -> Path:
    """A store file location inside the isolated data dir (not yet created)."""
    return isolated_config / "data" / "authprofiles" / "auth-profiles.json"


@pytest.fixture
def accessor(store_path: Path) -> StoreAccessor:
    return StoreAccessor(store_path, lock_timeout=5.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(accessor: StoreAccessor, clock: FakeClock) -> AuthProfileManager:
    """Manager over the isolated store with default settings and a fixed clock."""
    return AuthProfileManager(accessor, settings=Settings(), clock=clock)


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def json_output() -> OutputManager:
    """Install a JSON-format OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.JSON)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
