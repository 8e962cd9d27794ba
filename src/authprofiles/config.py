"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for authprofiles:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.authprofiles/`` on macOS and Windows. See :func:`get_config_dir`
  and :func:`get_data_dir`.
* **Settings** -- A single :class:`~authprofiles.models.Settings` JSON file
  holding the store location, lock timeout, cooldown knobs and OAuth
  provider endpoints.
* **Precedence resolution** -- :func:`resolve_settings` merges CLI flags,
  environment variables and the settings file into the effective settings.
* **Atomic writes** -- :func:`atomic_write` (temp file + ``fsync`` +
  ``os.replace``) is shared with the store file writer so that no reader
  ever observes a torn file.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from authprofiles.exceptions import ConfigError
from authprofiles.models import Settings

_APP_NAME = "authprofiles"
_CONFIG_FILENAME = "config.json"
STORE_FILENAME = "auth-profiles.json"

ENV_STORE_PATH = "AUTHPROFILES_STORE"
ENV_LOCK_TIMEOUT = "AUTHPROFILES_LOCK_TIMEOUT"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/authprofiles/`` (default
    ``~/.config/authprofiles/``). On macOS/Windows: ``~/.authprofiles/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (store file, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/authprofiles/`` (default
    ``~/.local/share/authprofiles/``). On macOS/Windows:
    ``~/.authprofiles/data/``. The directory is created with ``0o700``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def default_store_path() -> Path:
    """Return the default store file location under the data directory."""
    return get_data_dir() / STORE_FILENAME


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. The temp file is
    flushed and fsynced before the rename, so a crash leaves either the old
    or the new content in place. On any failure the temp file is removed.

    Args:
        path: Destination file.
        data: Full text content.
        mode: Optional permission bits applied to the temp file before any
            content is written (e.g. ``0o600`` for secrets).
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Settings ---


def settings_path() -> Path:
    """Path to the settings file."""
    return get_config_dir() / _CONFIG_FILENAME


def load_settings() -> Settings:
    """Load settings from the config directory.

    Returns:
        The deserialised :class:`~authprofiles.models.Settings`, or a
        default instance when the file does not exist.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            validation.
    """
    path = settings_path()
    if not path.is_file():
        return Settings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings at {path}: {exc}") from exc


def save_settings(settings: Settings) -> None:
    """Persist settings atomically to the config directory."""
    data = settings.model_dump(mode="json", exclude_none=True)
    atomic_write(settings_path(), json.dumps(data, indent=2) + "\n")


def resolve_settings(
    cli_store_path: Optional[str] = None,
    cli_lock_timeout: Optional[float] = None,
) -> Settings:
    """Resolve settings with the full precedence chain.

    Precedence (high to low):
        1. CLI flags (``--store``, ``--lock-timeout``)
        2. Environment (``AUTHPROFILES_STORE``, ``AUTHPROFILES_LOCK_TIMEOUT``)
        3. Settings file (``~/.config/authprofiles/config.json``)
        4. Defaults

    Raises:
        ConfigError: If the settings file is invalid or an override cannot
            be parsed.
    """
    settings = load_settings()

    env_store = os.environ.get(ENV_STORE_PATH)
    if env_store:
        settings.store_path = env_store
    if cli_store_path:
        settings.store_path = cli_store_path

    env_timeout = os.environ.get(ENV_LOCK_TIMEOUT)
    if env_timeout:
        try:
            settings.lock_timeout_seconds = float(env_timeout)
        except ValueError as exc:
            raise ConfigError(
                f"{ENV_LOCK_TIMEOUT} must be a number of seconds, got {env_timeout!r}"
            ) from exc
    if cli_lock_timeout is not None:
        settings.lock_timeout_seconds = cli_lock_timeout

    if settings.lock_timeout_seconds <= 0:
        raise ConfigError("Lock timeout must be positive")
    return settings


def resolve_store_path(settings: Settings) -> Path:
    """Return the effective store file path for *settings*."""
    if settings.store_path:
        return Path(settings.store_path).expanduser()
    return default_store_path()
