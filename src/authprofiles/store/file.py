"""Serialisation of the auth profile store file.

The store is a single JSON document holding ``profiles``, ``order``,
``usageStats`` and ``lastGood``. Files are written atomically via
:func:`~authprofiles.config.atomic_write` with ``0o600`` permissions so
that secrets are never world-readable, even momentarily.

Unlike the settings file, a store that fails to parse is never treated as
empty: :func:`load_store` raises :class:`~authprofiles.exceptions.StoreCorrupt`
and leaves the file alone.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from authprofiles.config import atomic_write
from authprofiles.exceptions import StoreCorrupt
from authprofiles.models import AuthProfileStore

logger = logging.getLogger(__name__)

STORE_FILE_MODE = 0o600


def parse_store(text: str, path: Path) -> AuthProfileStore:
    """Parse store JSON text.

    Raises:
        StoreCorrupt: On invalid JSON, a non-object document, unknown
            credential ``type`` tags, or any other validation failure.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StoreCorrupt(str(path), f"invalid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise StoreCorrupt(str(path), "top-level value is not an object")
    try:
        return AuthProfileStore.model_validate(data)
    except ValidationError as exc:
        raise StoreCorrupt(
            str(path), f"{exc.error_count()} validation error(s): {exc.errors()[0]['msg']}"
        ) from exc


def load_store(path: Path) -> AuthProfileStore:
    """Load the store from *path*, returning an empty store when the file is absent.

    An empty (zero-byte) file is also treated as absent; it can only be
    produced by an external tool, never by :func:`write_store`.

    Raises:
        StoreCorrupt: If the file exists but cannot be parsed.
    """
    if not path.is_file():
        return AuthProfileStore()
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        logger.debug("Store file %s is empty, treating as new", path)
        return AuthProfileStore()
    return parse_store(text, path)


def dump_store(store: AuthProfileStore) -> str:
    """Serialise *store* to the on-disk JSON representation."""
    data = store.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(data, indent=2) + "\n"


def write_store(path: Path, store: AuthProfileStore) -> None:
    """Persist *store* atomically with ``0o600`` permissions.

    Raises:
        OSError: If the file cannot be written (permissions, disk full, etc.).
    """
    atomic_write(path, dump_store(store), mode=STORE_FILE_MODE)
    logger.debug("Wrote %d profile(s) to %s", len(store.profiles), path)
