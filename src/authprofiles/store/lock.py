"""Cross-process locked access to the store file.

:class:`StoreAccessor` is the only way the rest of the package touches the
store on disk. Every mutation runs inside :meth:`StoreAccessor.with_lock`,
which serialises load -> mutate -> atomic write across OS processes using an
advisory lock file (``<store>.lock``) managed by :mod:`filelock`.

Reads that do not mutate (health summaries, failover selection) use
:meth:`StoreAccessor.read`, which never takes the lock and therefore never
blocks a writer.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Union

from filelock import FileLock, Timeout

from authprofiles.exceptions import LockTimeout, StoreCorrupt
from authprofiles.models import AuthProfileStore
from authprofiles.store.file import load_store, write_store

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0
READ_RETRIES = 3
READ_RETRY_DELAY_SECONDS = 0.05

Updater = Callable[[AuthProfileStore], bool]
"""Mutates the store in place and returns ``True`` if anything changed."""


class StoreAccessor:
    """Locked read-modify-write access to one store file.

    No in-memory copy is kept between calls: every :meth:`with_lock`
    re-reads the file after acquiring the lock, so a write from another
    process is never lost.

    Args:
        path: Location of the store JSON file.
        lock_timeout: Seconds to wait for the lock before raising
            :class:`~authprofiles.exceptions.LockTimeout`.

    Example::

        accessor = StoreAccessor(Path("auth-profiles.json"))

        def bump(store):
            store.ensure_stats("openai:key-1").failure_count += 1
            return True

        accessor.with_lock(bump)
    """

    def __init__(
        self,
        path: Union[str, Path],
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")
        self._lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        """The store file path."""
        return self._path

    @property
    def lock_path(self) -> Path:
        """The advisory lock file path."""
        return self._lock_path

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the exclusive store lock for the duration of the block.

        Raises:
            LockTimeout: If the lock is not acquired within the timeout.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self._lock_path), timeout=self._lock_timeout, mode=0o600)
        try:
            lock.acquire()
        except Timeout as exc:
            logger.warning(
                "Store lock %s not acquired within %ss", self._lock_path, self._lock_timeout
            )
            raise LockTimeout(str(self._lock_path), self._lock_timeout) from exc
        try:
            yield
        finally:
            lock.release()

    def with_lock(self, updater: Updater) -> AuthProfileStore:
        """Run one locked read-modify-write cycle.

        Loads the current store (an empty one if the file is absent), passes
        it to *updater*, and writes it back atomically only when *updater*
        returns ``True``. If *updater* raises, nothing is written.

        Returns:
            The store as it stands after the update.

        Raises:
            LockTimeout: If the lock cannot be acquired in time.
            StoreCorrupt: If the on-disk file cannot be parsed; the file is
                left untouched.
        """
        with self.locked():
            store = load_store(self._path)
            changed = updater(store)
            if changed:
                write_store(self._path, store)
        return store

    def read(self) -> AuthProfileStore:
        """Return an unlocked snapshot of the store.

        Writers replace the file atomically, so a parse failure here is
        retried a few times before being reported as corruption.

        Raises:
            StoreCorrupt: If the file still cannot be parsed after retries.
        """
        for attempt in range(READ_RETRIES + 1):
            try:
                return load_store(self._path)
            except StoreCorrupt:
                if attempt == READ_RETRIES:
                    raise
                logger.debug("Store %s unreadable, retrying (%d)", self._path, attempt + 1)
                time.sleep(READ_RETRY_DELAY_SECONDS)
        raise AssertionError("unreachable")  # pragma: no cover
