"""Durable auth profile store: file format and cross-process locking.

- :mod:`authprofiles.store.file` -- parse, dump and atomically write the
  JSON store file.
- :class:`StoreAccessor` -- the locked read-modify-write accessor every
  mutation goes through.
"""

from authprofiles.store.file import dump_store, load_store, parse_store, write_store
from authprofiles.store.lock import StoreAccessor

__all__ = [
    "StoreAccessor",
    "dump_store",
    "load_store",
    "parse_store",
    "write_store",
]
