"""Probe the host for a usable storage backend."""

import logging
from pathlib import Path

from ..config import get_backend_preference, get_data_dir
from ..provider import StorageBackend, StorageError
from .json_file import JsonFileBackend
from .sqlite import SqliteBackend

logger = logging.getLogger(__name__)

BACKENDS: list[type[StorageBackend]] = [SqliteBackend, JsonFileBackend]


def select_backend(data_dir: Path | None = None, preference: str | None = None) -> StorageBackend:
    """Return the first available backend, preferring the structured store.

    ``preference`` ("auto", "sqlite", "json") defaults to the configured value.
    Raises StorageError when no backend can be used.
    """
    data_dir = Path(data_dir) if data_dir is not None else get_data_dir()
    preference = preference or get_backend_preference()

    candidates = BACKENDS
    if preference != "auto":
        candidates = [cls for cls in BACKENDS if cls.name == preference]

    for BackendClass in candidates:
        backend = BackendClass(data_dir)
        if backend.is_available():
            logger.info("Using %s storage backend in %s", backend.name, data_dir)
            return backend
        logger.warning("%s storage backend unavailable in %s", BackendClass.name, data_dir)

    raise StorageError(f"No storage backend available in {data_dir} (preference: {preference})")
