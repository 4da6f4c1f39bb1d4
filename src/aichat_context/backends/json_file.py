"""Flat JSON key-value storage backend.

Fallback used when SQLite is unavailable. Each key is a ``<key>.json`` file
in the data directory holding serialized text; the conversation document
lives under a single fixed key. Timestamps are stored as ISO-8601 strings
and turned back into datetimes on load.
"""

import json
import logging
import os
from pathlib import Path

from ..core import ConversationDocument, document_from_dict, document_to_dict
from ..provider import StorageBackend, StorageError, probe_document, probe_matches

logger = logging.getLogger(__name__)

STORAGE_KEY = "aichat_context"
TEST_KEY = "test_key"


class JsonFileBackend(StorageBackend):
    """Flat serialized fallback store."""

    name = "json"
    schema_version = 1

    def is_available(self) -> bool:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug("JSON store unavailable at %s: %s", self.data_dir, e)
            return False
        return os.access(self.data_dir, os.W_OK)

    def save(self, document: ConversationDocument) -> None:
        self._set_item(STORAGE_KEY, json.dumps(document_to_dict(document), ensure_ascii=False))

    def load(self) -> ConversationDocument | None:
        raw = self._get_item(STORAGE_KEY)
        if raw is None:
            return None
        try:
            return document_from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupt document in {self._key_path(STORAGE_KEY)}: {e}") from e

    def clear(self) -> None:
        self._remove_item(STORAGE_KEY)

    def self_test(self) -> bool:
        try:
            written = probe_document()
            self._set_item(TEST_KEY, json.dumps(document_to_dict(written)))
            raw = self._get_item(TEST_KEY)
            self._remove_item(TEST_KEY)
            loaded = document_from_dict(json.loads(raw)) if raw is not None else None
            return probe_matches(loaded, written)
        except Exception as e:
            logger.error("JSON store self-test failed: %s", e)
            return False

    def size_bytes(self) -> int:
        path = self._key_path(STORAGE_KEY)
        try:
            return path.stat().st_size if path.exists() else 0
        except OSError as e:
            raise StorageError(f"Failed to stat {path}: {e}") from e

    # ── Private helpers ──────────────────────────────────────────────

    def _key_path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def _get_item(self, key: str) -> str | None:
        path = self._key_path(key)
        try:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def _set_item(self, key: str, value: str) -> None:
        path = self._key_path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def _remove_item(self, key: str) -> None:
        path = self._key_path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e
