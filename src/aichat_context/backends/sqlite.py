"""SQLite storage backend.

Stores the whole ConversationDocument as one JSON record in the ``context``
table under the row id ``context``. The schema is versioned with
``PRAGMA user_version``; opening an older database only adds what is
missing. The ``messages`` table is reserved for per-message records and is
not written yet.
"""

import json
import logging
import sqlite3
from pathlib import Path

from ..core import ConversationDocument, document_from_dict, document_to_dict
from ..provider import StorageBackend, StorageError, probe_document, probe_matches

logger = logging.getLogger(__name__)

DB_FILENAME = "context.db"
SCHEMA_VERSION = 3
CONTEXT_ROW_ID = "context"
SELF_TEST_ROW_ID = "__self_test__"

_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS context (
        id TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        last_updated TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_context_last_updated ON context (last_updated)",
    """CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_messages_role ON messages (role)",
]


class SqliteBackend(StorageBackend):
    """Structured embedded store backed by a local SQLite file."""

    name = "sqlite"
    schema_version = SCHEMA_VERSION

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    def is_available(self) -> bool:
        try:
            conn = self._connect()
            conn.execute("SELECT 1")
            conn.close()
            return True
        except (sqlite3.Error, OSError) as e:
            logger.debug("SQLite unavailable at %s: %s", self.db_path, e)
            return False

    def save(self, document: ConversationDocument) -> None:
        self._write_row(CONTEXT_ROW_ID, document)

    def load(self) -> ConversationDocument | None:
        return self._read_row(CONTEXT_ROW_ID)

    def clear(self) -> None:
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM context")
                    conn.execute("DELETE FROM messages")
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to clear {self.db_path}: {e}") from e

    def self_test(self) -> bool:
        try:
            written = probe_document()
            self._write_row(SELF_TEST_ROW_ID, written)
            loaded = self._read_row(SELF_TEST_ROW_ID)
            self._delete_row(SELF_TEST_ROW_ID)
            return probe_matches(loaded, written)
        except Exception as e:
            logger.error("SQLite self-test failed: %s", e)
            return False

    def size_bytes(self) -> int:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT length(CAST(data AS BLOB)) FROM context WHERE id = ?",
                    (CONTEXT_ROW_ID,),
                ).fetchone()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to read size from {self.db_path}: {e}") from e
        return row[0] if row and row[0] else 0

    # ── Private helpers ──────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        """Open the database, creating or upgrading the schema if needed."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        try:
            self._ensure_schema(conn)
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= SCHEMA_VERSION:
            return

        logger.info(
            "Upgrading %s from schema version %d to %d", self.db_path, version, SCHEMA_VERSION
        )
        with conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _write_row(self, row_id: str, document: ConversationDocument) -> None:
        payload = json.dumps(document_to_dict(document), ensure_ascii=False)
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO context (id, data, last_updated) VALUES (?, ?, ?)",
                        (row_id, payload, document.last_updated.isoformat()),
                    )
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to save to {self.db_path}: {e}") from e

    def _read_row(self, row_id: str) -> ConversationDocument | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT data FROM context WHERE id = ?", (row_id,)
                ).fetchone()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to load from {self.db_path}: {e}") from e

        if not row:
            return None

        try:
            return document_from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupt context record in {self.db_path}: {e}") from e

    def _delete_row(self, row_id: str) -> None:
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM context WHERE id = ?", (row_id,))
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to delete from {self.db_path}: {e}") from e
