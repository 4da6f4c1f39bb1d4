"""Tests for the SQLite and JSON storage backends."""

import json
import sqlite3
from datetime import timezone
from unittest.mock import patch

import pytest

from aichat_context.backends import select_backend
from aichat_context.backends.json_file import STORAGE_KEY, JsonFileBackend
from aichat_context.backends.sqlite import SCHEMA_VERSION, SqliteBackend
from aichat_context.core import ConversationDocument, default_context, document_to_dict
from aichat_context.provider import StorageError

from conftest import make_message


def _document(*contents: str) -> ConversationDocument:
    doc = ConversationDocument(
        context=default_context("Brisbane, Australia", timezone.utc),
        messages=[make_message("user", c) for c in contents],
    )
    doc.recompute_tokens()
    return doc


class TestBackendContract:
    """Behaviour shared by both backends."""

    def test_is_available(self, backend):
        assert backend.is_available() is True

    def test_load_empty(self, backend):
        backend.is_available()
        assert backend.load() is None
        assert backend.size_bytes() == 0

    def test_save_and_load(self, backend):
        doc = _document("Hello", "How are you today?")
        backend.save(doc)

        loaded = backend.load()
        assert [m.content for m in loaded.messages] == ["Hello", "How are you today?"]
        assert [m.id for m in loaded.messages] == [m.id for m in doc.messages]
        assert loaded.messages[0].timestamp == doc.messages[0].timestamp
        assert loaded.total_tokens == doc.total_tokens
        assert loaded.context.location == "Brisbane, Australia"
        assert backend.size_bytes() > 0

    def test_save_replaces_document(self, backend):
        backend.save(_document("first"))
        backend.save(_document("second", "third"))
        assert [m.content for m in backend.load().messages] == ["second", "third"]

    def test_clear(self, backend):
        backend.save(_document("Hello"))
        backend.clear()
        assert backend.load() is None

    def test_self_test_passes_and_keeps_data(self, backend):
        backend.save(_document("keep me"))
        assert backend.self_test() is True
        assert [m.content for m in backend.load().messages] == ["keep me"]

    def test_self_test_on_fresh_store(self, backend):
        assert backend.self_test() is True
        assert backend.load() is None


class TestBackendFailures:
    def test_sqlite_unusable_path(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        backend = SqliteBackend(blocker)

        assert backend.is_available() is False
        assert backend.self_test() is False
        with pytest.raises(StorageError):
            backend.save(_document("Hello"))
        with pytest.raises(StorageError):
            backend.load()

    def test_json_unusable_path(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        backend = JsonFileBackend(blocker)

        assert backend.is_available() is False
        assert backend.self_test() is False
        with pytest.raises(StorageError):
            backend.save(_document("Hello"))

    def test_self_test_false_when_write_rejected(self, sqlite_backend):
        with patch.object(sqlite_backend, "_write_row", side_effect=StorageError("read-only")):
            assert sqlite_backend.self_test() is False

    def test_json_corrupt_document(self, json_backend):
        json_backend.is_available()
        (json_backend.data_dir / f"{STORAGE_KEY}.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            json_backend.load()


class TestSqliteSchema:
    def test_fresh_database_schema(self, sqlite_backend):
        sqlite_backend.save(_document("Hello"))

        conn = sqlite3.connect(sqlite_backend.db_path)
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        indexes = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        rows = conn.execute("SELECT id FROM context").fetchall()
        conn.close()

        assert {"context", "messages"} <= tables
        assert {"idx_context_last_updated", "idx_messages_timestamp", "idx_messages_role"} <= indexes
        assert version == SCHEMA_VERSION
        assert rows == [("context",)]

    def test_upgrade_keeps_existing_data(self, sqlite_backend):
        doc = _document("from an older version")
        sqlite_backend.data_dir.mkdir(parents=True)
        conn = sqlite3.connect(sqlite_backend.db_path)
        conn.execute("CREATE TABLE context (id TEXT PRIMARY KEY, data TEXT NOT NULL, last_updated TEXT NOT NULL)")
        conn.execute(
            "INSERT INTO context VALUES (?, ?, ?)",
            ("context", json.dumps(document_to_dict(doc)), doc.last_updated.isoformat()),
        )
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
        conn.close()

        loaded = sqlite_backend.load()
        assert [m.content for m in loaded.messages] == ["from an older version"]

        conn = sqlite3.connect(sqlite_backend.db_path)
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        conn.close()
        assert "messages" in tables
        assert version == SCHEMA_VERSION

    def test_reopen_current_version_is_idempotent(self, sqlite_backend):
        sqlite_backend.save(_document("Hello"))

        def schema_objects():
            conn = sqlite3.connect(sqlite_backend.db_path)
            rows = conn.execute("SELECT type, name, sql FROM sqlite_master ORDER BY name").fetchall()
            conn.close()
            return rows

        before = schema_objects()
        sqlite_backend.load()
        sqlite_backend.save(_document("Hello again"))
        assert schema_objects() == before
        assert sqlite_backend.load().messages[0].content == "Hello again"


class TestJsonFileFormat:
    def test_document_stored_under_fixed_key(self, json_backend):
        json_backend.save(_document("Hello"))
        path = json_backend.data_dir / f"{STORAGE_KEY}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["messages"][0]["content"] == "Hello"
        assert isinstance(data["messages"][0]["timestamp"], str)

    def test_self_test_removes_test_key(self, json_backend):
        assert json_backend.self_test() is True
        assert list(json_backend.data_dir.glob("test_key*")) == []


class TestSelectBackend:
    def test_prefers_sqlite(self, tmp_path):
        backend = select_backend(tmp_path, preference="auto")
        assert backend.name == "sqlite"

    def test_falls_back_to_json(self, tmp_path):
        with patch.object(SqliteBackend, "is_available", return_value=False):
            backend = select_backend(tmp_path, preference="auto")
        assert backend.name == "json"

    def test_forced_preference(self, tmp_path):
        assert select_backend(tmp_path, preference="json").name == "json"

    def test_uses_configured_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AICHAT_CONTEXT_DIR", str(tmp_path / "configured"))
        monkeypatch.setenv("AICHAT_CONTEXT_BACKEND", "json")
        backend = select_backend()
        assert backend.name == "json"
        assert backend.data_dir == tmp_path / "configured"

    def test_nothing_available(self, tmp_path):
        with (
            patch.object(SqliteBackend, "is_available", return_value=False),
            patch.object(JsonFileBackend, "is_available", return_value=False),
        ):
            with pytest.raises(StorageError):
                select_backend(tmp_path)
