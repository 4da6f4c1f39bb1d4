"""Shared test fixtures for aichat-context."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from aichat_context.backends.json_file import JsonFileBackend
from aichat_context.backends.sqlite import SqliteBackend
from aichat_context.context import ContextCache
from aichat_context.core import Message, Role, estimate_tokens, utcnow
from aichat_context.provider import StorageBackend, StorageError
from aichat_context.storage import StorageCoordinator


class FailingBackend(StorageBackend):
    """Backend whose every I/O operation fails."""

    name = "failing"
    schema_version = 1

    def is_available(self) -> bool:
        return True

    def save(self, document):
        raise StorageError("disk full")

    def load(self):
        raise StorageError("storage offline")

    def clear(self):
        raise StorageError("storage offline")

    def self_test(self) -> bool:
        return False

    def size_bytes(self) -> int:
        raise StorageError("storage offline")


def make_message(
    role: str,
    content: str,
    *,
    days_ago: float = 0,
    token_count: int | None = None,
    timestamp: datetime | None = None,
) -> Message:
    """Build a stored message with an explicit age and token count."""
    return Message(
        role=Role(role),
        content=content,
        timestamp=timestamp or utcnow() - timedelta(days=days_ago),
        token_count=estimate_tokens(content) if token_count is None else token_count,
    )


@pytest.fixture
def sqlite_backend(tmp_path):
    return SqliteBackend(tmp_path / "data")


@pytest.fixture
def json_backend(tmp_path):
    return JsonFileBackend(tmp_path / "data")


@pytest.fixture(params=["sqlite", "json"])
def backend(request, tmp_path):
    """Each test using this fixture runs against both backends."""
    cls = SqliteBackend if request.param == "sqlite" else JsonFileBackend
    return cls(tmp_path / request.param)


@pytest.fixture
def storage(sqlite_backend):
    return StorageCoordinator(sqlite_backend, default_location="Brisbane, Australia", tz=timezone.utc)


@pytest.fixture
def failing_storage(tmp_path):
    return StorageCoordinator(
        FailingBackend(tmp_path), default_location="Brisbane, Australia", tz=timezone.utc
    )


@pytest.fixture
def cache(storage):
    return ContextCache(storage)


@pytest.fixture
def five_messages():
    """Five messages, oldest first, one day apart."""
    return [
        make_message("user" if i % 2 == 0 else "assistant", f"Message number {i}.", days_ago=5 - i)
        for i in range(5)
    ]


@pytest.fixture
def original_export_file(tmp_path):
    """An export written in the browser app's camelCase format."""
    data = {
        "messages": [
            {
                "role": "user",
                "content": "What's the weather like in Brisbane today?",
                "timestamp": "2025-01-15T10:00:00.000Z",
                "tokenCount": 11,
                "isSummarized": False,
            },
            {
                "role": "assistant",
                "content": "It is sunny and warm in Brisbane.",
                "timestamp": "2025-01-15T10:00:05.000Z",
                "tokenCount": 9,
                "isSummarized": False,
            },
        ],
        "context": {
            "currentDate": "Wednesday, January 15, 2025",
            "currentTime": "08:00 PM AEST",
            "timezone": "Australia/Brisbane",
            "location": "Brisbane, Queensland, Australia",
            "coordinates": {"lat": -27.4698, "lng": 153.0251},
            "lastLocationUpdate": "2025-01-15T09:59:00.000Z",
        },
        "metadata": {
            "exportDate": "2025-01-15T10:05:00.000Z",
            "totalMessages": 2,
            "totalTokens": 999,
            "version": "1.0.0",
        },
    }
    path = tmp_path / "export.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path
