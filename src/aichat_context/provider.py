"""Abstract base class for conversation storage backends."""

from abc import ABC, abstractmethod
from pathlib import Path

from .core import ConversationDocument, Message, Role, SessionContext, estimate_tokens

PROBE_CONTENT = "Test message for database verification"


class StorageError(Exception):
    """Raised when a backend cannot read or write the conversation document."""


def probe_document() -> ConversationDocument:
    """Return the synthetic document written by backend self-tests."""
    message = Message(
        role=Role.ASSISTANT,
        content=PROBE_CONTENT,
        token_count=estimate_tokens(PROBE_CONTENT),
    )
    doc = ConversationDocument(
        context=SessionContext(
            current_date="", current_time="", timezone="UTC", location="self-test",
        ),
        messages=[message],
    )
    doc.recompute_tokens()
    return doc


def probe_matches(loaded: ConversationDocument | None, written: ConversationDocument) -> bool:
    if loaded is None or len(loaded.messages) != 1:
        return False
    return (
        loaded.messages[0].id == written.messages[0].id
        and loaded.messages[0].content == PROBE_CONTENT
        and loaded.messages[0].timestamp == written.messages[0].timestamp
    )


class StorageBackend(ABC):
    """Base class for durable conversation storage.

    Each backend (SQLite, flat JSON) persists a single ConversationDocument
    and is chosen once per process by ``select_backend``.
    """

    name: str  # "sqlite", "json"
    schema_version: int

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if this backend can be used on this machine."""
        ...

    @abstractmethod
    def save(self, document: ConversationDocument) -> None:
        """Replace the stored document. Raises StorageError on failure."""
        ...

    @abstractmethod
    def load(self) -> ConversationDocument | None:
        """Return the stored document, or None if nothing was saved yet."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Remove all stored data."""
        ...

    @abstractmethod
    def self_test(self) -> bool:
        """Write, read back and delete a synthetic record. Never raises."""
        ...

    @abstractmethod
    def size_bytes(self) -> int:
        """Return the serialized size of the stored document, 0 if absent."""
        ...
