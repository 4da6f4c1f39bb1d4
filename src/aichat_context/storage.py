"""Storage coordinator: conversation business logic over a storage backend.

Every mutation is a whole-document load → mutate → save sequence. The
sequences are serialized by a single asyncio lock so that two writers
issued back-to-back cannot clobber each other, and ``total_tokens`` is
recomputed from the messages before each save.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, tzinfo
from typing import Any

from .backends import select_backend
from .config import get_default_location, get_timezone
from .core import (
    ConversationDocument,
    Message,
    Role,
    SessionContext,
    context_from_dict,
    default_context,
    estimate_tokens,
    message_from_dict,
    parse_timestamp,
    utcnow,
)
from .provider import StorageBackend, StorageError

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
IDENTITY_PREFIX_LENGTH = 50
UPDATABLE_FIELDS = {"role", "content", "summary", "token_count", "is_summarized"}
REQUIRED_FIELDS = UPDATABLE_FIELDS - {"summary"}


class ConversationNotFoundError(LookupError):
    """Raised when an operation needs a stored conversation and none exists."""


class InvalidImportError(ValueError):
    """Raised when imported conversation data is malformed."""


class StorageCoordinator:
    """Appends, queries, prunes, exports and imports the conversation document."""

    def __init__(
        self,
        backend: StorageBackend | None = None,
        default_location: str | None = None,
        tz: tzinfo | None = None,
    ):
        self.backend = backend if backend is not None else select_backend()
        self.default_location = default_location or get_default_location()
        self.tz = tz or get_timezone()
        self._lock = asyncio.Lock()

    def new_document(self) -> ConversationDocument:
        """Return an empty document with a fresh session context."""
        return ConversationDocument(context=default_context(self.default_location, self.tz))

    # ── Document I/O ─────────────────────────────────────────────────

    async def load_document(self) -> ConversationDocument | None:
        return await asyncio.to_thread(self.backend.load)

    async def save_document(self, document: ConversationDocument) -> None:
        """Replace the stored document."""
        async with self._lock:
            await self._save(document)

    async def modify(
        self,
        mutate: Callable[[ConversationDocument], tuple[Any, bool]],
        *,
        create: bool = False,
        default: Any = None,
    ) -> Any:
        """Run ``mutate`` against the stored document under the writer lock.

        ``mutate`` returns ``(result, changed)``; the document is saved only
        when ``changed`` is true. Without a stored document, ``default`` is
        returned unless ``create`` asks for a fresh one.
        """
        async with self._lock:
            doc = await self.load_document()
            if doc is None:
                if not create:
                    return default
                logger.info("Creating initial conversation document")
                doc = self.new_document()

            result, changed = mutate(doc)
            if changed:
                await self._save(doc)
            return result

    async def save_context(self, context: SessionContext) -> None:
        """Persist the session context, keeping the stored messages."""

        def _set_context(doc: ConversationDocument):
            doc.context = context
            return None, True

        await self.modify(_set_context, create=True)

    async def clear_all(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self.backend.clear)
        logger.info("Cleared all stored conversation data")

    async def test_storage(self) -> bool:
        return await asyncio.to_thread(self.backend.self_test)

    # ── Messages ─────────────────────────────────────────────────────

    async def add_message(self, message: Message) -> None:
        """Append a message, creating the document on first use."""

        def _append(doc: ConversationDocument):
            doc.messages.append(message)
            return None, True

        await self.modify(_append, create=True)

    async def get_all_messages(self) -> list[Message]:
        doc = await self.load_document()
        return list(doc.messages) if doc else []

    async def get_messages_by_role(self, role: Role | str) -> list[Message]:
        role = Role(role)
        return [m for m in await self.get_all_messages() if m.role == role]

    async def get_messages_by_date_range(self, start: datetime, end: datetime) -> list[Message]:
        """Return messages with start <= timestamp <= end."""
        start, end = parse_timestamp(start), parse_timestamp(end)
        return [m for m in await self.get_all_messages() if start <= m.timestamp <= end]

    async def search_messages(self, query: str) -> list[Message]:
        """Case-insensitive substring search over content and summary."""
        needle = query.lower()
        return [
            m for m in await self.get_all_messages()
            if needle in m.content.lower()
            or (m.summary and needle in m.summary.lower())
        ]

    async def update_message(self, identity: str, patch: Mapping[str, Any]) -> bool:
        """Apply ``patch`` to the message matching ``identity``.

        Returns False when no message matches.
        """
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {', '.join(sorted(unknown))}")
        nulls = sorted(k for k, v in patch.items() if v is None and k in REQUIRED_FIELDS)
        if nulls:
            raise ValueError(f"Message fields cannot be null: {', '.join(nulls)}")

        changes = dict(patch)
        if "role" in changes:
            changes["role"] = Role(changes["role"])
        if "content" in changes and "token_count" not in changes:
            changes["token_count"] = estimate_tokens(changes["content"])

        def _update(doc: ConversationDocument):
            index = find_message_index(doc.messages, identity)
            if index is None:
                return False, False
            doc.messages[index] = dataclasses.replace(doc.messages[index], **changes)
            return True, True

        return await self.modify(_update, default=False)

    async def delete_message(self, identity: str) -> bool:
        """Remove the message matching ``identity``. Returns False when none matches."""

        def _delete(doc: ConversationDocument):
            index = find_message_index(doc.messages, identity)
            if index is None:
                return False, False
            del doc.messages[index]
            return True, True

        return await self.modify(_delete, default=False)

    async def cleanup_old_messages(
        self,
        max_messages: int | None = None,
        max_tokens: int | None = None,
        max_age: float | None = None,
    ) -> dict:
        """Evict by age (days), then by count, then by token budget, oldest first."""

        def _cleanup(doc: ConversationDocument):
            before_count = len(doc.messages)
            before_tokens = doc.recompute_tokens()
            messages = doc.messages

            if max_age is not None:
                cutoff = utcnow() - timedelta(days=max_age)
                messages = [m for m in messages if m.timestamp >= cutoff]

            if max_messages is not None and len(messages) > max_messages:
                messages = messages[len(messages) - max_messages:]

            if max_tokens is not None:
                total = sum(m.token_count for m in messages)
                drop = 0
                while drop < len(messages) and total > max_tokens:
                    total -= messages[drop].token_count
                    drop += 1
                messages = messages[drop:]

            doc.messages = messages
            removed = {
                "removed_messages": before_count - len(messages),
                "removed_tokens": before_tokens - doc.recompute_tokens(),
            }
            return removed, removed["removed_messages"] > 0

        result = await self.modify(
            _cleanup, default={"removed_messages": 0, "removed_tokens": 0}
        )
        if result["removed_messages"]:
            logger.info(
                "Cleaned up %d messages, removed %d tokens",
                result["removed_messages"], result["removed_tokens"],
            )
        return result

    # ── Export / import ──────────────────────────────────────────────

    async def export_conversation(self) -> dict:
        """Return messages, context and export metadata for the stored conversation."""
        doc = await self.load_document()
        if doc is None:
            raise ConversationNotFoundError("No conversation data to export")

        return {
            "messages": list(doc.messages),
            "context": doc.context,
            "metadata": {
                "export_date": utcnow(),
                "total_messages": len(doc.messages),
                "total_tokens": doc.recompute_tokens(),
                "version": EXPORT_VERSION,
            },
        }

    async def import_conversation(self, data: Mapping[str, Any]) -> None:
        """Replace the stored document with imported data.

        Accepts the output of ``export_conversation`` or its JSON form.
        Incoming token totals are ignored and recomputed.
        """
        document = self._validate_import(data)
        async with self._lock:
            await self._save(document)
        logger.info(
            "Imported %d messages with %d tokens", len(document.messages), document.total_tokens
        )

    async def get_message_stats(self) -> dict:
        doc = await self.load_document()
        if not doc or not doc.messages:
            return {
                "total_messages": 0,
                "user_messages": 0,
                "assistant_messages": 0,
                "summarized_messages": 0,
                "total_tokens": 0,
                "average_tokens_per_message": 0,
                "oldest_message": None,
                "newest_message": None,
            }

        messages = doc.messages
        total_tokens = doc.recompute_tokens()
        timestamps = [m.timestamp for m in messages]
        return {
            "total_messages": len(messages),
            "user_messages": sum(1 for m in messages if m.role == Role.USER),
            "assistant_messages": sum(1 for m in messages if m.role == Role.ASSISTANT),
            "summarized_messages": sum(1 for m in messages if m.is_summarized),
            "total_tokens": total_tokens,
            "average_tokens_per_message": round(total_tokens / len(messages)),
            "oldest_message": min(timestamps),
            "newest_message": max(timestamps),
        }

    async def get_storage_stats(self) -> dict:
        try:
            doc = await self.load_document()
            size = await asyncio.to_thread(self.backend.size_bytes)
            last_updated = doc.last_updated if doc else None
        except StorageError as e:
            logger.error("Error getting database stats: %s", e)
            size, last_updated = 0, None

        database = {
            "type": self.backend.name,
            "version": self.backend.schema_version,
            "size": size,
            "last_updated": last_updated,
        }
        return {"database": database, "messages": await self.get_message_stats()}

    # ── Private helpers ──────────────────────────────────────────────

    async def _save(self, document: ConversationDocument) -> None:
        """Save without taking the lock; callers must hold it."""
        document.recompute_tokens()
        document.last_updated = utcnow()
        await asyncio.to_thread(self.backend.save, document)

    def _validate_import(self, data: Any) -> ConversationDocument:
        if not isinstance(data, Mapping):
            raise InvalidImportError("Import data must be an object")

        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise InvalidImportError("Invalid message data")

        raw_context = data.get("context")
        if not raw_context:
            raise InvalidImportError("Invalid context data")

        try:
            messages = [_import_message(m) for m in raw_messages]
            if isinstance(raw_context, SessionContext):
                context = dataclasses.replace(raw_context)
            else:
                context = context_from_dict(raw_context)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidImportError(f"Invalid conversation data: {e}") from e

        document = ConversationDocument(context=context, messages=messages)
        document.recompute_tokens()
        return document


def _import_message(item: Any) -> Message:
    if isinstance(item, Message):
        return dataclasses.replace(
            item, role=Role(item.role), timestamp=parse_timestamp(item.timestamp)
        )
    return message_from_dict(item)


def find_message_index(messages: list[Message], identity: str) -> int | None:
    """Locate a message by id, then by timestamp, then by 50-character content prefix."""
    if not identity:
        return None

    for i, msg in enumerate(messages):
        if msg.id == identity:
            return i

    try:
        when = parse_timestamp(identity)
    except ValueError:
        when = None
    if when is not None:
        for i, msg in enumerate(messages):
            if msg.timestamp == when:
                return i

    prefix = identity[:IDENTITY_PREFIX_LENGTH]
    for i, msg in enumerate(messages):
        if msg.content[:IDENTITY_PREFIX_LENGTH] == prefix:
            return i
    return None
