"""Context cache: session context and token-budgeted conversation history.

The cache is the only entry point for presentation layers. It keeps the
current SessionContext in memory, shortens oversized messages before they
are stored, and assembles prompt windows that fit the token budget. All
durability goes through the StorageCoordinator.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from .core import (
    ConversationDocument,
    Message,
    Role,
    SessionContext,
    default_context,
    estimate_tokens,
    format_date,
    format_time,
    local_now,
    utcnow,
)
from .provider import StorageError
from .storage import StorageCoordinator, find_message_index

logger = logging.getLogger(__name__)

MAX_TOKENS = 32000
RESERVE_TOKENS = 2000  # headroom for the next turn and the rendered context block
MAX_MESSAGE_TOKENS = 8000
MAX_CONVERSATION_LENGTH = 50
SUMMARIZATION_THRESHOLD = 2000  # characters
SUMMARY_MAX_LENGTH = 500  # characters

SUMMARY_MARKER = "... [summarized] ..."
TRUNCATION_MARKER = "... [truncated]"

Locator = Callable[[], Awaitable[tuple[float, float] | None]]


class Geocoder(Protocol):
    async def reverse(self, lat: float, lng: float) -> str: ...


def summarize_text(content: str, max_length: int) -> str:
    """Keep the head and tail of ``content``, cut at sentence boundaries.

    Content no longer than ``max_length`` is returned unchanged.
    """
    if len(content) <= max_length:
        return content

    half = max_length // 2
    head = content[:half]
    tail = content[len(content) - half:]

    head_end = head.rfind(".")
    if head_end > 0:
        head = head[: head_end + 1]

    tail_start = tail.find(".")
    if tail_start > 0:
        tail = tail[tail_start + 1:]

    return f"{head}{SUMMARY_MARKER}{tail}"


def coordinates_text(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"


def _check_summarization(threshold: int, max_length: int) -> None:
    if threshold <= 0 or max_length <= 0:
        raise ValueError("Summarization threshold and max length must be positive")
    if threshold <= max_length + len(SUMMARY_MARKER):
        raise ValueError(
            f"Summarization threshold ({threshold}) must exceed max length ({max_length}) "
            f"plus {len(SUMMARY_MARKER)} marker characters"
        )


class ContextCache:
    """Session context plus summarization and token-budget policy."""

    def __init__(
        self,
        storage: StorageCoordinator,
        *,
        locate: Locator | None = None,
        geocoder: Geocoder | None = None,
        on_context_update: Callable[[], Any] | None = None,
        max_tokens: int = MAX_TOKENS,
        reserve_tokens: int = RESERVE_TOKENS,
        max_message_tokens: int = MAX_MESSAGE_TOKENS,
        max_conversation_length: int = MAX_CONVERSATION_LENGTH,
        summarization_threshold: int = SUMMARIZATION_THRESHOLD,
        summary_max_length: int = SUMMARY_MAX_LENGTH,
    ):
        _check_summarization(summarization_threshold, summary_max_length)
        self.storage = storage
        self.locate = locate
        self.geocoder = geocoder
        self.on_context_update = on_context_update
        self.max_tokens = max_tokens
        self.reserve_tokens = reserve_tokens
        self.max_message_tokens = max_message_tokens
        self.max_conversation_length = max_conversation_length
        self.summarization_threshold = summarization_threshold
        self.summary_max_length = summary_max_length

        # Usable before initialize() so prompts always have something to render.
        self.context: SessionContext = self._default_context()
        self._location_task: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Restore the stored context, or persist a default one, then look up the location."""
        try:
            stored = await self.storage.load_document()
            if stored is not None:
                self.context = stored.context
            else:
                self.context = self._default_context()
                await self.storage.save_context(self.context)
        except StorageError as e:
            logger.error("Error initializing context, using defaults: %s", e)
            self.context = self._default_context()

        if self.locate is not None:
            self._location_task = asyncio.create_task(self.refresh_location())

    async def close(self) -> None:
        """Wait for a pending background location refresh."""
        if self._location_task is not None:
            await self._location_task
            self._location_task = None

    # ── Messages ─────────────────────────────────────────────────────

    def should_summarize(self, content: str) -> bool:
        return len(content) > self.summarization_threshold

    def summarize(self, content: str) -> str:
        return summarize_text(content, self.summary_max_length)

    async def add_message(self, role: Role | str, content: str) -> Message:
        """Store a turn, summarizing or truncating oversized content first."""
        role = Role(role)
        final_content = content
        summary = None
        is_summarized = False

        if self.should_summarize(content):
            summary = self.summarize(content)
            final_content = summary
            is_summarized = True
        elif estimate_tokens(content) > self.max_message_tokens:
            final_content = content[: self.max_message_tokens * 4] + TRUNCATION_MARKER

        message = Message(
            role=role,
            content=final_content,
            summary=summary,
            token_count=estimate_tokens(final_content),
            is_summarized=is_summarized,
        )
        try:
            await self.storage.add_message(message)
        except StorageError as e:
            logger.error("Failed to store %s message: %s", role.value, e)
        return message

    async def get_conversation_messages(self) -> list[Message]:
        """Return the newest messages that fit the budget, oldest first."""
        try:
            stored = await self.storage.load_document()
        except StorageError as e:
            logger.error("Failed to load conversation: %s", e)
            return []
        if stored is None:
            return []

        window: list[Message] = []
        total = 0
        for message in reversed(stored.messages):
            if total + message.token_count + self.reserve_tokens > self.max_tokens:
                break
            window.insert(0, message)
            total += message.token_count
        return window

    async def get_message_full_content(self, identity: str) -> str | None:
        """Return the stored content of a message; summarized originals are not kept."""
        try:
            messages = await self.storage.get_all_messages()
        except StorageError as e:
            logger.error("Failed to load messages: %s", e)
            return None
        index = find_message_index(messages, identity)
        return messages[index].content if index is not None else None

    async def get_message_history_with_dates(self) -> list[dict]:
        """The budgeted window with human-readable local dates and times."""
        history = []
        for msg in await self.get_conversation_messages():
            local = msg.timestamp.astimezone(self.storage.tz)
            history.append({
                "role": msg.role.value,
                "content": msg.content,
                "timestamp": msg.timestamp,
                "date_string": format_date(local),
                "time_string": format_time(local),
            })
        return history

    async def search_messages(self, query: str) -> list[Message]:
        return await self.storage.search_messages(query)

    async def get_messages_by_role(self, role: Role | str) -> list[Message]:
        return await self.storage.get_messages_by_role(role)

    async def get_messages_by_date_range(self, start: datetime, end: datetime) -> list[Message]:
        return await self.storage.get_messages_by_date_range(start, end)

    async def update_message(self, identity: str, patch: dict) -> bool:
        """Edit a stored message. Returns False when ``identity`` matches nothing."""
        return await self.storage.update_message(identity, patch)

    async def delete_message(self, identity: str) -> bool:
        return await self.storage.delete_message(identity)

    # ── Maintenance ──────────────────────────────────────────────────

    async def cleanup_old_messages(self) -> dict:
        """Drop the oldest messages until the budget and length caps hold."""
        limit = self.max_tokens - self.reserve_tokens

        def _trim(doc: ConversationDocument):
            stale = doc.total_tokens != sum(m.token_count for m in doc.messages)
            messages = doc.messages
            total = sum(m.token_count for m in messages)
            drop = 0
            while drop < len(messages) and total > limit:
                total -= messages[drop].token_count
                drop += 1
            messages = messages[drop:]

            if len(messages) > self.max_conversation_length:
                messages = messages[len(messages) - self.max_conversation_length:]

            removed = {
                "removed_messages": len(doc.messages) - len(messages),
                "removed_tokens": doc.recompute_tokens() - sum(m.token_count for m in messages),
            }
            doc.messages = messages
            return removed, stale or removed["removed_messages"] > 0

        return await self.storage.modify(
            _trim, default={"removed_messages": 0, "removed_tokens": 0}
        )

    async def advanced_cleanup(
        self,
        max_messages: int | None = None,
        max_tokens: int | None = None,
        max_age: float | None = None,
        preserve_summarized: bool = True,
    ) -> dict:
        """Criteria-based cleanup, followed by the budget cleanup unless disabled."""
        result = await self.storage.cleanup_old_messages(
            max_messages=max_messages, max_tokens=max_tokens, max_age=max_age,
        )
        if preserve_summarized:
            await self.cleanup_old_messages()
        return {**result, "cleanup_type": "advanced"}

    async def summarize_existing_messages(self) -> dict:
        """Summarize every stored message that is over the threshold."""

        def _summarize(doc: ConversationDocument):
            summarized = 0
            saved_tokens = 0
            for i, message in enumerate(doc.messages):
                if message.is_summarized or not self.should_summarize(message.content):
                    continue
                summary = self.summarize(message.content)
                new_tokens = estimate_tokens(summary)
                saved_tokens += message.token_count - new_tokens
                summarized += 1
                doc.messages[i] = Message(
                    id=message.id,
                    role=message.role,
                    content=summary,
                    summary=summary,
                    timestamp=message.timestamp,
                    token_count=new_tokens,
                    is_summarized=True,
                )
            return {"summarized": summarized, "saved_tokens": saved_tokens}, summarized > 0

        return await self.storage.modify(
            _summarize, default={"summarized": 0, "saved_tokens": 0}
        )

    async def clear_all_data(self) -> None:
        """Delete everything and start over with a default context."""
        try:
            await self.storage.clear_all()
        except StorageError as e:
            logger.error("Failed to clear stored data: %s", e)

        self.context = self._default_context()
        try:
            await self.storage.save_context(self.context)
        except StorageError as e:
            logger.error("Failed to save default context: %s", e)
        self._notify()

    async def test_storage(self) -> bool:
        try:
            return await self.storage.test_storage()
        except StorageError as e:
            logger.error("Storage test failed: %s", e)
            return False

    # ── Usage and statistics ─────────────────────────────────────────

    async def get_token_usage(self) -> dict:
        try:
            stored = await self.storage.load_document()
        except StorageError as e:
            logger.error("Failed to load token usage: %s", e)
            stored = None

        used = stored.recompute_tokens() if stored else 0
        return {
            "used": used,
            "available": self.max_tokens - used,
            "percentage": used / self.max_tokens * 100,
        }

    async def get_summary_statistics(self) -> dict:
        try:
            messages = await self.storage.get_all_messages()
        except StorageError as e:
            logger.error("Failed to load messages: %s", e)
            messages = []

        return {
            "total_messages": len(messages),
            "summarized_messages": sum(1 for m in messages if m.is_summarized),
            "total_tokens": sum(m.token_count for m in messages),
            "average_message_length": (
                round(sum(len(m.content) for m in messages) / len(messages)) if messages else 0
            ),
        }

    async def get_comprehensive_stats(self) -> dict:
        storage_stats, summarization = await asyncio.gather(
            self.storage.get_storage_stats(), self.get_summary_statistics()
        )
        return {"storage": storage_stats, "summarization": summarization}

    def get_summarization_settings(self) -> dict:
        return {
            "threshold": self.summarization_threshold,
            "max_length": self.summary_max_length,
            "enabled": True,
        }

    def update_summarization_settings(
        self, threshold: int | None = None, max_length: int | None = None
    ) -> dict:
        new_threshold = threshold if threshold is not None else self.summarization_threshold
        new_max_length = max_length if max_length is not None else self.summary_max_length
        _check_summarization(new_threshold, new_max_length)
        self.summarization_threshold = new_threshold
        self.summary_max_length = new_max_length
        return self.get_summarization_settings()

    # ── Export / import ──────────────────────────────────────────────

    async def export_conversation(self) -> dict:
        return await self.storage.export_conversation()

    async def import_conversation(self, data: dict) -> None:
        await self.storage.import_conversation(data)

        stored = await self.storage.load_document()
        if stored is not None:
            self.context = stored.context
            self._notify()

    # ── Session context ──────────────────────────────────────────────

    def ensure_context_available(self) -> SessionContext:
        if self.context is None:
            self.context = self._default_context()
            self._notify()
        return self.context

    async def update_context(self) -> None:
        """Refresh the date and time and persist them."""
        self._refresh_clock()
        try:
            await self.storage.save_context(self.context)
        except StorageError as e:
            logger.error("Failed to save context: %s", e)

    def format_context_for_prompt(self) -> str:
        self._refresh_clock()
        ctx = self.context
        location = ctx.location
        if ctx.coordinates:
            location += f" ({ctx.coordinates['lat']}, {ctx.coordinates['lng']})"
        return (
            "Current Context:\n"
            f"- Date: {ctx.current_date}\n"
            f"- Time: {ctx.current_time}\n"
            f"- Timezone: {ctx.timezone}\n"
            f"- Location: {location}\n"
            "\n"
            "Please consider this context when responding to the user's message."
        )

    def get_date_context(self) -> str:
        today = format_date(local_now(self.storage.tz))
        return (
            f"Today is {today}. "
            f"The current time is {self.context.current_time} {self.context.timezone}."
        )

    async def refresh_location(self, locate: Locator | None = None) -> bool:
        """Ask the location source for coordinates and resolve a place name.

        ``locate`` overrides the configured source for this call. Returns True
        when the context changed. Denial or failure keeps the previous location.
        """
        locate = locate or self.locate
        if locate is None:
            logger.debug("No location source configured")
            return False

        try:
            coords = await locate()
        except Exception as e:
            logger.warning("Location lookup failed, keeping %s: %s", self.context.location, e)
            return False
        if coords is None:
            logger.info("Location unavailable, keeping %s", self.context.location)
            return False

        lat, lng = coords
        self.context.coordinates = {"lat": lat, "lng": lng}
        self.context.location = await self._resolve_place(lat, lng)
        self.context.last_location_update = utcnow()
        logger.info("Location updated: %s", self.context.location)

        try:
            await self.storage.save_context(self.context)
        except StorageError as e:
            logger.error("Failed to save location: %s", e)
        self._notify()
        return True

    # ── Private helpers ──────────────────────────────────────────────

    def _default_context(self) -> SessionContext:
        return default_context(self.storage.default_location, self.storage.tz)

    def _refresh_clock(self) -> None:
        now = local_now(self.storage.tz)
        self.context.current_date = format_date(now)
        self.context.current_time = format_time(now)

    async def _resolve_place(self, lat: float, lng: float) -> str:
        if self.geocoder is None:
            return coordinates_text(lat, lng)
        try:
            return await self.geocoder.reverse(lat, lng) or coordinates_text(lat, lng)
        except Exception as e:
            logger.warning("Reverse geocoding failed: %s", e)
            return coordinates_text(lat, lng)

    def _notify(self) -> None:
        if self.on_context_update is not None:
            self.on_context_update()
