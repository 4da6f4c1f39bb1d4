"""Core data models for aichat-context."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text (4 characters per token, rounded up)."""
    return math.ceil(len(text) / 4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Message:
    """A single conversational turn as it is retained."""

    role: Role
    content: str  # may be a summary or truncation of what was said
    timestamp: datetime = field(default_factory=utcnow)
    token_count: int = 0
    is_summarized: bool = False
    summary: Optional[str] = None
    id: str = field(default_factory=_new_id)


@dataclass
class SessionContext:
    """Ambient metadata rendered into prompts."""

    current_date: str
    current_time: str
    timezone: str
    location: str
    coordinates: Optional[dict] = None  # {"lat": float, "lng": float}
    last_location_update: Optional[datetime] = None


@dataclass
class ConversationDocument:
    """The single persisted aggregate: history plus session context."""

    context: SessionContext
    messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    def recompute_tokens(self) -> int:
        self.total_tokens = sum(m.token_count for m in self.messages)
        return self.total_tokens


def format_date(dt: datetime) -> str:
    """e.g. "Saturday, October 17, 2026"."""
    return f"{dt:%A}, {dt:%B} {dt.day}, {dt.year}"


def format_time(dt: datetime) -> str:
    """e.g. "02:30 PM AEST"."""
    return f"{dt:%I:%M %p} {dt.tzname() or ''}".strip()


def local_now(tz: tzinfo | None = None) -> datetime:
    return datetime.now(tz) if tz is not None else datetime.now().astimezone()


def zone_name(now: datetime) -> str:
    """IANA key when the zone has one, otherwise the abbreviation."""
    return getattr(now.tzinfo, "key", None) or now.tzname() or "UTC"


def default_context(location: str, tz: tzinfo | None = None) -> SessionContext:
    """Build a fresh SessionContext for the current moment."""
    now = local_now(tz)
    return SessionContext(
        current_date=format_date(now),
        current_time=format_time(now),
        timezone=zone_name(now),
        location=location,
    )


# ── Timestamps ───────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime:
    """Rehydrate a timestamp from a datetime, ISO string or epoch milliseconds.

    Naive values are taken as UTC. Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _isoformat(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (snake_case first, then camelCase)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


# ── Serialization ────────────────────────────────────────────────


def message_to_dict(msg: Message) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    return {
        "id": msg.id,
        "role": msg.role.value,
        "content": msg.content,
        "summary": msg.summary,
        "timestamp": _isoformat(msg.timestamp),
        "token_count": msg.token_count,
        "is_summarized": msg.is_summarized,
    }


def message_from_dict(data: dict) -> Message:
    """Build a Message from its dict form.

    Raises ValueError when role, content, summary, id or timestamp are unusable.
    """
    content = data.get("content")
    if not isinstance(content, str):
        raise ValueError("Message content must be a string")

    summary = data.get("summary")
    if summary is not None and not isinstance(summary, str):
        raise ValueError("Message summary must be a string")

    msg_id = data.get("id")
    if msg_id is not None and (not isinstance(msg_id, str) or not msg_id):
        raise ValueError("Message id must be a non-empty string")

    role = Role(data.get("role"))

    raw_ts = data.get("timestamp")
    timestamp = parse_timestamp(raw_ts) if raw_ts is not None else utcnow()

    token_count = _pick(data, "token_count", "tokenCount")
    if not isinstance(token_count, int) or isinstance(token_count, bool):
        token_count = estimate_tokens(content)

    return Message(
        id=msg_id or _new_id(),
        role=role,
        content=content,
        summary=summary,
        timestamp=timestamp,
        token_count=token_count,
        is_summarized=bool(_pick(data, "is_summarized", "isSummarized", default=False)),
    )


def context_to_dict(ctx: SessionContext) -> dict:
    """Convert a SessionContext dataclass to a JSON-serializable dict."""
    return {
        "current_date": ctx.current_date,
        "current_time": ctx.current_time,
        "timezone": ctx.timezone,
        "location": ctx.location,
        "coordinates": dict(ctx.coordinates) if ctx.coordinates else None,
        "last_location_update": _isoformat(ctx.last_location_update),
    }


def context_from_dict(data: dict) -> SessionContext:
    last_update = _pick(data, "last_location_update", "lastLocationUpdate")
    coords = data.get("coordinates")
    if coords:
        coords = {"lat": float(coords["lat"]), "lng": float(coords["lng"])}
    return SessionContext(
        current_date=_pick(data, "current_date", "currentDate", default=""),
        current_time=_pick(data, "current_time", "currentTime", default=""),
        timezone=data.get("timezone", ""),
        location=data.get("location", ""),
        coordinates=coords or None,
        last_location_update=parse_timestamp(last_update) if last_update else None,
    )


def document_to_dict(doc: ConversationDocument) -> dict:
    return {
        "messages": [message_to_dict(m) for m in doc.messages],
        "context": context_to_dict(doc.context),
        "total_tokens": doc.total_tokens,
        "last_updated": _isoformat(doc.last_updated),
    }


def document_from_dict(data: dict) -> ConversationDocument:
    """Rebuild a ConversationDocument, turning every timestamp back into a datetime."""
    messages = [message_from_dict(m) for m in data.get("messages", [])]
    last_updated = _pick(data, "last_updated", "lastUpdated")
    doc = ConversationDocument(
        context=context_from_dict(data.get("context") or {}),
        messages=messages,
        total_tokens=_pick(data, "total_tokens", "totalTokens", default=0),
        last_updated=parse_timestamp(last_updated) if last_updated else utcnow(),
    )
    return doc
