"""FastAPI web server for aichat-context."""

import asyncio
import logging
from typing import Literal

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .context import ContextCache
from .core import Role, context_to_dict, message_to_dict
from .export import conversation_to_json, conversation_to_markdown
from .geocode import NominatimGeocoder
from .provider import StorageError
from .storage import ConversationNotFoundError, InvalidImportError, StorageCoordinator

logger = logging.getLogger(__name__)

app = FastAPI(title="aichat-context", version="0.1.0")

# Context cache (created on first request)
_cache: ContextCache | None = None
_cache_lock = asyncio.Lock()


def create_cache() -> ContextCache:
    """Build a cache on the configured storage backend."""
    return ContextCache(StorageCoordinator(), geocoder=NominatimGeocoder())


async def _get_cache() -> ContextCache:
    """Lazily initialize and cache the context cache."""
    global _cache
    async with _cache_lock:
        if _cache is None:
            cache = create_cache()
            await cache.initialize()
            _cache = cache
            logger.info("Context cache ready on %s storage", cache.storage.backend.name)
    return _cache


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


# ── Request bodies ───────────────────────────────────────────────


class MessageIn(BaseModel):
    role: Role
    content: str


class MessagePatch(BaseModel):
    role: Role | None = None
    content: str | None = None
    summary: str | None = None
    token_count: int | None = Field(None, ge=0)
    is_summarized: bool | None = None


class CleanupIn(BaseModel):
    max_messages: int | None = Field(None, ge=0)
    max_tokens: int | None = Field(None, ge=0)
    max_age: float | None = Field(None, ge=0, description="Age limit in days")
    preserve_summarized: bool = True


class SummarizationSettingsIn(BaseModel):
    threshold: int | None = None
    max_length: int | None = None


class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/context")
async def get_context():
    """Return the session context and the prompt block rendered from it."""
    cache = await _get_cache()
    prompt = cache.format_context_for_prompt()
    return {"context": context_to_dict(cache.context), "prompt": prompt}


@app.post("/api/messages", status_code=201)
async def add_message(body: MessageIn):
    cache = await _get_cache()
    message = await cache.add_message(body.role, body.content)
    return message_to_dict(message)


@app.get("/api/messages")
async def get_messages():
    """Return the token-budgeted conversation window, oldest first."""
    cache = await _get_cache()
    messages = await cache.get_conversation_messages()
    return {
        "total": len(messages),
        "messages": [message_to_dict(m) for m in messages],
    }


@app.get("/api/messages/search")
async def search_messages(q: str = Query(..., min_length=1, description="Text to search for")):
    cache = await _get_cache()
    messages = await cache.search_messages(q)
    return {
        "total": len(messages),
        "messages": [message_to_dict(m) for m in messages],
    }


@app.patch("/api/messages/{identity:path}")
async def update_message(identity: str, body: MessagePatch):
    cache = await _get_cache()
    patch = body.model_dump(exclude_unset=True)
    try:
        updated = await cache.update_message(identity, patch)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"updated": True}


@app.delete("/api/messages/{identity:path}")
async def delete_message(identity: str):
    cache = await _get_cache()
    if not await cache.delete_message(identity):
        raise HTTPException(status_code=404, detail="Message not found")
    return {"deleted": True}


@app.get("/api/usage")
async def get_usage():
    cache = await _get_cache()
    return await cache.get_token_usage()


@app.get("/api/stats")
async def get_stats():
    cache = await _get_cache()
    return await cache.get_comprehensive_stats()


@app.post("/api/location/refresh")
async def refresh_location(body: LocationIn | None = None):
    """Refresh the location from client-supplied coordinates or the configured source."""
    cache = await _get_cache()
    locate = None
    if body is not None:
        async def locate():
            return body.lat, body.lng

    updated = await cache.refresh_location(locate)
    return {"updated": updated, "context": context_to_dict(cache.context)}


@app.post("/api/cleanup")
async def cleanup(body: CleanupIn):
    cache = await _get_cache()
    return await cache.advanced_cleanup(
        max_messages=body.max_messages,
        max_tokens=body.max_tokens,
        max_age=body.max_age,
        preserve_summarized=body.preserve_summarized,
    )


@app.post("/api/summarize")
async def summarize_existing():
    cache = await _get_cache()
    return await cache.summarize_existing_messages()


@app.get("/api/settings/summarization")
async def get_summarization_settings():
    cache = await _get_cache()
    return cache.get_summarization_settings()


@app.put("/api/settings/summarization")
async def update_summarization_settings(body: SummarizationSettingsIn):
    cache = await _get_cache()
    try:
        return cache.update_summarization_settings(body.threshold, body.max_length)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/export")
async def export_conversation(
    format: Literal["json", "md"] = Query("json", description="Export format: json or md"),
):
    """Export the conversation as a JSON or Markdown attachment."""
    cache = await _get_cache()
    try:
        export = await cache.export_conversation()
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    stamp = export["metadata"]["export_date"].strftime("%Y%m%d-%H%M%S")
    if format == "md":
        return Response(
            content=conversation_to_markdown(export),
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="conversation-{stamp}.md"'},
        )
    return Response(
        content=conversation_to_json(export),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="conversation-{stamp}.json"'},
    )


@app.post("/api/import")
async def import_conversation(data: dict = Body(...)):
    cache = await _get_cache()
    try:
        await cache.import_conversation(data)
    except InvalidImportError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await cache.get_token_usage()


@app.delete("/api/data")
async def clear_data():
    cache = await _get_cache()
    await cache.clear_all_data()
    return {"cleared": True, "context": context_to_dict(cache.context)}
