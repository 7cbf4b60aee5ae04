from typing import AsyncIterator, List, Optional
import asyncio
import uuid

import httpx
import structlog
from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import StreamingResponse

from guide.application.schema.requests import SuggestionsRequest
from guide.domain.errors import UpstreamModelError
from guide.domain.streaming.ndjson import EventChannel, encode_line
from guide.domain.tool.action_registry import normalize_enabled_actions
from guide.infrastructure.cache.memory_cache import suggestions_cache_key
from guide.infrastructure.security.internal_auth import require_user_id

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/guide", tags=["guide"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"
STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


async def _replay(lines: List[str]) -> AsyncIterator[str]:
    for line in lines:
        yield line


@router.post("/suggestions")
async def stream_suggestions(
    request: Request,
    body: Optional[SuggestionsRequest] = Body(None),
    user_id: str = Depends(require_user_id),
    x_debug_mode: Optional[str] = Header(None),
    x_force_refresh: Optional[str] = Header(None)
):
    """Stream validated suggestion events as NDJSON, replaying a cached stream when one exists"""

    container = request.app.state.container
    settings = container.settings

    enabled = normalize_enabled_actions(body.enabled_actions if body else None)
    debug = _flag(x_debug_mode)
    force_refresh = debug and _flag(x_force_refresh)
    cache_key = suggestions_cache_key(user_id, enabled, settings.suggestions_cache_version)

    if not force_refresh:
        cached = await container.cache.get(cache_key)
        if cached is not None:
            logger.info("Suggestions cache hit", user_id=user_id, lines=len(cached))
            container.metrics.increment_counter("guide.cache_hit")
            return StreamingResponse(
                _replay(cached),
                media_type=NDJSON_MEDIA_TYPE,
                headers={**STREAM_HEADERS, "x-cache": "hit"},
            )

    guide_context = await container.guide.prepare(user_id, enabled)

    channel = EventChannel()
    task = asyncio.create_task(
        container.guide.run(user_id, guide_context, channel, emit_debug=debug, trace_id=str(uuid.uuid4()))
    )

    # Upstream failures before the first event still get a JSON error status.
    try:
        first = await channel.receive()
    except httpx.HTTPError as e:
        await asyncio.gather(task, return_exceptions=True)
        raise UpstreamModelError(f"Upstream request failed: {e}") from e
    except Exception:
        await asyncio.gather(task, return_exceptions=True)
        raise

    async def body_iterator() -> AsyncIterator[str]:
        cacheable: List[str] = []
        try:
            event = first
            while event is not None:
                line = encode_line(event)
                if event.get("type") != "debug":
                    cacheable.append(line)
                yield line
                event = await channel.receive()
        except Exception as e:
            # Headers are already sent; the stream ends without done and is not cached.
            logger.warning("Suggestions stream cut short", user_id=user_id, lines=len(cacheable), error=str(e))
            container.metrics.increment_counter("guide.stream_cut_short")
        else:
            result = await task
            if result.has_done:
                await container.cache.set(cache_key, cacheable, ttl=settings.suggestions_cache_ttl_seconds)
            else:
                logger.info("Suggestions stream ended without done; not cached", user_id=user_id)
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    container.metrics.increment_counter("guide.cache_miss")
    return StreamingResponse(
        body_iterator(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={**STREAM_HEADERS, "x-cache": "miss"},
    )
