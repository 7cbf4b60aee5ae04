from datetime import datetime, timedelta

import pytest

from guide.infrastructure.cache.memory_cache import CachedStream, StreamReplayCache, suggestions_cache_key


def test_cache_key_ignores_action_order_and_tracks_version():
    a = suggestions_cache_key("u1", ["open_passage", "start_checkin"], "v2")
    b = suggestions_cache_key("u1", ["start_checkin", "open_passage", "open_passage"], "v2")

    assert a == b
    assert a.startswith("guide:suggestions:u1:")
    assert suggestions_cache_key("u1", ["open_passage"], "v3") != suggestions_cache_key("u1", ["open_passage"], "v2")


@pytest.mark.asyncio
async def test_hit_and_miss_counts():
    cache = StreamReplayCache()
    await cache.set("k", ['{"type":"done"}\n'], ttl=60)

    assert await cache.get("k") == ['{"type":"done"}\n']
    assert await cache.get("other") is None
    assert await cache.get_stats() == {"streams": 1, "hits": 1, "misses": 1, "evictions": 0}


@pytest.mark.asyncio
async def test_expired_stream_is_a_miss():
    cache = StreamReplayCache()
    cache.streams["k"] = CachedStream(("line\n",), datetime.utcnow() - timedelta(seconds=1))

    assert await cache.get("k") is None
    assert "k" not in cache.streams


@pytest.mark.asyncio
async def test_oldest_stream_evicted_when_full():
    cache = StreamReplayCache(max_streams=2)
    for key in ("a", "b", "c"):
        await cache.set(key, [key], ttl=60)

    assert await cache.get("a") is None
    assert await cache.get("c") == ["c"]
    assert (await cache.get_stats())["evictions"] == 1
