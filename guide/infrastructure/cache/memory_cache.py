from typing import Dict, Any, Iterable, List, NamedTuple, Optional, Tuple
from collections import OrderedDict
from datetime import datetime, timedelta
import asyncio
import hashlib
import json

DEFAULT_MAX_STREAMS = 1000


def suggestions_cache_key(user_id: str, enabled_actions: Iterable[str], version: str) -> str:
    """Replay key for one user and one set of enabled actions"""

    digest = hashlib.sha256(
        json.dumps({"v": version, "enabled": sorted(set(enabled_actions))}, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"guide:suggestions:{user_id}:{digest}"


class CachedStream(NamedTuple):
    lines: Tuple[str, ...]
    expires_at: datetime


class StreamReplayCache:
    """TTL cache of finished NDJSON streams, bounded by entry count with oldest-first eviction"""

    def __init__(self, max_streams: int = DEFAULT_MAX_STREAMS):
        self.streams: "OrderedDict[str, CachedStream]" = OrderedDict()
        self.max_streams = max_streams
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[List[str]]:
        async with self._lock:
            cached = self.streams.get(key)
            if cached is not None and datetime.utcnow() > cached.expires_at:
                del self.streams[key]
                cached = None

            if cached is None:
                self.misses += 1
                return None
            self.hits += 1
            return list(cached.lines)

    async def set(self, key: str, lines: Iterable[str], ttl: int) -> None:
        async with self._lock:
            self.streams.pop(key, None)
            self.streams[key] = CachedStream(tuple(lines), datetime.utcnow() + timedelta(seconds=ttl))
            self._evict()

    def _evict(self) -> None:
        now = datetime.utcnow()
        for key in [k for k, cached in self.streams.items() if now > cached.expires_at]:
            del self.streams[key]
        while len(self.streams) > self.max_streams:
            self.streams.popitem(last=False)
            self.evictions += 1

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "streams": len(self.streams),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }
