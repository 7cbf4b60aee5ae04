from typing import AsyncIterator, Union
from contextlib import asynccontextmanager
from pathlib import Path
import asyncio

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pipeline_artifacts (
    run_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    trace_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    body TEXT NOT NULL,
    PRIMARY KEY (run_id, stage)
);

CREATE INDEX IF NOT EXISTS idx_pipeline_artifacts_expiry
    ON pipeline_artifacts (expires_at);

CREATE TABLE IF NOT EXISTS debug_runs (
    run_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_states (
    conversation_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS signal_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    body TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_signal_records_lookup
    ON signal_records (user_id, kind, occurred_at DESC);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY,
    first_name TEXT
);
"""


class Database:
    """Shared aiosqlite connection factory; the schema is created once per process"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._schema_lock = asyncio.Lock()
        self._schema_ready = False

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.path, timeout=30) as conn:
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.executescript(SCHEMA)
                await conn.commit()
            self._schema_ready = True
            logger.info("Database schema ready", path=str(self.path))

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.ensure_schema()
        async with aiosqlite.connect(self.path, timeout=30) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout = 30000")
            yield conn
