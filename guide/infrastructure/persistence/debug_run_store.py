from typing import Dict, Optional, Protocol
from datetime import datetime, timedelta
import asyncio

from guide.domain.errors import RunNotFoundError
from guide.domain.models.pipeline import ARTIFACT_RETENTION_DAYS, DebugRun, RunMode
from guide.infrastructure.persistence.database import Database


class DebugRunStore(Protocol):
    async def create(self, run: DebugRun) -> None:
        ...

    async def get(self, run_id: str) -> Optional[DebugRun]:
        ...

    async def update(self, run_id: str, **changes) -> DebugRun:
        ...

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        ...


def run_cutoff(now: Optional[datetime] = None) -> datetime:
    """Runs untouched since this instant have outlived their artifacts"""
    return (now or datetime.utcnow()) - timedelta(days=ARTIFACT_RETENTION_DAYS[RunMode.DEBUG])


class InMemoryDebugRunStore:
    def __init__(self):
        self.runs: Dict[str, DebugRun] = {}
        self._lock = asyncio.Lock()

    async def create(self, run: DebugRun) -> None:
        async with self._lock:
            self.runs[run.run_id] = run.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[DebugRun]:
        async with self._lock:
            run = self.runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    async def update(self, run_id: str, **changes) -> DebugRun:
        async with self._lock:
            run = self.runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            updated = run.model_copy(update={**changes, "updated_at": datetime.utcnow()})
            self.runs[run_id] = updated
            return updated.model_copy(deep=True)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = run_cutoff(now)
        async with self._lock:
            stale = [run_id for run_id, run in self.runs.items() if run.updated_at <= cutoff]
            for run_id in stale:
                del self.runs[run_id]
            return len(stale)


class SQLiteDebugRunStore:
    def __init__(self, db: Database):
        self.db = db
        self._write_lock = asyncio.Lock()

    async def create(self, run: DebugRun) -> None:
        async with self.db.connect() as conn:
            await conn.execute(
                "INSERT INTO debug_runs (run_id, status, updated_at, body) VALUES (?, ?, ?, ?)",
                (run.run_id, run.status.value, run.updated_at.isoformat(), run.model_dump_json()),
            )
            await conn.commit()

    async def get(self, run_id: str) -> Optional[DebugRun]:
        async with self.db.connect() as conn:
            cursor = await conn.execute("SELECT body FROM debug_runs WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        return DebugRun.model_validate_json(row["body"]) if row else None

    async def update(self, run_id: str, **changes) -> DebugRun:
        async with self._write_lock:
            run = await self.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Run not found: {run_id}")

            updated = DebugRun.model_validate({
                **run.model_dump(),
                **changes,
                "updated_at": datetime.utcnow(),
            })
            async with self.db.connect() as conn:
                await conn.execute(
                    "UPDATE debug_runs SET status = ?, updated_at = ?, body = ? WHERE run_id = ?",
                    (updated.status.value, updated.updated_at.isoformat(), updated.model_dump_json(), run_id),
                )
                await conn.commit()
            return updated

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "DELETE FROM debug_runs WHERE updated_at <= ?",
                (run_cutoff(now).isoformat(),),
            )
            await conn.commit()
            return cursor.rowcount
