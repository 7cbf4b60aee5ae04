from typing import Any, Dict, List, Optional, Tuple
from collections import defaultdict
from datetime import datetime
import asyncio
import json

from guide.domain.context.fetchers.base import compute_date_bounds
from guide.domain.models.candidate import CandidateSource, TemporalRange
from guide.domain.models.user import UserProfile
from guide.infrastructure.persistence.database import Database


class KindSignalSource:
    """Binds a signal store to one record kind, satisfying the fetcher query contract"""

    def __init__(self, store, kind: CandidateSource):
        self.store = store
        self.kind = kind

    async def fetch(
        self,
        user_id: str,
        temporal_range: Optional[TemporalRange],
        limit: int
    ) -> List[Dict[str, Any]]:
        return await self.store.fetch_records(self.kind, user_id, temporal_range, limit)


class InMemorySignalStore:
    """Signal records kept per (user, kind)"""

    def __init__(self):
        self.records: Dict[Tuple[str, str], List[Tuple[datetime, Dict[str, Any]]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def source(self, kind: CandidateSource) -> KindSignalSource:
        return KindSignalSource(self, kind)

    async def add_record(
        self,
        user_id: str,
        kind: CandidateSource,
        record: Dict[str, Any],
        occurred_at: Optional[datetime] = None
    ) -> None:
        async with self._lock:
            self.records[(user_id, kind.value)].append((occurred_at or datetime.utcnow(), dict(record)))

    async def fetch_records(
        self,
        kind: CandidateSource,
        user_id: str,
        temporal_range: Optional[TemporalRange],
        limit: int
    ) -> List[Dict[str, Any]]:
        after, before = compute_date_bounds(temporal_range)
        async with self._lock:
            rows = [
                (when, record) for when, record in self.records.get((user_id, kind.value), [])
                if (after is None or when >= after) and (before is None or when <= before)
            ]
        rows.sort(key=lambda row: row[0], reverse=True)
        return [dict(record) for _, record in rows[:limit]]


class SQLiteSignalStore:
    def __init__(self, db: Database):
        self.db = db

    def source(self, kind: CandidateSource) -> KindSignalSource:
        return KindSignalSource(self, kind)

    async def add_record(
        self,
        user_id: str,
        kind: CandidateSource,
        record: Dict[str, Any],
        occurred_at: Optional[datetime] = None
    ) -> None:
        async with self.db.connect() as conn:
            await conn.execute(
                "INSERT INTO signal_records (user_id, kind, occurred_at, body) VALUES (?, ?, ?, ?)",
                (user_id, kind.value, (occurred_at or datetime.utcnow()).isoformat(), json.dumps(record)),
            )
            await conn.commit()

    async def fetch_records(
        self,
        kind: CandidateSource,
        user_id: str,
        temporal_range: Optional[TemporalRange],
        limit: int
    ) -> List[Dict[str, Any]]:
        after, before = compute_date_bounds(temporal_range)
        query = "SELECT body FROM signal_records WHERE user_id = ? AND kind = ?"
        params: List[Any] = [user_id, kind.value]
        if after is not None:
            query += " AND occurred_at >= ?"
            params.append(after.isoformat())
        if before is not None:
            query += " AND occurred_at <= ?"
            params.append(before.isoformat())
        query += " ORDER BY occurred_at DESC LIMIT ?"
        params.append(limit)

        async with self.db.connect() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [json.loads(row["body"]) for row in rows]


class InMemoryUserDirectory:
    def __init__(self):
        self.profiles: Dict[str, UserProfile] = {}

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(user_id)

    async def upsert_profile(self, profile: UserProfile) -> None:
        self.profiles[profile.user_id] = profile


class SQLiteUserDirectory:
    def __init__(self, db: Database):
        self.db = db

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "SELECT user_id, first_name FROM user_profiles WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        return UserProfile(user_id=row["user_id"], first_name=row["first_name"]) if row else None

    async def upsert_profile(self, profile: UserProfile) -> None:
        async with self.db.connect() as conn:
            await conn.execute(
                """
                INSERT INTO user_profiles (user_id, first_name) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET first_name = excluded.first_name
                """,
                (profile.user_id, profile.first_name),
            )
            await conn.commit()
