from typing import Dict, List, Optional, Protocol, Tuple
from datetime import datetime
import asyncio
import sqlite3

from guide.domain.errors import ArtifactConflictError
from guide.domain.models.pipeline import STAGE_ORDER, PipelineArtifact, PipelineStage
from guide.infrastructure.persistence.database import Database


def _stage_index(artifact: PipelineArtifact) -> int:
    return STAGE_ORDER.index(artifact.stage)


class ArtifactStore(Protocol):
    """Append-only artifact table keyed by (run_id, stage)"""

    async def add(self, artifact: PipelineArtifact) -> None:
        ...

    async def get(self, run_id: str, stage: PipelineStage) -> Optional[PipelineArtifact]:
        ...

    async def list_for_run(self, run_id: str) -> List[PipelineArtifact]:
        ...

    async def delete_for_run(self, run_id: str) -> int:
        ...

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        ...


class InMemoryArtifactStore:
    def __init__(self):
        self.artifacts: Dict[Tuple[str, PipelineStage], PipelineArtifact] = {}
        self._lock = asyncio.Lock()

    async def add(self, artifact: PipelineArtifact) -> None:
        async with self._lock:
            key = (artifact.run_id, artifact.stage)
            if key in self.artifacts:
                raise ArtifactConflictError(f"Artifact exists for {artifact.run_id}/{artifact.stage.value}")
            self.artifacts[key] = artifact.model_copy(deep=True)

    async def get(self, run_id: str, stage: PipelineStage) -> Optional[PipelineArtifact]:
        async with self._lock:
            artifact = self.artifacts.get((run_id, stage))
            return artifact.model_copy(deep=True) if artifact else None

    async def list_for_run(self, run_id: str) -> List[PipelineArtifact]:
        async with self._lock:
            found = [a.model_copy(deep=True) for (rid, _), a in self.artifacts.items() if rid == run_id]
        return sorted(found, key=_stage_index)

    async def delete_for_run(self, run_id: str) -> int:
        async with self._lock:
            keys = [key for key in self.artifacts if key[0] == run_id]
            for key in keys:
                del self.artifacts[key]
            return len(keys)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Drop artifacts past their expiry; artifacts without one are kept"""

        now = now or datetime.utcnow()
        async with self._lock:
            expired = [
                key for key, artifact in self.artifacts.items()
                if artifact.expires_at is not None and artifact.expires_at <= now
            ]
            for key in expired:
                del self.artifacts[key]
            return len(expired)


class SQLiteArtifactStore:
    def __init__(self, db: Database):
        self.db = db

    async def add(self, artifact: PipelineArtifact) -> None:
        async with self.db.connect() as conn:
            try:
                await conn.execute(
                    "INSERT INTO pipeline_artifacts (run_id, stage, trace_id, created_at, expires_at, body) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        artifact.run_id,
                        artifact.stage.value,
                        artifact.trace_id,
                        artifact.created_at.isoformat(),
                        artifact.expires_at.isoformat() if artifact.expires_at else None,
                        artifact.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ArtifactConflictError(
                    f"Artifact exists for {artifact.run_id}/{artifact.stage.value}"
                ) from e
            await conn.commit()

    async def get(self, run_id: str, stage: PipelineStage) -> Optional[PipelineArtifact]:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "SELECT body FROM pipeline_artifacts WHERE run_id = ? AND stage = ?",
                (run_id, stage.value),
            )
            row = await cursor.fetchone()
        return PipelineArtifact.model_validate_json(row["body"]) if row else None

    async def list_for_run(self, run_id: str) -> List[PipelineArtifact]:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "SELECT body FROM pipeline_artifacts WHERE run_id = ?",
                (run_id,),
            )
            rows = await cursor.fetchall()
        return sorted((PipelineArtifact.model_validate_json(r["body"]) for r in rows), key=_stage_index)

    async def delete_for_run(self, run_id: str) -> int:
        async with self.db.connect() as conn:
            cursor = await conn.execute("DELETE FROM pipeline_artifacts WHERE run_id = ?", (run_id,))
            await conn.commit()
            return cursor.rowcount

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "DELETE FROM pipeline_artifacts WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now.isoformat(),),
            )
            await conn.commit()
            return cursor.rowcount
