from typing import Dict, Optional, Protocol
import asyncio

from guide.domain.models.conversation import ConversationState
from guide.infrastructure.persistence.database import Database


class ConversationStateStore(Protocol):
    """One row per conversation id; last write wins"""

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        ...

    async def upsert(self, state: ConversationState) -> None:
        ...

    async def delete(self, conversation_id: str) -> bool:
        ...


class InMemoryConversationStateStore:
    def __init__(self):
        self.states: Dict[str, ConversationState] = {}
        self._lock = asyncio.Lock()

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        async with self._lock:
            state = self.states.get(conversation_id)
            return state.model_copy(deep=True) if state else None

    async def upsert(self, state: ConversationState) -> None:
        async with self._lock:
            self.states[state.conversation_id] = state.model_copy(deep=True)

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            return self.states.pop(conversation_id, None) is not None


class SQLiteConversationStateStore:
    def __init__(self, db: Database):
        self.db = db

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "SELECT body FROM conversation_states WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        return ConversationState.model_validate_json(row["body"]) if row else None

    async def upsert(self, state: ConversationState) -> None:
        async with self.db.connect() as conn:
            await conn.execute(
                """
                INSERT INTO conversation_states (conversation_id, user_id, updated_at, body)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    updated_at = excluded.updated_at,
                    body = excluded.body
                """,
                (state.conversation_id, state.user_id, state.updated_at.isoformat(), state.model_dump_json()),
            )
            await conn.commit()

    async def delete(self, conversation_id: str) -> bool:
        async with self.db.connect() as conn:
            cursor = await conn.execute(
                "DELETE FROM conversation_states WHERE conversation_id = ?",
                (conversation_id,),
            )
            await conn.commit()
            return cursor.rowcount > 0
