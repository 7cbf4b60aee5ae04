from typing import List, Optional
from datetime import datetime
import math

import httpx
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from guide.config import Settings
from guide.domain.errors import ConversationNotFoundError, GuideError
from guide.domain.models.conversation import ConversationMessage, ConversationState
from guide.domain.orchestration.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.persistence.conversation_state_store import ConversationStateStore

logger = structlog.get_logger(__name__)

DIGEST_LINE_CHARS = 120
MAX_DIGEST_SUMMARY_CHARS = 1600


def _speaker(message: ConversationMessage) -> str:
    return "User" if message.role == "user" else "Assistant"


def format_transcript(messages: List[ConversationMessage]) -> str:
    return "\n\n".join(f"{_speaker(m)}: {m.content}" for m in messages)


def extractive_digest(existing_summary: str, dropped: List[ConversationMessage]) -> str:
    """Deterministic fallback: first line of each dropped message appended to the summary"""

    lines = []
    for message in dropped:
        text = " ".join(message.content.split())
        if len(text) > DIGEST_LINE_CHARS:
            text = text[:DIGEST_LINE_CHARS].rstrip() + "…"
        if text:
            lines.append(f"{_speaker(message)}: {text}")

    digest = "\n".join(filter(None, [existing_summary.strip(), *lines]))
    if len(digest) > MAX_DIGEST_SUMMARY_CHARS:
        digest = "…" + digest[-MAX_DIGEST_SUMMARY_CHARS:]
    return digest or "Earlier conversation."


class ConversationStateManager:
    """Manages the rolling message window and running summary per conversation"""

    def __init__(
        self,
        store: ConversationStateStore,
        client: Optional[OpenAIClient],
        settings: Settings
    ):
        self.store = store
        self.client = client
        self.settings = settings

    @property
    def max_recent_messages(self) -> int:
        return self.settings.max_recent_messages

    async def get_state(self, conversation_id: str, user_id: str) -> Optional[ConversationState]:
        """State for the owning user; another user's conversation reads as missing"""

        state = await self.store.get(conversation_id)
        if state is None or state.user_id != user_id:
            return None
        return state

    async def require_state(self, conversation_id: str, user_id: str) -> ConversationState:
        state = await self.get_state(conversation_id, user_id)
        if state is None:
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        return state

    async def load_for_turn(self, conversation_id: str, user_id: str) -> Optional[ConversationState]:
        """Existing state, or None for a new conversation; another user's id is rejected"""

        state = await self.store.get(conversation_id)
        if state is not None and state.user_id != user_id:
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        return state

    async def record_turn(
        self,
        conversation_id: str,
        user_id: str,
        user_message: str,
        assistant_message: str,
        summarize: bool = True
    ) -> ConversationState:
        """Append one exchange, trim the window and refresh the summary when anything fell out"""

        state = await self.load_for_turn(conversation_id, user_id)
        if state is None:
            state = ConversationState(conversation_id=conversation_id, user_id=user_id)

        now = datetime.utcnow()
        messages = state.recent_messages + [
            ConversationMessage(role="user", content=user_message, timestamp=now),
            ConversationMessage(role="assistant", content=assistant_message, timestamp=now),
        ]

        summary = state.summary
        overflow = len(messages) - self.max_recent_messages
        if overflow > 0:
            dropped, messages = messages[:overflow], messages[overflow:]
            summary = await self._refresh_summary(conversation_id, summary, dropped, summarize)

        updated = state.model_copy(update={
            "summary": summary,
            "recent_messages": messages,
            "turn_count": state.turn_count + 1,
            "updated_at": now,
        })
        await self.store.upsert(updated)

        logger.info(
            "Recorded conversation turn",
            conversation_id=conversation_id,
            turn_count=updated.turn_count,
            window=len(messages),
            trimmed=max(overflow, 0)
        )
        return updated

    async def delete_state(self, conversation_id: str) -> bool:
        deleted = await self.store.delete(conversation_id)
        logger.info("Deleted conversation state", conversation_id=conversation_id, deleted=deleted)
        return deleted

    def build_messages(self, state: Optional[ConversationState], new_user_message: str) -> List[BaseMessage]:
        """Summary context, then the retained window, then the new user message"""

        messages: List[BaseMessage] = []
        if state is not None:
            if state.summary:
                messages.append(AIMessage(content=f"[Previous conversation context: {state.summary}]"))
            for message in state.recent_messages:
                cls = HumanMessage if message.role == "user" else AIMessage
                messages.append(cls(content=message.content))

        messages.append(HumanMessage(content=new_user_message))
        return messages

    @staticmethod
    def estimate_tokens(messages: List[BaseMessage]) -> int:
        chars = sum(len(str(m.content)) for m in messages)
        return math.ceil(chars / 4)

    async def _refresh_summary(
        self,
        conversation_id: str,
        existing_summary: str,
        dropped: List[ConversationMessage],
        summarize: bool
    ) -> str:
        if summarize and self.client is not None:
            try:
                completion = await self.client.complete_chat(
                    [
                        SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
                        HumanMessage(content=build_summary_prompt(existing_summary, format_transcript(dropped))),
                    ],
                    model=self.settings.summary_model,
                    max_completion_tokens=self.settings.summary_max_tokens,
                    temperature=self.settings.summary_temperature,
                )
                if completion.content.strip():
                    return completion.content.strip()
                logger.warning("Summary model returned no text", conversation_id=conversation_id)
            except (GuideError, httpx.HTTPError) as e:
                logger.warning("Summary generation failed", conversation_id=conversation_id, error=str(e))

        return extractive_digest(existing_summary, dropped)
