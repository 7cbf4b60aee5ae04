from typing import List, Literal
from datetime import datetime

from pydantic import BaseModel, Field


class ConversationMessage(BaseModel):
    """One message in the retained window"""
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ConversationState(BaseModel):
    """Rolling window plus running summary for one conversation"""
    conversation_id: str
    user_id: str
    summary: str = ""
    recent_messages: List[ConversationMessage] = Field(default_factory=list)
    turn_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
