from typing import Dict, Any, Optional, List, Literal
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from guide.domain.models.pipeline import Entrypoint, PipelineStage, RunStatus


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in code"""
    model_config = ConfigDict(populate_by_name=True)


class SuggestionsRequest(WireModel):
    enabled_actions: Optional[List[Any]] = Field(None, alias="enabledActions")


class ChatRequest(WireModel):
    conversation_id: str = Field(alias="conversationId", min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=8000)
    entrypoint: Optional[Entrypoint] = None
    entity_refs: List[str] = Field(default_factory=list, alias="entityRefs")


class ChatResponse(WireModel):
    reply: str
    run_id: str = Field(alias="runId")
    trace_id: str = Field(alias="traceId")
    turn_count: int = Field(alias="turnCount")


class ConversationMessageView(WireModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime


class ConversationStateResponse(WireModel):
    conversation_id: str = Field(alias="conversationId")
    summary: str
    recent_messages: List[ConversationMessageView] = Field(alias="recentMessages")
    turn_count: int = Field(alias="turnCount")
    updated_at: datetime = Field(alias="updatedAt")


class HistoryMessageIn(WireModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1)


class HistoryMessageView(WireModel):
    role: str
    content: str


class StartDebugRunRequest(WireModel):
    user_id: str = Field(alias="userId", min_length=1)
    entrypoint: Entrypoint = Entrypoint.FOLLOWUP
    message: str = Field(min_length=1, max_length=8000)
    stop_at_stage: Optional[PipelineStage] = Field(None, alias="stopAtStage")
    run_model: bool = Field(True, alias="runModel")
    conversation_history: List[HistoryMessageIn] = Field(default_factory=list, alias="conversationHistory")
    include_raw: bool = Field(False, alias="includeRaw")


class ContinueDebugRunRequest(WireModel):
    stop_at_stage: Optional[PipelineStage] = Field(None, alias="stopAtStage")


class DebugRunResponse(WireModel):
    run_id: str = Field(alias="runId")
    trace_id: str = Field(alias="traceId")
    status: RunStatus
    stopped_at_stage: Optional[PipelineStage] = Field(None, alias="stoppedAtStage")
    completed_stages: List[PipelineStage] = Field(default_factory=list, alias="completedStages")
    error_message: Optional[str] = Field(None, alias="errorMessage")


class ArtifactView(WireModel):
    stage: PipelineStage
    schema_version: int = Field(alias="schemaVersion")
    pipeline_version: str = Field(alias="pipelineVersion")
    created_at: datetime = Field(alias="createdAt")
    duration_ms: float = Field(alias="durationMs")
    summary: str
    payload: Dict[str, Any]
    raw_ref: Optional[str] = Field(None, alias="rawRef")
    stats: Dict[str, Any] = Field(default_factory=dict)


class DebugRunDetailResponse(WireModel):
    run_id: str = Field(alias="runId")
    trace_id: str = Field(alias="traceId")
    user_id: str = Field(alias="userId")
    admin_id: str = Field(alias="adminId")
    entrypoint: Entrypoint
    message: str
    status: RunStatus
    stopped_at_stage: Optional[PipelineStage] = Field(None, alias="stoppedAtStage")
    error_message: Optional[str] = Field(None, alias="errorMessage")
    conversation_history: List[HistoryMessageView] = Field(default_factory=list, alias="conversationHistory")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    artifacts: List[ArtifactView] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
