from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
from enum import Enum
import secrets
import string
import uuid

from pydantic import BaseModel, Field

from guide.domain.models.candidate import TemporalRange

PIPELINE_VERSION = "1.0.0"
ARTIFACT_SCHEMA_VERSION = 1

_ID_ALPHABET = string.ascii_letters + string.digits


def short_id(length: int = 12) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class PipelineStage(str, Enum):
    """Fixed pipeline stages, in execution order"""
    INGRESS = "INGRESS"
    CONTEXT_CANDIDATES = "CONTEXT_CANDIDATES"
    PROMPT_ASSEMBLY = "PROMPT_ASSEMBLY"
    MODEL_CALL = "MODEL_CALL"


STAGE_ORDER: List[PipelineStage] = [
    PipelineStage.INGRESS,
    PipelineStage.CONTEXT_CANDIDATES,
    PipelineStage.PROMPT_ASSEMBLY,
    PipelineStage.MODEL_CALL,
]

NEXT_STAGE: Dict[PipelineStage, Optional[PipelineStage]] = {
    PipelineStage.INGRESS: PipelineStage.CONTEXT_CANDIDATES,
    PipelineStage.CONTEXT_CANDIDATES: PipelineStage.PROMPT_ASSEMBLY,
    PipelineStage.PROMPT_ASSEMBLY: PipelineStage.MODEL_CALL,
    PipelineStage.MODEL_CALL: None,
}


class RunStatus(str, Enum):
    """Debug run lifecycle status"""
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"


class RunMode(str, Enum):
    PROD = "prod"
    DEBUG = "debug"


# Days a stage artifact is kept before the cleanup sweep removes it
ARTIFACT_RETENTION_DAYS: Dict[RunMode, int] = {
    RunMode.PROD: 30,
    RunMode.DEBUG: 7,
}


def artifact_expiry(mode: RunMode, created_at: datetime) -> datetime:
    return created_at + timedelta(days=ARTIFACT_RETENTION_DAYS[mode])


class Entrypoint(str, Enum):
    CHAT_START = "chat_start"
    FOLLOWUP = "followup"
    EXPLAIN = "explain"
    PRAYER_HELP = "prayer_help"


class ResponseMode(str, Enum):
    EXPLAIN = "explain"
    STUDY = "study"
    COACH = "coach"
    PASTORAL = "pastoral"
    CONTINUITY = "continuity"


class ScriptureScope(BaseModel):
    """Book or chapter the user is asking about"""
    kind: str = Field(description="book or chapter")
    book_id: str
    chapter: Optional[int] = None


class Plan(BaseModel):
    """Retrieval intent and response shape derived at ingress"""
    mode: ResponseMode = ResponseMode.EXPLAIN
    length: str = Field(default="short", description="short or medium")
    temporal_range: TemporalRange = TemporalRange.LAST_WEEK
    scope: Optional[ScriptureScope] = None
    safety_flags: Dict[str, bool] = Field(default_factory=dict)
    signals: List[str] = Field(default_factory=list)
    source: str = "rules"


class HistoryMessage(BaseModel):
    role: str
    content: str


class SideEffects(BaseModel):
    """Which writes a run may perform"""
    persist_conversation: bool = True
    write_memory: bool = False


class RunContext(BaseModel):
    """Everything a pipeline run needs besides persisted artifacts"""
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str = Field(default_factory=lambda: f"run_{short_id()}")
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    entrypoint: Entrypoint = Entrypoint.FOLLOWUP
    message: str
    entity_refs: List[str] = Field(default_factory=list)
    mode: RunMode = RunMode.PROD
    stop_at_stage: Optional[PipelineStage] = None
    side_effects: SideEffects = Field(default_factory=SideEffects)
    write_policy: str = Field(default="allow", description="allow or forbid")
    conversation_id: Optional[str] = None
    conversation_history: List[HistoryMessage] = Field(default_factory=list)
    enabled_actions: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_debug(cls, **kwargs) -> "RunContext":
        """Debug runs never write outside the artifact table"""
        return cls(
            mode=RunMode.DEBUG,
            side_effects=SideEffects(persist_conversation=False, write_memory=False),
            write_policy="forbid",
            **kwargs
        )


class PipelineArtifact(BaseModel):
    """Output of one completed stage, keyed by (run_id, stage)"""
    trace_id: str
    run_id: str
    stage: PipelineStage
    schema_version: int = ARTIFACT_SCHEMA_VERSION
    pipeline_version: str = PIPELINE_VERSION
    created_at: datetime = Field(default_factory=datetime.utcnow)
    duration_ms: float = 0
    summary: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    raw_ref: Optional[str] = None
    stats: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class DebugRun(BaseModel):
    """A replayable, stage-resumable pipeline invocation"""
    run_id: str
    trace_id: str
    admin_id: str
    user_id: str
    entrypoint: Entrypoint
    message: str
    conversation_history: List[HistoryMessage] = Field(default_factory=list)
    include_raw: bool = False
    status: RunStatus = RunStatus.RUNNING
    stopped_at_stage: Optional[PipelineStage] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_run_context(self, stop_at_stage: Optional[PipelineStage] = None) -> RunContext:
        """Rebuild the run context from the stored run parameters"""
        return RunContext.for_debug(
            trace_id=self.trace_id,
            run_id=self.run_id,
            user_id=self.user_id,
            entrypoint=self.entrypoint,
            message=self.message,
            stop_at_stage=stop_at_stage,
            conversation_history=list(self.conversation_history),
        )


class RunResult(BaseModel):
    """Outcome of one orchestrator invocation"""
    run_id: str
    trace_id: str
    status: RunStatus
    stopped_at_stage: Optional[PipelineStage] = None
    completed_stages: List[PipelineStage] = Field(default_factory=list)
    error_message: Optional[str] = None
    artifacts: Dict[str, PipelineArtifact] = Field(default_factory=dict)
