from typing import Annotated, List, Literal, Optional, Union
from enum import Enum

from pydantic import BaseModel, Field


class CandidateSource(str, Enum):
    """Signal source a candidate was fetched from"""
    LIFE_CONTEXT = "life_context"
    READING_SESSION = "reading_session"
    HIGHLIGHT = "highlight"
    NOTE = "note"
    CONVERSATION_SUMMARY = "conversation_summary"


class TemporalRange(str, Enum):
    """Lookback window accepted by every fetcher"""
    LAST_DAY = "last_day"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    LAST_3_MONTHS = "last_3_months"
    LAST_YEAR = "last_year"
    THIS_YEAR = "this_year"
    ALL_TIME = "all_time"


class CandidateFeatures(BaseModel):
    """Optional scores attached to a candidate"""
    recency_score: Optional[float] = Field(None, ge=0, le=1)
    semantic_score: Optional[float] = None
    temporal_match_score: Optional[float] = None
    scope_match_score: Optional[float] = None
    freshness_score: Optional[float] = None
    created_at: Optional[str] = Field(None, description="ISO timestamp of the underlying record")


class LifeContextMetadata(BaseModel):
    kind: Literal["life_context"] = "life_context"
    field: Literal["season", "carrying", "hoping"]
    updated_at: Optional[str] = None


class ReadingSessionMetadata(BaseModel):
    kind: Literal["reading_session"] = "reading_session"
    book_id: str
    chapter: int
    local_date: str
    book_name: Optional[str] = None
    read_ranges: List[str] = Field(default_factory=list)
    start_ref: Optional[str] = None
    end_ref: Optional[str] = None
    verse_start: Optional[int] = None
    verse_end: Optional[int] = None
    duration_seconds: int = 0
    completion_status: Optional[str] = None
    translation: Optional[str] = None
    ended_at: Optional[str] = None


class HighlightMetadata(BaseModel):
    kind: Literal["highlight"] = "highlight"
    artifact_id: str
    title: Optional[str] = None
    scripture_refs: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    color: Optional[str] = None


class NoteMetadata(BaseModel):
    kind: Literal["note"] = "note"
    artifact_id: str
    title: Optional[str] = None
    scripture_refs: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    summary: Optional[str] = None


class ConversationSummaryMetadata(BaseModel):
    kind: Literal["conversation_summary"] = "conversation_summary"
    artifact_id: str
    title: Optional[str] = None
    scripture_refs: List[str] = Field(default_factory=list)


CandidateMetadata = Annotated[
    Union[
        LifeContextMetadata,
        ReadingSessionMetadata,
        HighlightMetadata,
        NoteMetadata,
        ConversationSummaryMetadata,
    ],
    Field(discriminator="kind"),
]


class Candidate(BaseModel):
    """A normalized signal eligible for inclusion in a prompt"""
    id: str = Field(description="Stable identity, also the dedupe key")
    source: CandidateSource
    label: str
    preview: str = ""
    metadata: CandidateMetadata
    features: CandidateFeatures = Field(default_factory=CandidateFeatures)
