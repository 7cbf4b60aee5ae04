from abc import abstractmethod
from typing import Any, Dict, List, Optional

from guide.domain.context.fetchers.base import (
    BaseFetcher, calculate_recency_score, create_redacted_preview, parse_timestamp
)
from guide.domain.models.candidate import (
    Candidate,
    CandidateFeatures,
    CandidateSource,
    ConversationSummaryMetadata,
    HighlightMetadata,
    NoteMetadata,
)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


class ArtifactFetcher(BaseFetcher):
    """Shared mapping for user artifacts (highlights, notes, session summaries)"""

    type_label = "Artifact"

    def to_candidate(self, user_id: str, record: Dict[str, Any]) -> Optional[Candidate]:
        artifact_id = record.get("id")
        if not artifact_id:
            return None

        title = record.get("title")
        created = parse_timestamp(record.get("created_at"))

        return Candidate(
            id=f"artifact:{artifact_id}",
            source=self.source,
            label=f"{self.type_label}: {title}" if title else self.type_label,
            preview=create_redacted_preview(record.get("content")),
            metadata=self.build_metadata(str(artifact_id), record),
            features=CandidateFeatures(
                recency_score=calculate_recency_score(created) if created else None,
                created_at=created.isoformat() if created else None,
            ),
        )

    @abstractmethod
    def build_metadata(self, artifact_id: str, record: Dict[str, Any]):
        """Source-specific metadata variant"""
        pass


class HighlightFetcher(ArtifactFetcher):
    source = CandidateSource.HIGHLIGHT
    default_limit = 20
    type_label = "Highlight"

    def build_metadata(self, artifact_id: str, record: Dict[str, Any]) -> HighlightMetadata:
        return HighlightMetadata(
            artifact_id=artifact_id,
            title=record.get("title"),
            scripture_refs=_string_list(record.get("scripture_refs")),
            tags=_string_list(record.get("tags"))[:3],
            color=record.get("color"),
        )


class NoteFetcher(ArtifactFetcher):
    source = CandidateSource.NOTE
    default_limit = 20
    type_label = "Note"

    def build_metadata(self, artifact_id: str, record: Dict[str, Any]) -> NoteMetadata:
        return NoteMetadata(
            artifact_id=artifact_id,
            title=record.get("title"),
            scripture_refs=_string_list(record.get("scripture_refs")),
            tags=_string_list(record.get("tags"))[:3],
            summary=record.get("summary") or None,
        )


class ConversationSummaryFetcher(ArtifactFetcher):
    source = CandidateSource.CONVERSATION_SUMMARY
    default_limit = 5
    type_label = "Session Summary"

    def build_metadata(self, artifact_id: str, record: Dict[str, Any]) -> ConversationSummaryMetadata:
        return ConversationSummaryMetadata(
            artifact_id=artifact_id,
            title=record.get("title"),
            scripture_refs=_string_list(record.get("scripture_refs")),
        )
