from typing import Any, Dict, Optional

from guide.domain.context.fetchers.base import BaseFetcher, create_redacted_preview
from guide.domain.models.candidate import (
    Candidate, CandidateSource, LifeContextMetadata, TemporalRange
)

LIFE_CONTEXT_LABELS = {
    "season": "Current Season",
    "carrying": "What You're Carrying",
    "hoping": "What You're Hoping For",
}


class LifeContextFetcher(BaseFetcher):
    """Season and weekly intention the user shared; enrichment only"""

    source = CandidateSource.LIFE_CONTEXT
    default_limit = len(LIFE_CONTEXT_LABELS)
    default_range = TemporalRange.ALL_TIME

    def to_candidate(self, user_id: str, record: Dict[str, Any]) -> Optional[Candidate]:
        field = record.get("field")
        value = record.get("value")
        if field not in LIFE_CONTEXT_LABELS or not value:
            return None

        return Candidate(
            id=f"life:{user_id}:{field}",
            source=self.source,
            label=LIFE_CONTEXT_LABELS[field],
            preview=create_redacted_preview(str(value)),
            metadata=LifeContextMetadata(field=field, updated_at=record.get("updated_at")),
        )
