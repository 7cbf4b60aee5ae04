from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple
from datetime import datetime, timedelta
import re

import structlog

from guide.domain.models.candidate import Candidate, CandidateSource, TemporalRange

logger = structlog.get_logger(__name__)

MAX_PREVIEW_LENGTH = 150

_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")

_RANGE_DAYS = {
    TemporalRange.LAST_DAY: 1,
    TemporalRange.LAST_WEEK: 7,
    TemporalRange.LAST_MONTH: 30,
    TemporalRange.LAST_3_MONTHS: 90,
    TemporalRange.LAST_YEAR: 365,
}


class SignalSource(Protocol):
    """Read-only query contract for one signal table"""

    async def fetch(
        self,
        user_id: str,
        temporal_range: Optional[TemporalRange],
        limit: int
    ) -> List[Dict[str, Any]]:
        """Return records for the user, newest first"""
        ...


def compute_date_bounds(
    temporal_range: Optional[TemporalRange],
    now: Optional[datetime] = None
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return (after, before) bounds for a lookback window; None means unbounded"""

    now = now or datetime.utcnow()
    if temporal_range is None or temporal_range == TemporalRange.ALL_TIME:
        return None, None
    if temporal_range == TemporalRange.THIS_YEAR:
        return datetime(now.year, 1, 1), now
    return now - timedelta(days=_RANGE_DAYS[temporal_range]), now


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into a naive UTC datetime"""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def calculate_recency_score(when: datetime, now: Optional[datetime] = None) -> float:
    """Step decay from 1.0 (today) to 0.3 (older than 90 days)"""

    now = now or datetime.utcnow()
    age_days = (now - when).total_seconds() / 86400

    if age_days < 1:
        return 1.0
    if age_days < 7:
        return 0.9
    if age_days < 30:
        return 0.7
    if age_days < 90:
        return 0.5
    return 0.3


def create_redacted_preview(text: Optional[str], max_length: int = MAX_PREVIEW_LENGTH) -> str:
    """Truncate to the preview length, then mask emails and phone numbers"""

    if not text:
        return ""

    preview = text if len(text) <= max_length else text[:max_length] + "..."
    preview = _EMAIL.sub("[EMAIL]", preview)
    return _PHONE.sub("[PHONE]", preview)


class BaseFetcher(ABC):
    """Turns records from one signal source into candidates"""

    source: CandidateSource
    default_limit: int = 20
    default_range: Optional[TemporalRange] = TemporalRange.LAST_WEEK

    def __init__(self, signal_source: SignalSource):
        self.signal_source = signal_source

    async def fetch(
        self,
        user_id: str,
        temporal_range: Optional[TemporalRange] = None,
        limit: Optional[int] = None
    ) -> Iterator[Candidate]:
        """Query the source and return a lazy, single-pass candidate iterator"""

        records = await self.signal_source.fetch(
            user_id,
            temporal_range or self.default_range,
            limit or self.default_limit
        )
        logger.debug("Fetched records", source=self.source.value, user_id=user_id, count=len(records))
        return self._iter_candidates(user_id, records)

    def _iter_candidates(self, user_id: str, records: List[Dict[str, Any]]) -> Iterator[Candidate]:
        for record in records:
            candidate = self.to_candidate(user_id, record)
            if candidate is not None:
                yield candidate

    @abstractmethod
    def to_candidate(self, user_id: str, record: Dict[str, Any]) -> Optional[Candidate]:
        """Normalize one record; return None to skip it"""
        pass
