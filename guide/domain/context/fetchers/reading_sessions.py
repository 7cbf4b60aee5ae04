from typing import Any, Dict, Optional

from guide.domain.context.fetchers.base import (
    BaseFetcher, calculate_recency_score, create_redacted_preview, parse_timestamp
)
from guide.domain.context.scripture import book_display_name, parse_chapter_local_range
from guide.domain.models.candidate import (
    Candidate, CandidateFeatures, CandidateSource, ReadingSessionMetadata
)


def format_duration(seconds: Any) -> Optional[str]:
    """Human duration like ``4m 10s``"""

    if not isinstance(seconds, (int, float)) or seconds < 0:
        return None

    mins, secs = divmod(int(seconds), 60)
    if mins <= 0:
        return f"{secs}s"
    return f"{mins}m {secs}s" if secs > 0 else f"{mins}m"


def completion_label(status: Any) -> Optional[str]:
    if isinstance(status, str):
        return status or None
    if isinstance(status, dict) and status.get("status"):
        return str(status["status"])
    return None


class ReadingSessionFetcher(BaseFetcher):
    """Per-chapter daily reading rollups"""

    source = CandidateSource.READING_SESSION
    default_limit = 10

    def to_candidate(self, user_id: str, record: Dict[str, Any]) -> Optional[Candidate]:
        book_id = record.get("book_id")
        chapter = record.get("chapter")
        local_date = record.get("local_date")
        if not book_id or chapter is None or not local_date:
            return None

        book_name = record.get("book_name") or book_display_name(book_id) or book_id
        read_ranges = [r for r in record.get("read_ranges") or [] if isinstance(r, str)]
        first_range = read_ranges[0] if read_ranges else None
        ref = f"{book_name} {first_range}" if first_range else f"{book_name} {chapter}"
        verses = parse_chapter_local_range(first_range) if first_range else None

        status = completion_label(record.get("completion_status"))
        parts = [
            part for part in (
                record.get("translation"),
                format_duration(record.get("duration_seconds")),
                status,
            ) if part
        ]
        preview = " · ".join(parts) if parts else ref

        last_read = parse_timestamp(record.get("last_read_at")) or parse_timestamp(record.get("updated_at"))

        return Candidate(
            id=f"bible_chapter_daily_rollup:{book_id}:{chapter}:{local_date}",
            source=self.source,
            label=f"Reading: {ref}",
            preview=create_redacted_preview(preview),
            metadata=ReadingSessionMetadata(
                book_id=book_id,
                book_name=book_name,
                chapter=int(chapter),
                local_date=local_date,
                read_ranges=read_ranges,
                start_ref=f"{book_id} {chapter}:{verses.verse_start}" if verses else None,
                end_ref=f"{book_id} {chapter}:{verses.verse_end}" if verses else None,
                verse_start=verses.verse_start if verses else None,
                verse_end=verses.verse_end if verses else None,
                duration_seconds=int(record.get("duration_seconds") or 0),
                completion_status=status,
                translation=record.get("translation"),
                ended_at=last_read.isoformat() if last_read else None,
            ),
            features=CandidateFeatures(
                recency_score=calculate_recency_score(last_read) if last_read else None,
                created_at=last_read.isoformat() if last_read else None,
            ),
        )
