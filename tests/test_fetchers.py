from datetime import datetime, timedelta

import pytest

from guide.domain.context.context_retriever import ContextRetriever
from guide.domain.context.fetchers import (
    ConversationSummaryFetcher,
    HighlightFetcher,
    LifeContextFetcher,
    NoteFetcher,
    ReadingSessionFetcher,
    build_fetchers,
    calculate_recency_score,
    compute_date_bounds,
    create_redacted_preview,
)
from guide.domain.models.candidate import CandidateSource, TemporalRange
from guide.infrastructure.observability.logging import MetricsCollector
from tests.helpers import USER_ID, reading_record


class BrokenSource:
    async def fetch(self, user_id, temporal_range, limit):
        raise RuntimeError("table unavailable")


class RecordingSource:
    def __init__(self, records=None):
        self.records = records or []
        self.calls = []

    async def fetch(self, user_id, temporal_range, limit):
        self.calls.append((user_id, temporal_range, limit))
        return list(self.records)


def test_redacted_preview_masks_contact_details():
    preview = create_redacted_preview("Call 555-123-4567 or write to sam@example.com")

    assert "[PHONE]" in preview
    assert "[EMAIL]" in preview
    assert "sam@example.com" not in preview


def test_redacted_preview_truncates():
    preview = create_redacted_preview("x" * 400)

    assert preview == "x" * 150 + "..."
    assert create_redacted_preview(None) == ""


def test_recency_score_steps():
    now = datetime(2024, 6, 1, 12, 0)

    assert calculate_recency_score(now - timedelta(hours=3), now) == 1.0
    assert calculate_recency_score(now - timedelta(days=3), now) == 0.9
    assert calculate_recency_score(now - timedelta(days=20), now) == 0.7
    assert calculate_recency_score(now - timedelta(days=60), now) == 0.5
    assert calculate_recency_score(now - timedelta(days=400), now) == 0.3


def test_date_bounds():
    now = datetime(2024, 6, 1)

    assert compute_date_bounds(TemporalRange.ALL_TIME, now) == (None, None)
    assert compute_date_bounds(None, now) == (None, None)
    assert compute_date_bounds(TemporalRange.LAST_WEEK, now) == (now - timedelta(days=7), now)
    assert compute_date_bounds(TemporalRange.THIS_YEAR, now) == (datetime(2024, 1, 1), now)


@pytest.mark.asyncio
async def test_reading_session_candidate_shape():
    fetcher = ReadingSessionFetcher(RecordingSource([reading_record(local_date="2024-05-30")]))

    candidates = list(await fetcher.fetch(USER_ID))

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.id == "bible_chapter_daily_rollup:JHN:3:2024-05-30"
    assert candidate.label == "Reading: John 3:1-16"
    assert candidate.preview == "ESV · 5m · in_progress"
    assert candidate.metadata.verse_start == 1
    assert candidate.metadata.verse_end == 16
    assert candidate.features.recency_score == 1.0


@pytest.mark.asyncio
async def test_reading_session_skips_incomplete_records():
    fetcher = ReadingSessionFetcher(RecordingSource([{"book_id": "JHN"}, reading_record()]))

    assert len(list(await fetcher.fetch(USER_ID))) == 1


@pytest.mark.asyncio
async def test_fetch_uses_defaults():
    source = RecordingSource()
    await ReadingSessionFetcher(source).fetch(USER_ID)
    await LifeContextFetcher(source).fetch(USER_ID)

    assert source.calls == [
        (USER_ID, TemporalRange.LAST_WEEK, 10),
        (USER_ID, TemporalRange.ALL_TIME, 3),
    ]


@pytest.mark.asyncio
async def test_life_context_labels_and_skips_unknown_fields():
    fetcher = LifeContextFetcher(RecordingSource([
        {"field": "carrying", "value": "A heavy week"},
        {"field": "mood", "value": "ignored"},
        {"field": "hoping", "value": ""},
    ]))

    candidates = list(await fetcher.fetch(USER_ID))

    assert [c.id for c in candidates] == [f"life:{USER_ID}:carrying"]
    assert candidates[0].label == "What You're Carrying"


@pytest.mark.asyncio
async def test_artifact_fetchers_share_id_scheme():
    record = {"id": "a1", "title": "Grace", "content": "text", "tags": ["one", "two", "three", "four"]}

    hl = list(await HighlightFetcher(RecordingSource([record])).fetch(USER_ID))[0]
    nt = list(await NoteFetcher(RecordingSource([record])).fetch(USER_ID))[0]
    cs = list(await ConversationSummaryFetcher(RecordingSource([record])).fetch(USER_ID))[0]

    assert hl.id == nt.id == cs.id == "artifact:a1"
    assert hl.label == "Highlight: Grace"
    assert cs.label == "Session Summary: Grace"
    assert hl.metadata.tags == ["one", "two", "three"]


@pytest.mark.asyncio
async def test_failing_fetcher_contributes_nothing():
    metrics = MetricsCollector()
    good = ReadingSessionFetcher(RecordingSource([reading_record()]))
    retriever = ContextRetriever([good, NoteFetcher(BrokenSource())], metrics=metrics)

    candidates = await retriever.retrieve(USER_ID, TemporalRange.LAST_WEEK)

    assert [c.source for c in candidates] == [CandidateSource.READING_SESSION]
    assert metrics.get_metrics_summary()["context.fetcher_failed"] == 1


@pytest.mark.asyncio
async def test_life_context_is_never_time_bounded(signal_store):
    await signal_store.add_record(
        USER_ID,
        CandidateSource.LIFE_CONTEXT,
        {"field": "season", "value": "Long season"},
        occurred_at=datetime.utcnow() - timedelta(days=900),
    )
    retriever = ContextRetriever(build_fetchers(signal_store.source))

    candidates = await retriever.retrieve(USER_ID, TemporalRange.LAST_DAY)

    assert [c.id for c in candidates] == [f"life:{USER_ID}:season"]
