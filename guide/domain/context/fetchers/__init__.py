from typing import Callable, List

from guide.domain.context.fetchers.artifacts import (
    ConversationSummaryFetcher, HighlightFetcher, NoteFetcher
)
from guide.domain.context.fetchers.base import (
    BaseFetcher,
    SignalSource,
    calculate_recency_score,
    compute_date_bounds,
    create_redacted_preview,
)
from guide.domain.context.fetchers.life_context import LifeContextFetcher
from guide.domain.context.fetchers.reading_sessions import ReadingSessionFetcher
from guide.domain.models.candidate import CandidateSource

FETCHER_TYPES = [
    LifeContextFetcher,
    ReadingSessionFetcher,
    HighlightFetcher,
    NoteFetcher,
    ConversationSummaryFetcher,
]


def build_fetchers(source_for: Callable[[CandidateSource], SignalSource]) -> List[BaseFetcher]:
    """One fetcher per candidate source, in fixed order"""
    return [fetcher_type(source_for(fetcher_type.source)) for fetcher_type in FETCHER_TYPES]


__all__ = [
    "BaseFetcher",
    "SignalSource",
    "LifeContextFetcher",
    "ReadingSessionFetcher",
    "HighlightFetcher",
    "NoteFetcher",
    "ConversationSummaryFetcher",
    "build_fetchers",
    "calculate_recency_score",
    "compute_date_bounds",
    "create_redacted_preview",
]
