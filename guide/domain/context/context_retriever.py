from typing import List, Optional, Sequence
import asyncio
import time

import structlog

from guide.domain.context.fetchers import BaseFetcher
from guide.domain.models.candidate import Candidate, TemporalRange
from guide.infrastructure.observability.logging import MetricsCollector, guide_logger

logger = structlog.get_logger(__name__)


class ContextRetriever:
    """Fans out to every candidate fetcher and joins the results"""

    def __init__(self, fetchers: Sequence[BaseFetcher], metrics: Optional[MetricsCollector] = None):
        self.fetchers = list(fetchers)
        self.metrics = metrics

    async def retrieve(
        self,
        user_id: str,
        temporal_range: Optional[TemporalRange] = None
    ) -> List[Candidate]:
        """Run all fetchers concurrently; a failing source contributes nothing"""

        started = time.perf_counter()
        results = await asyncio.gather(*[
            self._run_fetcher(fetcher, user_id, temporal_range)
            for fetcher in self.fetchers
        ])

        candidates: List[Candidate] = []
        for batch in results:
            candidates.extend(batch)

        if self.metrics:
            self.metrics.record_latency("context.retrieve", (time.perf_counter() - started) * 1000)

        logger.info("Retrieved candidates", user_id=user_id, count=len(candidates))
        return candidates

    async def _run_fetcher(
        self,
        fetcher: BaseFetcher,
        user_id: str,
        temporal_range: Optional[TemporalRange]
    ) -> List[Candidate]:
        # Life context is never time-bounded.
        effective_range = fetcher.default_range if fetcher.default_range == TemporalRange.ALL_TIME else temporal_range

        try:
            return list(await fetcher.fetch(user_id, effective_range))
        except Exception as e:
            guide_logger.log_fetcher_failure(fetcher.source.value, user_id, str(e))
            if self.metrics:
                self.metrics.increment_counter("context.fetcher_failed", tags={"source": fetcher.source.value})
            return []
