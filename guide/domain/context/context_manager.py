from typing import Dict, List, Optional, Protocol, Sequence
import time

import structlog
from pydantic import BaseModel, Field

from guide.domain.context.context_aggregator import dedupe, group_by_source
from guide.domain.context.context_compressor import ContextCompressor
from guide.domain.context.context_retriever import ContextRetriever
from guide.domain.errors import ContextBuildError
from guide.domain.models.candidate import Candidate, TemporalRange
from guide.domain.models.context_pack import CompressedContext
from guide.domain.models.pipeline import Plan, ResponseMode
from guide.domain.models.user import UserProfile
from guide.infrastructure.observability.logging import MetricsCollector, guide_logger

logger = structlog.get_logger(__name__)


class UserDirectory(Protocol):
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        ...


class CandidateSet(BaseModel):
    candidates: List[Candidate] = Field(default_factory=list)
    by_source_counts: Dict[str, int] = Field(default_factory=dict)


class GuideContext(BaseModel):
    """Everything needed to drive one suggestions stream"""
    user: UserProfile
    plan: Plan
    candidates: CandidateSet
    compressed: CompressedContext


def suggestions_plan() -> Plan:
    return Plan(
        mode=ResponseMode.COACH,
        length="short",
        temporal_range=TemporalRange.LAST_WEEK,
        signals=["guide_suggestions"],
    )


class ContextManager:
    """Assembles candidate context for prompts"""

    def __init__(
        self,
        retriever: ContextRetriever,
        compressor: ContextCompressor,
        users: UserDirectory,
        metrics: Optional[MetricsCollector] = None
    ):
        self.retriever = retriever
        self.compressor = compressor
        self.users = users
        self.metrics = metrics

    async def get_user_profile(self, user_id: str) -> UserProfile:
        profile = await self.users.get_profile(user_id)
        if profile is None:
            raise ContextBuildError("User not found", status_code=404)
        return profile

    async def gather_candidates(self, user_id: str, plan: Plan) -> CandidateSet:
        """Fan out to every fetcher, then dedupe"""

        raw = await self.retriever.retrieve(user_id, plan.temporal_range)
        candidates = dedupe(raw)
        return CandidateSet(candidates=candidates, by_source_counts=group_by_source(candidates))

    def compress(
        self,
        user_id: str,
        candidate_set: CandidateSet,
        plan: Plan,
        enabled_actions: Optional[Sequence[str]] = None
    ) -> CompressedContext:
        compressed = self.compressor.compress(candidate_set.candidates, plan, enabled_actions)
        guide_logger.log_context_built(
            user_id=user_id,
            candidate_count=len(candidate_set.candidates),
            by_source=candidate_set.by_source_counts,
            payload_chars=compressed.payload_chars,
            elided=compressed.elided
        )
        return compressed

    async def build_suggestions_context(
        self,
        user_id: str,
        enabled_actions: Optional[Sequence[str]] = None
    ) -> GuideContext:
        """Build the compressed payload and allow-lists for a suggestions stream"""

        started = time.perf_counter()
        user = await self.get_user_profile(user_id)
        plan = suggestions_plan()

        candidate_set = await self.gather_candidates(user_id, plan)
        compressed = self.compress(user_id, candidate_set, plan, enabled_actions)

        if self.metrics:
            self.metrics.record_latency("context.build", (time.perf_counter() - started) * 1000)

        return GuideContext(user=user, plan=plan, candidates=candidate_set, compressed=compressed)
