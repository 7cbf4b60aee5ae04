from guide.domain.context.context_manager import ContextManager
from guide.domain.models.pipeline import PipelineStage, Plan, RunContext
from guide.domain.orchestration.stages.base_stage import BaseStage, StageArtifacts, StageOutput


class ContextCandidatesStage(BaseStage):
    """Fetches and dedupes candidates for the planned time window"""

    stage = PipelineStage.CONTEXT_CANDIDATES
    description = "gather candidate signals"

    def __init__(self, context_manager: ContextManager):
        self.context_manager = context_manager

    async def execute(self, context: RunContext, artifacts: StageArtifacts) -> StageOutput:
        ingress = self.require_payload(artifacts, PipelineStage.INGRESS)
        plan = Plan.model_validate(ingress["plan"])

        user = await self.context_manager.get_user_profile(context.user_id)
        candidate_set = await self.context_manager.gather_candidates(context.user_id, plan)

        return StageOutput(
            summary=f"{len(candidate_set.candidates)} candidates",
            payload={
                "user": user.model_dump(),
                "plan": plan.model_dump(mode="json"),
                "candidates": [c.model_dump(mode="json") for c in candidate_set.candidates],
                "by_source_counts": candidate_set.by_source_counts,
            },
            stats={
                "candidate_count": len(candidate_set.candidates),
                "source_count": len(candidate_set.by_source_counts),
            },
        )
