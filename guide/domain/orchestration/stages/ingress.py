from guide.domain.models.pipeline import PipelineStage, RunContext
from guide.domain.orchestration.plan_builder import build_plan, merge_entity_refs, normalize_message
from guide.domain.orchestration.stages.base_stage import BaseStage, StageArtifacts, StageOutput


class IngressStage(BaseStage):
    """Normalizes the message, resolves scripture refs and builds the plan"""

    stage = PipelineStage.INGRESS
    description = "normalize input and plan retrieval"

    async def execute(self, context: RunContext, artifacts: StageArtifacts) -> StageOutput:
        message = normalize_message(context.message)
        entity_refs = merge_entity_refs(message, context.entity_refs)
        plan = build_plan(context.entrypoint, message, entity_refs)

        return StageOutput(
            summary=f"{plan.mode.value} plan over {plan.temporal_range.value} with {len(entity_refs)} refs",
            payload={
                "entrypoint": context.entrypoint.value,
                "mode": context.mode.value,
                "normalized_message": message,
                "entity_refs": entity_refs,
                "plan": plan.model_dump(mode="json"),
                "side_effects": context.side_effects.model_dump(),
                "write_policy": context.write_policy,
            },
            stats={
                "message_chars": len(message),
                "entity_ref_count": len(entity_refs),
                "safety_flagged": any(plan.safety_flags.values()),
            },
        )
