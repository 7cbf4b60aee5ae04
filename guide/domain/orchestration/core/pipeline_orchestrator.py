from typing import TypedDict, Dict, Any, List, Optional, Sequence
from datetime import datetime
import time

import structlog
from langgraph.graph import StateGraph, END

from guide.domain.errors import StageExecutionError
from guide.domain.models.pipeline import (
    NEXT_STAGE, STAGE_ORDER, PipelineArtifact, PipelineStage,
    RunContext, RunResult, RunStatus, artifact_expiry
)
from guide.domain.orchestration.stages.base_stage import BaseStage
from guide.infrastructure.observability.logging import MetricsCollector, guide_logger
from guide.infrastructure.persistence.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

HALT_NODE = "halt"


class PipelineState(TypedDict):
    """State carried through the stage graph"""
    context: RunContext
    artifacts: Dict[str, PipelineArtifact]
    completed: List[PipelineStage]
    next_stage: Optional[PipelineStage]
    stopped_at: Optional[PipelineStage]
    error: Optional[str]
    error_status: int
    failed_stage: Optional[PipelineStage]


def _node_name(stage: PipelineStage) -> str:
    return stage.value.lower()


def next_stage_after(artifacts: Sequence[PipelineArtifact]) -> Optional[PipelineStage]:
    """First stage to run given what has already been persisted"""

    if not artifacts:
        return STAGE_ORDER[0]
    last = max(artifacts, key=lambda a: STAGE_ORDER.index(a.stage))
    return NEXT_STAGE[last.stage]


class PipelineOrchestrator:
    """Runs the fixed stage sequence, persisting one artifact per completed stage"""

    def __init__(
        self,
        stages: Sequence[BaseStage],
        artifact_store: ArtifactStore,
        metrics: Optional[MetricsCollector] = None
    ):
        self.stages: Dict[PipelineStage, BaseStage] = {s.stage: s for s in stages}
        missing = [s.value for s in STAGE_ORDER if s not in self.stages]
        if missing:
            raise ValueError(f"Missing stage handlers: {missing}")

        self.artifact_store = artifact_store
        self.metrics = metrics
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        workflow = StateGraph(PipelineState)

        routes = {_node_name(stage): _node_name(stage) for stage in STAGE_ORDER}
        routes[HALT_NODE] = HALT_NODE
        routes["end"] = END

        for stage in STAGE_ORDER:
            workflow.add_node(_node_name(stage), self._stage_node(stage))
        workflow.add_node(HALT_NODE, self.halt_node)

        workflow.set_conditional_entry_point(self.route_next, routes)
        for stage in STAGE_ORDER:
            workflow.add_conditional_edges(_node_name(stage), self.route_next, routes)
        workflow.add_edge(HALT_NODE, END)

        return workflow.compile()

    def route_next(self, state: PipelineState) -> str:
        """Pick the next node: a stage, the halt node, or the end"""

        if state.get("error"):
            return "end"

        next_stage = state.get("next_stage")
        if next_stage is None:
            return "end"
        if state["context"].stop_at_stage == next_stage:
            return HALT_NODE
        return _node_name(next_stage)

    async def halt_node(self, state: PipelineState) -> Dict[str, Any]:
        guide_logger.log_stage_transition(state["context"].run_id, state["next_stage"].value, "stopped")
        return {"stopped_at": state["next_stage"]}

    def _stage_node(self, stage: PipelineStage):
        async def node(state: PipelineState) -> Dict[str, Any]:
            return await self.execute_stage(stage, state)
        return node

    async def execute_stage(self, stage: PipelineStage, state: PipelineState) -> Dict[str, Any]:
        """Run one stage and persist its artifact; failures are recorded on the state"""

        context = state["context"]
        handler = self.stages[stage]
        guide_logger.log_stage_transition(context.run_id, stage.value, "started")
        started = time.perf_counter()

        try:
            output = await handler.execute(context, state["artifacts"])
            duration_ms = (time.perf_counter() - started) * 1000
            created_at = datetime.utcnow()
            artifact = PipelineArtifact(
                trace_id=context.trace_id,
                run_id=context.run_id,
                stage=stage,
                created_at=created_at,
                expires_at=artifact_expiry(context.mode, created_at),
                duration_ms=round(duration_ms, 2),
                summary=output.summary,
                payload=output.payload,
                stats=output.stats or {},
            )
            await self.artifact_store.add(artifact)
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            guide_logger.log_stage_transition(
                context.run_id, stage.value, "error", duration_ms=round(duration_ms, 2), error=str(e)
            )
            logger.exception("Stage failed", run_id=context.run_id, stage=stage.value)
            if self.metrics:
                self.metrics.increment_counter("pipeline.stage_failed", tags={"stage": stage.value})
            return {
                "error": str(e) or e.__class__.__name__,
                "error_status": getattr(e, "status_code", 500),
                "failed_stage": stage,
            }

        guide_logger.log_stage_transition(context.run_id, stage.value, "completed", duration_ms=artifact.duration_ms)
        if self.metrics:
            self.metrics.record_latency(f"pipeline.stage.{stage.value}", duration_ms)

        return {
            "artifacts": {**state["artifacts"], stage.value: artifact},
            "completed": state["completed"] + [stage],
            "next_stage": NEXT_STAGE[stage],
        }

    async def run(self, context: RunContext, raise_errors: bool = False) -> RunResult:
        """Execute from the first stage without a persisted artifact, honoring stop_at_stage"""

        existing = await self.artifact_store.list_for_run(context.run_id)
        initial: PipelineState = {
            "context": context,
            "artifacts": {a.stage.value: a for a in existing},
            "completed": [],
            "next_stage": next_stage_after(existing),
            "stopped_at": None,
            "error": None,
            "error_status": 500,
            "failed_stage": None,
        }

        with structlog.contextvars.bound_contextvars(trace_id=context.trace_id, run_id=context.run_id):
            logger.info(
                "Pipeline run starting",
                mode=context.mode.value,
                start_stage=initial["next_stage"].value if initial["next_stage"] else None,
                stop_at_stage=context.stop_at_stage.value if context.stop_at_stage else None
            )
            final = await self.workflow.ainvoke(initial)

        result = self._to_result(context, final)
        if raise_errors and result.status == RunStatus.ERROR:
            raise StageExecutionError(
                final["failed_stage"].value if final.get("failed_stage") else "pipeline",
                final["error"],
                status_code=final.get("error_status", 500),
            )
        return result

    @staticmethod
    def _to_result(context: RunContext, final: Dict[str, Any]) -> RunResult:
        if final.get("error"):
            status = RunStatus.ERROR
        elif final.get("stopped_at") is not None:
            status = RunStatus.STOPPED
        else:
            status = RunStatus.COMPLETED

        return RunResult(
            run_id=context.run_id,
            trace_id=context.trace_id,
            status=status,
            stopped_at_stage=final.get("stopped_at"),
            completed_stages=final.get("completed", []),
            error_message=final.get("error"),
            artifacts=final.get("artifacts", {}),
        )
