from typing import List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from guide.domain.errors import RunNotContinuableError, RunNotFoundError
from guide.domain.models.pipeline import (
    STAGE_ORDER, DebugRun, Entrypoint, HistoryMessage, PipelineArtifact,
    PipelineStage, RunResult, RunStatus, short_id
)
from guide.domain.orchestration.core.pipeline_orchestrator import PipelineOrchestrator, next_stage_after
from guide.infrastructure.persistence.artifact_store import ArtifactStore
from guide.infrastructure.persistence.debug_run_store import DebugRunStore

logger = structlog.get_logger(__name__)

# Full prompts and responses are only returned when the run asked for raw output.
RAW_PAYLOAD_KEYS = ("messages", "response")


class DebugRunDetail(BaseModel):
    run: DebugRun
    artifacts: List[PipelineArtifact] = Field(default_factory=list)


def redact_raw(artifact: PipelineArtifact) -> PipelineArtifact:
    if not any(key in artifact.payload for key in RAW_PAYLOAD_KEYS):
        return artifact
    payload = {k: v for k, v in artifact.payload.items() if k not in RAW_PAYLOAD_KEYS}
    return artifact.model_copy(update={
        "payload": payload,
        "raw_ref": f"{artifact.run_id}/{artifact.stage.value}",
    })


class DebugRunService:
    """Starts, resumes and inspects admin debug runs"""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        runs: DebugRunStore,
        artifacts: ArtifactStore
    ):
        self.orchestrator = orchestrator
        self.runs = runs
        self.artifacts = artifacts

    async def start_run(
        self,
        admin_id: str,
        user_id: str,
        entrypoint: Entrypoint,
        message: str,
        stop_at_stage: Optional[PipelineStage] = None,
        run_model: bool = True,
        conversation_history: Optional[List[HistoryMessage]] = None,
        include_raw: bool = False
    ) -> Tuple[DebugRun, RunResult]:
        """Create a run and execute it up to the requested stop"""

        if stop_at_stage is None and not run_model:
            stop_at_stage = PipelineStage.MODEL_CALL

        run = DebugRun(
            run_id=f"run_{short_id()}",
            trace_id=f"dbg_{short_id(16)}",
            admin_id=admin_id,
            user_id=user_id,
            entrypoint=entrypoint,
            message=message,
            conversation_history=list(conversation_history or []),
            include_raw=include_raw,
        )
        await self.runs.create(run)
        logger.info(
            "Debug run created",
            run_id=run.run_id,
            admin_id=admin_id,
            user_id=user_id,
            stop_at_stage=stop_at_stage.value if stop_at_stage else None
        )

        result = await self.orchestrator.run(run.to_run_context(stop_at_stage))
        return await self._finish(run, result), result

    async def continue_run(
        self,
        run_id: str,
        stop_at_stage: Optional[PipelineStage] = None
    ) -> Tuple[DebugRun, RunResult]:
        """Resume a stopped or failed run from its first missing stage"""

        run = await self.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if run.status not in (RunStatus.STOPPED, RunStatus.ERROR):
            raise RunNotContinuableError(f"Run {run_id} is {run.status.value}")

        resume_at = next_stage_after(await self.artifacts.list_for_run(run_id))
        if resume_at is None:
            raise RunNotContinuableError(f"Run {run_id} already completed every stage")
        if stop_at_stage is not None and STAGE_ORDER.index(stop_at_stage) <= STAGE_ORDER.index(resume_at):
            raise RunNotContinuableError(
                f"Stop stage {stop_at_stage.value} must come after {resume_at.value}"
            )

        run = await self.runs.update(run_id, status=RunStatus.RUNNING, stopped_at_stage=None, error_message=None)
        logger.info("Debug run continuing", run_id=run_id, resume_at=resume_at.value)

        result = await self.orchestrator.run(run.to_run_context(stop_at_stage))
        return await self._finish(run, result), result

    async def get_run(self, run_id: str) -> DebugRunDetail:
        run = await self.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")

        artifacts = await self.artifacts.list_for_run(run_id)
        if not run.include_raw:
            artifacts = [redact_raw(a) for a in artifacts]
        return DebugRunDetail(run=run, artifacts=artifacts)

    async def _finish(self, run: DebugRun, result: RunResult) -> DebugRun:
        changes = {
            "status": result.status,
            "stopped_at_stage": result.stopped_at_stage,
            "error_message": result.error_message,
        }

        model_call = result.artifacts.get(PipelineStage.MODEL_CALL.value)
        if result.status == RunStatus.COMPLETED and model_call is not None:
            changes["conversation_history"] = run.conversation_history + [
                HistoryMessage(role="user", content=run.message),
                HistoryMessage(role="assistant", content=model_call.payload.get("response", "")),
            ]

        updated = await self.runs.update(run.run_id, **changes)
        logger.info(
            "Debug run finished",
            run_id=run.run_id,
            status=updated.status.value,
            stopped_at_stage=updated.stopped_at_stage.value if updated.stopped_at_stage else None
        )
        return updated
