from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request

from guide.application.schema.requests import (
    ArtifactView, ContinueDebugRunRequest, DebugRunDetailResponse,
    DebugRunResponse, HistoryMessageView, StartDebugRunRequest
)
from guide.domain.models.pipeline import DebugRun, HistoryMessage, RunResult
from guide.infrastructure.security.internal_auth import require_internal_key

router = APIRouter(prefix="/api/debug/runs", tags=["debug"])


def _run_response(run: DebugRun, result: RunResult) -> Dict[str, Any]:
    return DebugRunResponse(
        run_id=run.run_id,
        trace_id=run.trace_id,
        status=run.status,
        stopped_at_stage=run.stopped_at_stage,
        completed_stages=result.completed_stages,
        error_message=run.error_message,
    ).model_dump(by_alias=True, mode="json")


@router.post("", status_code=201)
async def start_debug_run(
    request: Request,
    body: StartDebugRunRequest,
    admin_id: str = Depends(require_internal_key)
):
    """Create a debug run for an impersonated user and execute it up to the stop stage"""

    service = request.app.state.container.debug_runs
    run, result = await service.start_run(
        admin_id=admin_id,
        user_id=body.user_id,
        entrypoint=body.entrypoint,
        message=body.message,
        stop_at_stage=body.stop_at_stage,
        run_model=body.run_model,
        conversation_history=[HistoryMessage(role=m.role, content=m.content) for m in body.conversation_history],
        include_raw=body.include_raw,
    )
    return _run_response(run, result)


@router.post("/{run_id}/continue")
async def continue_debug_run(
    run_id: str,
    request: Request,
    body: Optional[ContinueDebugRunRequest] = Body(None),
    admin_id: str = Depends(require_internal_key)
):
    service = request.app.state.container.debug_runs
    run, result = await service.continue_run(run_id, stop_at_stage=body.stop_at_stage if body else None)
    return _run_response(run, result)


@router.get("/{run_id}")
async def get_debug_run(
    run_id: str,
    request: Request,
    admin_id: str = Depends(require_internal_key)
):
    detail = await request.app.state.container.debug_runs.get_run(run_id)
    run = detail.run
    return DebugRunDetailResponse(
        run_id=run.run_id,
        trace_id=run.trace_id,
        user_id=run.user_id,
        admin_id=run.admin_id,
        entrypoint=run.entrypoint,
        message=run.message,
        status=run.status,
        stopped_at_stage=run.stopped_at_stage,
        error_message=run.error_message,
        conversation_history=[HistoryMessageView(role=m.role, content=m.content) for m in run.conversation_history],
        created_at=run.created_at,
        updated_at=run.updated_at,
        artifacts=[
            ArtifactView(
                stage=a.stage,
                schema_version=a.schema_version,
                pipeline_version=a.pipeline_version,
                created_at=a.created_at,
                duration_ms=a.duration_ms,
                summary=a.summary,
                payload=a.payload,
                raw_ref=a.raw_ref,
                stats=a.stats,
            )
            for a in detail.artifacts
        ],
    ).model_dump(by_alias=True, mode="json")
