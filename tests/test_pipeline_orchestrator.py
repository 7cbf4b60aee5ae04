from datetime import timedelta

import pytest

from guide.domain.errors import StageExecutionError
from guide.domain.models.pipeline import (
    STAGE_ORDER, Entrypoint, PipelineArtifact, PipelineStage, RunContext, RunMode, RunStatus
)
from guide.domain.orchestration.core.pipeline_orchestrator import PipelineOrchestrator, next_stage_after
from guide.domain.orchestration.stages.ingress import IngressStage
from guide.infrastructure.persistence.artifact_store import InMemoryArtifactStore
from tests.helpers import USER_ID, seed_user


def context(**overrides) -> RunContext:
    values = {"user_id": USER_ID, "entrypoint": Entrypoint.FOLLOWUP, "message": "What should I read after John 3?"}
    values.update(overrides)
    return RunContext(**values)


@pytest.mark.asyncio
async def test_full_run_persists_one_artifact_per_stage(container, upstream):
    await seed_user(container.signals, container.users)
    upstream.default_reply = "Try John 4 next."

    result = await container.orchestrator.run(context())

    assert result.status == RunStatus.COMPLETED
    assert result.completed_stages == STAGE_ORDER
    stored = await container.artifacts.list_for_run(result.run_id)
    assert [a.stage for a in stored] == STAGE_ORDER
    assert all(a.trace_id == result.trace_id for a in stored)
    assert result.artifacts[PipelineStage.MODEL_CALL.value].payload["response"] == "Try John 4 next."


@pytest.mark.asyncio
async def test_model_call_uses_assembled_messages_only(container, upstream):
    await seed_user(container.signals, container.users)

    result = await container.orchestrator.run(context())

    assembly = result.artifacts[PipelineStage.PROMPT_ASSEMBLY.value].payload
    assert upstream.chat_requests[-1]["messages"] == assembly["messages"]
    assert assembly["messages"][1]["content"].startswith("USER CONTEXT (JSON):")
    assert assembly["messages"][-1] == {"role": "user", "content": "What should I read after John 3?"}
    assert assembly["history_source"] == "none"


@pytest.mark.asyncio
async def test_ingress_payload(container):
    await seed_user(container.signals, container.users)

    result = await container.orchestrator.run(
        context(message="  Help me pray about   John 3:16 ", stop_at_stage=PipelineStage.CONTEXT_CANDIDATES)
    )

    ingress = result.artifacts[PipelineStage.INGRESS.value].payload
    assert ingress["normalized_message"] == "Help me pray about John 3:16"
    assert ingress["entity_refs"] == ["JHN 3:16"]
    assert ingress["plan"]["mode"] == "pastoral"
    assert ingress["side_effects"]["persist_conversation"] is True


@pytest.mark.asyncio
async def test_stop_before_stage(container):
    await seed_user(container.signals, container.users)

    result = await container.orchestrator.run(context(stop_at_stage=PipelineStage.PROMPT_ASSEMBLY))

    assert result.status == RunStatus.STOPPED
    assert result.stopped_at_stage == PipelineStage.PROMPT_ASSEMBLY
    assert result.completed_stages == [PipelineStage.INGRESS, PipelineStage.CONTEXT_CANDIDATES]
    assert len(await container.artifacts.list_for_run(result.run_id)) == 2


@pytest.mark.asyncio
async def test_resume_runs_only_missing_stages(container, upstream):
    await seed_user(container.signals, container.users)
    first = await container.orchestrator.run(context(stop_at_stage=PipelineStage.MODEL_CALL))
    assert upstream.chat_requests == []

    resumed = await container.orchestrator.run(context(run_id=first.run_id, trace_id=first.trace_id))

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.completed_stages == [PipelineStage.MODEL_CALL]
    assert len(upstream.chat_requests) == 1
    assert len(await container.artifacts.list_for_run(first.run_id)) == 4


@pytest.mark.asyncio
async def test_stage_failure_is_reported(container):
    result = await container.orchestrator.run(context(user_id="nobody"))

    assert result.status == RunStatus.ERROR
    assert result.completed_stages == [PipelineStage.INGRESS]
    assert "User not found" in result.error_message
    assert [a.stage for a in await container.artifacts.list_for_run(result.run_id)] == [PipelineStage.INGRESS]


@pytest.mark.asyncio
async def test_raise_errors_carries_status(container):
    with pytest.raises(StageExecutionError) as exc_info:
        await container.orchestrator.run(context(user_id="nobody"), raise_errors=True)

    assert exc_info.value.status_code == 404
    assert exc_info.value.stage == PipelineStage.CONTEXT_CANDIDATES.value


@pytest.mark.asyncio
async def test_upstream_failure_maps_to_bad_gateway(container, upstream):
    await seed_user(container.signals, container.users)
    upstream.status_code = 500

    with pytest.raises(StageExecutionError) as exc_info:
        await container.orchestrator.run(context(), raise_errors=True)

    assert exc_info.value.status_code == 502
    assert exc_info.value.stage == PipelineStage.MODEL_CALL.value


def test_missing_stage_handlers_rejected():
    with pytest.raises(ValueError):
        PipelineOrchestrator([IngressStage()], InMemoryArtifactStore())


def test_next_stage_after():
    def artifact(stage):
        return PipelineArtifact(trace_id="t", run_id="r", stage=stage)

    assert next_stage_after([]) == PipelineStage.INGRESS
    assert next_stage_after([artifact(PipelineStage.INGRESS)]) == PipelineStage.CONTEXT_CANDIDATES
    assert next_stage_after([artifact(s) for s in STAGE_ORDER]) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("mode, days", [(RunMode.PROD, 30), (RunMode.DEBUG, 7)])
async def test_artifacts_expire_by_mode(container, mode, days):
    await seed_user(container.signals, container.users)

    result = await container.orchestrator.run(context(mode=mode, stop_at_stage=PipelineStage.PROMPT_ASSEMBLY))

    for artifact in await container.artifacts.list_for_run(result.run_id):
        assert artifact.expires_at - artifact.created_at == timedelta(days=days)
