from datetime import datetime, timedelta

import httpx
import pytest

from guide.application.api.api_server import ServiceContainer
from guide.domain.errors import ArtifactConflictError, RunNotFoundError
from guide.domain.models.candidate import CandidateSource, TemporalRange
from guide.domain.models.conversation import ConversationMessage, ConversationState
from guide.domain.models.pipeline import DebugRun, Entrypoint, PipelineArtifact, PipelineStage, RunStatus
from guide.domain.models.user import UserProfile
from guide.infrastructure.persistence.artifact_store import SQLiteArtifactStore
from guide.infrastructure.persistence.conversation_state_store import SQLiteConversationStateStore
from guide.infrastructure.persistence.database import Database
from guide.infrastructure.persistence.debug_run_store import SQLiteDebugRunStore
from guide.infrastructure.persistence.signal_store import SQLiteSignalStore, SQLiteUserDirectory
from tests.helpers import USER_ID, seed_user


@pytest.fixture
def db(tmp_path) -> Database:
    return Database(tmp_path / "guide.db")


def artifact(stage: PipelineStage, run_id: str = "run_1") -> PipelineArtifact:
    return PipelineArtifact(trace_id="trace_1", run_id=run_id, stage=stage, payload={"stage": stage.value})


@pytest.mark.asyncio
async def test_artifacts_are_write_once_and_ordered(db):
    store = SQLiteArtifactStore(db)
    await store.add(artifact(PipelineStage.PROMPT_ASSEMBLY))
    await store.add(artifact(PipelineStage.INGRESS))
    await store.add(artifact(PipelineStage.INGRESS, run_id="run_2"))

    with pytest.raises(ArtifactConflictError):
        await store.add(artifact(PipelineStage.INGRESS))

    listed = await store.list_for_run("run_1")
    assert [a.stage for a in listed] == [PipelineStage.INGRESS, PipelineStage.PROMPT_ASSEMBLY]
    assert (await store.get("run_1", PipelineStage.PROMPT_ASSEMBLY)).payload == {"stage": "PROMPT_ASSEMBLY"}
    assert await store.get("run_1", PipelineStage.MODEL_CALL) is None
    assert await store.delete_for_run("run_1") == 2
    assert await store.list_for_run("run_1") == []


@pytest.mark.asyncio
async def test_debug_run_round_trip_and_update(db):
    store = SQLiteDebugRunStore(db)
    run = DebugRun(
        run_id="run_1", trace_id="dbg_1", admin_id="admin", user_id=USER_ID,
        entrypoint=Entrypoint.EXPLAIN, message="hello",
    )
    await store.create(run)

    updated = await store.update("run_1", status=RunStatus.STOPPED, stopped_at_stage=PipelineStage.MODEL_CALL)

    assert updated.status == RunStatus.STOPPED
    fetched = await store.get("run_1")
    assert fetched.stopped_at_stage == PipelineStage.MODEL_CALL
    assert fetched.entrypoint == Entrypoint.EXPLAIN
    assert fetched.updated_at >= run.updated_at
    with pytest.raises(RunNotFoundError):
        await store.update("run_missing", status=RunStatus.ERROR)


@pytest.mark.asyncio
async def test_conversation_state_upsert_and_delete(db):
    store = SQLiteConversationStateStore(db)
    state = ConversationState(conversation_id="c1", user_id=USER_ID)
    await store.upsert(state)
    await store.upsert(state.model_copy(update={
        "summary": "talked about rest",
        "recent_messages": [ConversationMessage(role="user", content="hi")],
        "turn_count": 1,
    }))

    fetched = await store.get("c1")
    assert fetched.summary == "talked about rest"
    assert fetched.recent_messages[0].content == "hi"
    assert await store.delete("c1") is True
    assert await store.delete("c1") is False
    assert await store.get("c1") is None


@pytest.mark.asyncio
async def test_signal_records_filter_by_window_and_kind(db):
    store = SQLiteSignalStore(db)
    now = datetime.utcnow()
    await store.add_record(USER_ID, CandidateSource.NOTE, {"id": "old"}, occurred_at=now - timedelta(days=40))
    await store.add_record(USER_ID, CandidateSource.NOTE, {"id": "recent"}, occurred_at=now - timedelta(days=2))
    await store.add_record(USER_ID, CandidateSource.NOTE, {"id": "newest"}, occurred_at=now - timedelta(hours=1))
    await store.add_record(USER_ID, CandidateSource.HIGHLIGHT, {"id": "highlight"}, occurred_at=now)
    await store.add_record("someone-else", CandidateSource.NOTE, {"id": "theirs"}, occurred_at=now)

    week = await store.source(CandidateSource.NOTE).fetch(USER_ID, TemporalRange.LAST_WEEK, 10)
    everything = await store.fetch_records(CandidateSource.NOTE, USER_ID, TemporalRange.ALL_TIME, 10)
    limited = await store.fetch_records(CandidateSource.NOTE, USER_ID, None, 1)

    assert [r["id"] for r in week] == ["newest", "recent"]
    assert [r["id"] for r in everything] == ["newest", "recent", "old"]
    assert [r["id"] for r in limited] == ["newest"]


@pytest.mark.asyncio
async def test_user_directory(db):
    users = SQLiteUserDirectory(db)
    await users.upsert_profile(UserProfile(user_id=USER_ID, first_name="Sam"))
    await users.upsert_profile(UserProfile(user_id=USER_ID, first_name="Samuel"))

    assert (await users.get_profile(USER_ID)).first_name == "Samuel"
    assert await users.get_profile("nobody") is None


@pytest.mark.asyncio
async def test_container_runs_pipeline_on_sqlite(tmp_path, settings, upstream):
    container = ServiceContainer(
        settings.model_copy(update={"database_path": str(tmp_path / "guide.db")}),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )
    await container.startup()
    await seed_user(container.signals, container.users)

    run, _ = await container.debug_runs.start_run(
        admin_id="admin", user_id=USER_ID, entrypoint=Entrypoint.FOLLOWUP, message="what next", run_model=False
    )
    run, _ = await container.debug_runs.continue_run(run.run_id)

    assert run.status == RunStatus.COMPLETED
    assert len(await container.artifacts.list_for_run(run.run_id)) == 4
    await container.aclose()


@pytest.mark.asyncio
async def test_expired_artifacts_and_stale_runs_are_deleted(db):
    artifacts = SQLiteArtifactStore(db)
    runs = SQLiteDebugRunStore(db)
    now = datetime.utcnow()
    await artifacts.add(artifact(PipelineStage.INGRESS, run_id="old").model_copy(
        update={"expires_at": now - timedelta(hours=1)}
    ))
    await artifacts.add(artifact(PipelineStage.INGRESS, run_id="new").model_copy(
        update={"expires_at": now + timedelta(days=7)}
    ))
    await artifacts.add(artifact(PipelineStage.INGRESS, run_id="unbounded"))
    await runs.create(DebugRun(
        run_id="old", trace_id="dbg", admin_id="admin", user_id=USER_ID,
        entrypoint=Entrypoint.FOLLOWUP, message="hi", updated_at=now - timedelta(days=10),
    ))

    assert await artifacts.cleanup_expired(now=now) == 1
    assert await runs.cleanup_expired(now=now) == 1
    assert await artifacts.list_for_run("old") == []
    assert len(await artifacts.list_for_run("new")) == 1
    assert len(await artifacts.list_for_run("unbounded")) == 1
    assert await runs.get("old") is None
