import structlog
from fastapi import APIRouter, Depends, Request, Response

from guide.application.schema.requests import (
    ChatRequest, ChatResponse, ConversationMessageView, ConversationStateResponse
)
from guide.domain.models.pipeline import Entrypoint, PipelineStage, RunContext
from guide.infrastructure.security.internal_auth import require_user_id

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def chat(
    request: Request,
    body: ChatRequest,
    user_id: str = Depends(require_user_id)
):
    """Run one production turn and record it in the conversation state"""

    container = request.app.state.container
    conversation_state = container.conversation_state

    existing = await conversation_state.load_for_turn(body.conversation_id, user_id)
    entrypoint = body.entrypoint or (Entrypoint.CHAT_START if existing is None else Entrypoint.FOLLOWUP)

    context = RunContext(
        user_id=user_id,
        entrypoint=entrypoint,
        message=body.message,
        entity_refs=body.entity_refs,
        conversation_id=body.conversation_id,
    )
    result = await container.orchestrator.run(context, raise_errors=True)
    reply = result.artifacts[PipelineStage.MODEL_CALL.value].payload["response"]

    turn_count = existing.turn_count if existing else 0
    if context.side_effects.persist_conversation:
        state = await conversation_state.record_turn(body.conversation_id, user_id, body.message, reply)
        turn_count = state.turn_count

    logger.info(
        "Chat turn completed",
        conversation_id=body.conversation_id,
        run_id=result.run_id,
        entrypoint=entrypoint.value,
        turn_count=turn_count
    )
    return ChatResponse(
        reply=reply,
        run_id=result.run_id,
        trace_id=result.trace_id,
        turn_count=turn_count,
    ).model_dump(by_alias=True)


@router.get("/conversations/{conversation_id}/state")
async def get_conversation_state(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(require_user_id)
):
    state = await request.app.state.container.conversation_state.require_state(conversation_id, user_id)
    return ConversationStateResponse(
        conversation_id=state.conversation_id,
        summary=state.summary,
        recent_messages=[
            ConversationMessageView(role=m.role, content=m.content, timestamp=m.timestamp)
            for m in state.recent_messages
        ],
        turn_count=state.turn_count,
        updated_at=state.updated_at,
    ).model_dump(by_alias=True, mode="json")


@router.delete("/conversations/{conversation_id}/state", status_code=204)
async def delete_conversation_state(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(require_user_id)
):
    conversation_state = request.app.state.container.conversation_state
    await conversation_state.require_state(conversation_id, user_id)
    await conversation_state.delete_state(conversation_id)
    return Response(status_code=204)
