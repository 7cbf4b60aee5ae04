import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage

from guide.domain.context.state.conversation_state import ConversationStateManager, extractive_digest
from guide.domain.errors import ConversationNotFoundError
from guide.domain.models.conversation import ConversationMessage
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.persistence.conversation_state_store import InMemoryConversationStateStore
from tests.helpers import UPSTREAM_URL


@pytest.fixture
def manager(settings, openai_client):
    return ConversationStateManager(InMemoryConversationStateStore(), openai_client, settings)


@pytest.fixture
def offline_manager(settings):
    return ConversationStateManager(InMemoryConversationStateStore(), None, settings)


@pytest.mark.asyncio
async def test_window_is_bounded_and_summary_written(manager, upstream):
    upstream.replies = ["The user asked about John 3 and rest."]

    for turn in range(3):
        state = await manager.record_turn("c1", "u1", f"question {turn}", f"answer {turn}")

    assert state.turn_count == 3
    assert len(state.recent_messages) == 4
    assert state.recent_messages[0].content == "question 1"
    assert state.summary == "The user asked about John 3 and rest."
    assert upstream.chat_requests[0]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_no_summary_until_something_is_dropped(manager, upstream):
    state = await manager.record_turn("c1", "u1", "hi", "hello")
    state = await manager.record_turn("c1", "u1", "again", "welcome back")

    assert state.summary == ""
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_summary_falls_back_to_digest_when_model_fails(manager, upstream):
    upstream.status_code = 500

    for turn in range(3):
        state = await manager.record_turn("c1", "u1", f"question {turn}", f"answer {turn}")

    assert "User: question 0" in state.summary
    assert "Assistant: answer 0" in state.summary


@pytest.mark.asyncio
async def test_summary_falls_back_to_digest_on_non_json_reply(settings):
    gateway = OpenAIClient(
        "test-key",
        UPSTREAM_URL,
        http_client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway page</html>"))
        ),
    )
    manager = ConversationStateManager(InMemoryConversationStateStore(), gateway, settings)

    for turn in range(3):
        state = await manager.record_turn("c1", "u1", f"question {turn}", f"answer {turn}")

    assert state.turn_count == 3
    assert state.summary.startswith("User: question 0")


@pytest.mark.asyncio
async def test_summary_falls_back_to_digest_on_empty_reply(manager, upstream):
    upstream.replies = ["   "]

    for turn in range(3):
        state = await manager.record_turn("c1", "u1", f"question {turn}", f"answer {turn}")

    assert state.summary.startswith("User: question 0")


@pytest.mark.asyncio
async def test_digest_without_client(offline_manager):
    for turn in range(4):
        state = await offline_manager.record_turn("c1", "u1", f"question {turn}", f"answer {turn}")

    assert state.summary
    assert len(state.recent_messages) == 4


@pytest.mark.asyncio
async def test_other_users_cannot_read_or_append(manager):
    await manager.record_turn("c1", "owner", "hi", "hello")

    assert await manager.get_state("c1", "intruder") is None
    with pytest.raises(ConversationNotFoundError):
        await manager.require_state("c1", "intruder")
    with pytest.raises(ConversationNotFoundError):
        await manager.record_turn("c1", "intruder", "hi", "hello")


@pytest.mark.asyncio
async def test_delete_state(manager):
    await manager.record_turn("c1", "u1", "hi", "hello")

    assert await manager.delete_state("c1") is True
    assert await manager.get_state("c1", "u1") is None
    assert await manager.delete_state("c1") is False


@pytest.mark.asyncio
async def test_build_messages_order(manager):
    await manager.record_turn("c1", "u1", "hi", "hello")
    state = (await manager.get_state("c1", "u1")).model_copy(update={"summary": "Earlier talk"})

    messages = manager.build_messages(state, "next question")

    assert isinstance(messages[0], AIMessage)
    assert messages[0].content == "[Previous conversation context: Earlier talk]"
    assert [type(m) for m in messages[1:]] == [HumanMessage, AIMessage, HumanMessage]
    assert messages[-1].content == "next question"
    assert manager.build_messages(None, "first")[0].content == "first"


def test_estimate_tokens():
    assert ConversationStateManager.estimate_tokens([HumanMessage(content="abcdefgh"), AIMessage(content="a")]) == 3


def test_extractive_digest_truncates_and_caps():
    dropped = [ConversationMessage(role="user", content="word " * 100)]

    digest = extractive_digest("", dropped)

    assert digest.startswith("User: ")
    assert digest.endswith("…")
    assert len(extractive_digest("x" * 5000, dropped)) <= 1601
    assert extractive_digest("", []) == "Earlier conversation."
