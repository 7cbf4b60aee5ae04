import json

import httpx
import pytest
from fastapi.testclient import TestClient

from guide.application.api.api_server import create_app
from tests.helpers import USER_ID, ndjson, reading_candidate_id, seed_user, suggestion

NOTE_EVIDENCE = "artifact:note-1"
ADMIN_HEADERS = {"X-Internal-API-Key": "internal-secret", "X-Admin-Id": "admin-7"}
USER_HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def client(container):
    with TestClient(create_app(container=container)) as test_client:
        test_client.portal.call(seed_user, container.signals, container.users)
        yield test_client


def full_stream() -> str:
    return ndjson(
        suggestion(1, reading_candidate_id()),
        suggestion(2, NOTE_EVIDENCE),
        suggestion(3, NOTE_EVIDENCE),
        {"type": "done"},
    )


def events(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["model_configured"] is True


class TestSuggestions:
    def test_requires_user_header(self, client):
        response = client.post("/api/guide/suggestions")

        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_stream_then_cache_hit(self, client, upstream):
        upstream.stream_text = full_stream()

        first = client.post("/api/guide/suggestions", headers=USER_HEADERS)
        second = client.post("/api/guide/suggestions", headers=USER_HEADERS)

        assert first.status_code == 200
        assert first.headers["content-type"].startswith("application/x-ndjson")
        assert first.headers["x-cache"] == "miss"
        assert [e["type"] for e in events(first)] == ["suggestion"] * 3 + ["done"]
        assert second.headers["x-cache"] == "hit"
        assert second.text == first.text
        assert len([r for r in upstream.requests if r.get("stream")]) == 1

    def test_enabled_actions_change_cache_key(self, client, upstream):
        upstream.stream_text = full_stream()

        client.post("/api/guide/suggestions", headers=USER_HEADERS)
        subset = client.post(
            "/api/guide/suggestions", headers=USER_HEADERS, json={"enabledActions": ["open_passage"]}
        )
        unknown_only = client.post(
            "/api/guide/suggestions", headers=USER_HEADERS, json={"enabledActions": ["read_scripture", "bogus"]}
        )

        assert subset.headers["x-cache"] == "miss"
        assert unknown_only.headers["x-cache"] == "hit"

    def test_stream_without_done_is_not_cached(self, client, upstream):
        upstream.stream_text = ndjson(suggestion(1, NOTE_EVIDENCE))

        first = client.post("/api/guide/suggestions", headers=USER_HEADERS)
        second = client.post("/api/guide/suggestions", headers=USER_HEADERS)

        assert [e["type"] for e in events(first)] == ["suggestion"]
        assert second.headers["x-cache"] == "miss"

    def test_debug_force_refresh_bypasses_cache_and_debug_lines_are_not_cached(self, client, upstream):
        upstream.stream_text = full_stream()
        debug_headers = {**USER_HEADERS, "X-Debug-Mode": "true", "X-Force-Refresh": "true"}

        debug = client.post("/api/guide/suggestions", headers=debug_headers)
        replay = client.post("/api/guide/suggestions", headers=USER_HEADERS)
        forced = client.post("/api/guide/suggestions", headers=debug_headers)

        assert [e["type"] for e in events(debug)][-2:] == ["debug", "done"]
        assert replay.headers["x-cache"] == "hit"
        assert all(e["type"] != "debug" for e in events(replay))
        assert forced.headers["x-cache"] == "miss"

    def test_unknown_user(self, client):
        response = client.post("/api/guide/suggestions", headers={"X-User-Id": "nobody"})

        assert response.status_code == 404

    def test_upstream_failure_after_first_event_ends_stream(self, client, upstream):
        upstream.stream_text = ndjson(suggestion(1, reading_candidate_id()), suggestion(2, NOTE_EVIDENCE))
        upstream.stream_error = httpx.ReadError("connection reset")

        first = client.post("/api/guide/suggestions", headers=USER_HEADERS)
        upstream.stream_error = None
        upstream.stream_text = full_stream()
        second = client.post("/api/guide/suggestions", headers=USER_HEADERS)

        assert first.status_code == 200
        assert [e["type"] for e in events(first)] == ["suggestion", "suggestion"]
        assert second.headers["x-cache"] == "miss"
        assert [e["type"] for e in events(second)][-1] == "done"

    def test_upstream_failure_before_first_event(self, client, upstream):
        upstream.status_code = 500

        response = client.post("/api/guide/suggestions", headers=USER_HEADERS)

        assert response.status_code == 502
        assert response.json()["details"] == {"status": 500}


class TestChat:
    def test_turn_and_state(self, client, upstream):
        upstream.replies = ["Welcome, Sam.", "John 4 is a good next step."]

        first = client.post("/api/chat", headers=USER_HEADERS, json={"conversationId": "c1", "message": "hello"})
        second = client.post(
            "/api/chat", headers=USER_HEADERS, json={"conversationId": "c1", "message": "what should I read?"}
        )
        state = client.get("/api/chat/conversations/c1/state", headers=USER_HEADERS)

        assert first.status_code == 200
        assert first.json()["reply"] == "Welcome, Sam."
        assert first.json()["turnCount"] == 1
        assert second.json()["turnCount"] == 2
        assert upstream.chat_requests[-1]["messages"][2] == {"role": "user", "content": "hello"}
        assert state.status_code == 200
        assert [m["content"] for m in state.json()["recentMessages"]] == [
            "hello", "Welcome, Sam.", "what should I read?", "John 4 is a good next step."
        ]

    def test_other_user_cannot_touch_conversation(self, client):
        client.post("/api/chat", headers=USER_HEADERS, json={"conversationId": "c1", "message": "hello"})
        intruder = {"X-User-Id": "intruder"}

        assert client.post(
            "/api/chat", headers=intruder, json={"conversationId": "c1", "message": "hi"}
        ).status_code == 404
        assert client.get("/api/chat/conversations/c1/state", headers=intruder).status_code == 404
        assert client.delete("/api/chat/conversations/c1/state", headers=intruder).status_code == 404

    def test_delete_state(self, client):
        client.post("/api/chat", headers=USER_HEADERS, json={"conversationId": "c1", "message": "hello"})

        deleted = client.delete("/api/chat/conversations/c1/state", headers=USER_HEADERS)

        assert deleted.status_code == 204
        assert client.get("/api/chat/conversations/c1/state", headers=USER_HEADERS).status_code == 404

    def test_invalid_body(self, client):
        response = client.post("/api/chat", headers=USER_HEADERS, json={"conversationId": "c1", "message": ""})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_stage_failure_status(self, client):
        response = client.post(
            "/api/chat", headers={"X-User-Id": "nobody"}, json={"conversationId": "c9", "message": "hello"}
        )

        assert response.status_code == 404
        assert response.json()["details"] == {"stage": "CONTEXT_CANDIDATES"}


class TestDebugRuns:
    def test_requires_internal_key(self, client):
        assert client.post("/api/debug/runs", json={"userId": USER_ID, "message": "hi"}).status_code == 401
        assert client.get(
            "/api/debug/runs/run_x", headers={"X-Internal-API-Key": "wrong"}
        ).status_code == 401

    def test_start_continue_and_inspect(self, client, upstream):
        started = client.post(
            "/api/debug/runs",
            headers=ADMIN_HEADERS,
            json={"userId": USER_ID, "message": "what next?", "runModel": False},
        )
        run_id = started.json()["runId"]

        continued = client.post(f"/api/debug/runs/{run_id}/continue", headers=ADMIN_HEADERS)
        detail = client.get(f"/api/debug/runs/{run_id}", headers=ADMIN_HEADERS)
        again = client.post(f"/api/debug/runs/{run_id}/continue", headers=ADMIN_HEADERS)

        assert started.status_code == 201
        assert started.json()["status"] == "stopped"
        assert started.json()["stoppedAtStage"] == "MODEL_CALL"
        assert continued.status_code == 200
        assert continued.json()["status"] == "completed"
        assert continued.json()["completedStages"] == ["MODEL_CALL"]
        body = detail.json()
        assert body["adminId"] == "admin-7"
        assert [a["stage"] for a in body["artifacts"]] == [
            "INGRESS", "CONTEXT_CANDIDATES", "PROMPT_ASSEMBLY", "MODEL_CALL"
        ]
        assert body["artifacts"][2]["rawRef"] == f"{run_id}/PROMPT_ASSEMBLY"
        assert again.status_code == 400

    def test_continue_with_stop_stage(self, client):
        started = client.post(
            "/api/debug/runs",
            headers=ADMIN_HEADERS,
            json={"userId": USER_ID, "message": "what next?", "stopAtStage": "CONTEXT_CANDIDATES"},
        )
        run_id = started.json()["runId"]

        bad = client.post(
            f"/api/debug/runs/{run_id}/continue", headers=ADMIN_HEADERS, json={"stopAtStage": "INGRESS"}
        )
        good = client.post(
            f"/api/debug/runs/{run_id}/continue", headers=ADMIN_HEADERS, json={"stopAtStage": "MODEL_CALL"}
        )

        assert bad.status_code == 400
        assert good.json()["status"] == "stopped"
        assert good.json()["completedStages"] == ["CONTEXT_CANDIDATES", "PROMPT_ASSEMBLY"]

    def test_unknown_run(self, client):
        assert client.get("/api/debug/runs/run_missing", headers=ADMIN_HEADERS).status_code == 404
