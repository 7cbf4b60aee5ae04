import json
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from guide.domain.models.candidate import CandidateSource
from guide.domain.models.user import UserProfile
from guide.infrastructure.persistence.signal_store import InMemorySignalStore, InMemoryUserDirectory

UPSTREAM_URL = "https://upstream.test/v1"
USER_ID = "user-1"


def sse_body(chunks: List[str]) -> bytes:
    """Chat-completions SSE frames for the given content deltas, terminated by [DONE]"""

    frames = [
        "data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]}) + "\n\n"
        for chunk in chunks
    ]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def split_text(text: str, size: int = 17) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def ndjson(*events: Dict[str, Any]) -> str:
    return "".join(json.dumps(event) + "\n" for event in events)


def completion_json(content: str, finish_reason: str = "stop") -> Dict[str, Any]:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
    }


class FakeUpstream:
    """MockTransport handler standing in for the chat completions endpoint"""

    def __init__(self):
        self.stream_text = ""
        self.replies: List[str] = []
        self.default_reply = "Here is a thought for today."
        self.status_code = 200
        self.stream_error: Optional[Exception] = None
        self.requests: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)

        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="upstream unavailable")

        if body.get("stream"):
            content = sse_body(split_text(self.stream_text))
            if self.stream_error is not None:
                content = self._cut_short(content, self.stream_error)
            return httpx.Response(200, content=content, headers={"content-type": "text/event-stream"})

        reply = self.replies.pop(0) if self.replies else self.default_reply
        return httpx.Response(200, json=completion_json(reply))

    @staticmethod
    async def _cut_short(content: bytes, error: Exception) -> AsyncIterator[bytes]:
        """Deliver every content frame, then fail instead of sending [DONE]"""

        yield content[:content.rindex(b"data: [DONE]")]
        raise error

    @property
    def chat_requests(self) -> List[Dict[str, Any]]:
        return [r for r in self.requests if not r.get("stream")]


def suggestion(rank: int, evidence_id: str, **overrides: Any) -> Dict[str, Any]:
    event = {
        "type": "suggestion",
        "rank": rank,
        "title": f"Keep going #{rank}",
        "subtitle": "You were partway through this chapter.",
        "normalized_action": "read_scripture",
        "grounding": "reading_anchor",
        "target_label": "John 3",
        "action": {"type": "continue_reading", "params": {"ref_key": "JHN:3"}},
        "evidence_ids": [evidence_id],
        "confidence": 0.8,
    }
    event.update(overrides)
    return event


def reading_record(
    book_id: str = "JHN",
    chapter: int = 3,
    local_date: Optional[str] = None,
    duration_seconds: int = 300,
    ended_at: Optional[datetime] = None,
    **extra: Any
) -> Dict[str, Any]:
    ended_at = ended_at or datetime.utcnow() - timedelta(hours=2)
    record = {
        "book_id": book_id,
        "chapter": chapter,
        "local_date": local_date or ended_at.strftime("%Y-%m-%d"),
        "duration_seconds": duration_seconds,
        "read_ranges": ["3:1-16"],
        "completion_status": "in_progress",
        "translation": "ESV",
        "last_read_at": ended_at.isoformat(),
    }
    record.update(extra)
    return record


def reading_candidate_id(book_id: str = "JHN", chapter: int = 3, local_date: Optional[str] = None) -> str:
    local_date = local_date or (datetime.utcnow() - timedelta(hours=2)).strftime("%Y-%m-%d")
    return f"bible_chapter_daily_rollup:{book_id}:{chapter}:{local_date}"


async def seed_user(signal_store: InMemorySignalStore, users: InMemoryUserDirectory, user_id: str = USER_ID) -> None:
    """One profile, a life-context entry, a reading session and a note on the same chapter"""

    now = datetime.utcnow()
    await users.upsert_profile(UserProfile(user_id=user_id, first_name="Sam"))
    await signal_store.add_record(
        user_id,
        CandidateSource.LIFE_CONTEXT,
        {"field": "season", "value": "Starting a new job", "updated_at": now.isoformat()},
        occurred_at=now - timedelta(days=200),
    )
    await signal_store.add_record(
        user_id,
        CandidateSource.READING_SESSION,
        reading_record(ended_at=now - timedelta(hours=2)),
        occurred_at=now - timedelta(hours=2),
    )
    await signal_store.add_record(
        user_id,
        CandidateSource.NOTE,
        {
            "id": "note-1",
            "title": "Born again",
            "content": "Thinking about new birth. Email me at sam@example.com",
            "scripture_refs": ["John 3:3"],
            "summary": "New birth is a gift",
            "created_at": (now - timedelta(days=1)).isoformat(),
        },
        occurred_at=now - timedelta(days=1),
    )
