from typing import Any, Awaitable, Callable, Dict, List, Optional

from guide.domain.context.fetchers import NoteFetcher, ReadingSessionFetcher
from guide.domain.models.candidate import TemporalRange

ToolHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]

_RANGE_VALUES = [r.value for r in TemporalRange]


class ContextToolRegistry:
    """Registry of read-only context tools the model may call"""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        handler: ToolHandler
    ):
        """Register a new tool"""

        self.tools[name] = {
            "name": name,
            "description": description,
            "parameters": parameters,
            "handler": handler,
        }

    def get_tool(self, name: str) -> Optional[Dict[str, Any]]:
        return self.tools.get(name)

    def definitions(self) -> List[Dict[str, Any]]:
        """Tool list in chat completions function format"""

        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in self.tools.values()
        ]


def _passage_filter(items: List[Dict[str, Any]], book_id: Optional[str], chapter: Optional[int]) -> List[Dict[str, Any]]:
    return [
        item for item in items
        if (not book_id or item.get("book_id") == book_id.upper())
        and (chapter is None or item.get("chapter") == chapter)
    ]


def build_context_tools(
    reading_sessions: ReadingSessionFetcher,
    notes: NoteFetcher
) -> ContextToolRegistry:
    """Registry backed by the reading-session and note fetchers"""

    registry = ContextToolRegistry()

    async def get_reading_sessions(user_id: str, args: Dict[str, Any]) -> Any:
        candidates = await reading_sessions.fetch(
            user_id,
            TemporalRange(args.get("range", TemporalRange.LAST_MONTH.value)),
            min(int(args.get("limit", 10)), 25)
        )
        items = [
            {
                "id": c.id,
                "label": c.label,
                "book_id": c.metadata.book_id,
                "chapter": c.metadata.chapter,
                "read_ranges": c.metadata.read_ranges,
                "duration_seconds": c.metadata.duration_seconds,
                "status": c.metadata.completion_status,
                "ended_at": c.metadata.ended_at,
            }
            for c in candidates
        ]
        return {"sessions": _passage_filter(items, args.get("book_id"), args.get("chapter"))}

    async def get_verse_notes(user_id: str, args: Dict[str, Any]) -> Any:
        candidates = await notes.fetch(
            user_id,
            TemporalRange(args.get("range", TemporalRange.LAST_MONTH.value)),
            min(int(args.get("limit", 10)), 25)
        )
        book_id = (args.get("book_id") or "").upper()
        return {
            "notes": [
                {
                    "id": c.id,
                    "label": c.label,
                    "preview": c.preview,
                    "refs": c.metadata.scripture_refs,
                    "summary": c.metadata.summary,
                    "created_at": c.features.created_at,
                }
                for c in candidates
                if not book_id or any(book_id in ref.upper() for ref in c.metadata.scripture_refs)
            ]
        }

    passage_params = {
        "range": {"type": "string", "enum": _RANGE_VALUES, "description": "Lookback window"},
        "limit": {"type": "integer", "minimum": 1, "maximum": 25, "description": "Max items to return"},
        "book_id": {"type": "string", "description": "Optional book code filter (e.g., JHN)"},
        "chapter": {"type": "integer", "minimum": 1, "description": "Optional chapter filter"},
    }

    registry.register_tool(
        "get_bible_reading_sessions",
        "Get the user's recent Bible reading sessions, optionally for one passage.",
        {"type": "object", "properties": passage_params, "additionalProperties": False},
        get_reading_sessions,
    )
    registry.register_tool(
        "get_verse_notes",
        "Get the user's verse notes for a timeframe, optionally for one book.",
        {
            "type": "object",
            "properties": {k: v for k, v in passage_params.items() if k != "chapter"},
            "additionalProperties": False,
        },
        get_verse_notes,
    )
    return registry
