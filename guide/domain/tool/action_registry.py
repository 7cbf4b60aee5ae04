from typing import Any, Dict, FrozenSet, Iterable, List, Optional

ACTION_TYPES: List[str] = [
    "continue_reading",
    "open_passage",
    "start_short_reading",
    "start_checkin",
    "open_conversation",
    "open_conversation_summary",
]

NORMALIZED_ACTIONS: List[str] = [
    "read_scripture",
    "checkin",
    "reading_plan",
    "prayer",
    "resume_guide_conversation",
    "new_guide_conversation",
    "reflect_journal",
]

GROUNDINGS: List[str] = [
    "reading_anchor",
    "highlight_anchor",
    "note_anchor",
    "life_context",
    "conversation_summary",
    "plan_progress",
]

REF_KEY_PATTERN = r"^([1-3]?[A-Za-z]{2,3}):(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?$"

_ANY_PARAMS: Dict[str, Any] = {"type": "object"}

# normalized_action -> (permitted action.type values, action.params schema)
ACTION_MAPPING: Dict[str, Dict[str, Any]] = {
    "read_scripture": {
        "action_types": frozenset({"open_passage", "continue_reading", "start_short_reading"}),
        "params_schema": {
            "type": "object",
            "required": ["ref_key"],
            "properties": {
                "ref_key": {"type": "string", "pattern": REF_KEY_PATTERN},
            },
        },
    },
    "checkin": {
        "action_types": frozenset({"start_checkin"}),
        "params_schema": _ANY_PARAMS,
    },
    "resume_guide_conversation": {
        "action_types": frozenset({"open_conversation_summary"}),
        "params_schema": {
            "type": "object",
            "required": ["artifact_id"],
            "properties": {
                "artifact_id": {"type": "string", "minLength": 1, "pattern": r"\S"},
            },
        },
    },
    "new_guide_conversation": {
        "action_types": frozenset({"open_conversation"}),
        "params_schema": _ANY_PARAMS,
    },
    "reading_plan": {
        "action_types": frozenset({"open_conversation"}),
        "params_schema": _ANY_PARAMS,
    },
    "prayer": {
        "action_types": frozenset({"open_conversation"}),
        "params_schema": _ANY_PARAMS,
    },
    "reflect_journal": {
        "action_types": frozenset({"open_conversation"}),
        "params_schema": _ANY_PARAMS,
    },
}


def allowed_action_types_for(normalized_action: str) -> FrozenSet[str]:
    entry = ACTION_MAPPING.get(normalized_action)
    return entry["action_types"] if entry else frozenset()


def params_schema_for(normalized_action: str) -> Optional[Dict[str, Any]]:
    entry = ACTION_MAPPING.get(normalized_action)
    return entry["params_schema"] if entry else None


def normalize_enabled_actions(enabled: Optional[Iterable[Any]]) -> List[str]:
    """Intersect caller-enabled actions with the vocabulary; an empty result means everything"""

    if enabled is None:
        return list(ACTION_TYPES)

    filtered: List[str] = []
    for action in enabled:
        if isinstance(action, str) and action in ACTION_TYPES and action not in filtered:
            filtered.append(action)

    return filtered or list(ACTION_TYPES)
