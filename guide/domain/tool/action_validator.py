from typing import Any, Dict, Iterable, List, NamedTuple, Optional
import re

import jsonschema

from guide.domain.tool.action_registry import (
    GROUNDINGS,
    NORMALIZED_ACTIONS,
    allowed_action_types_for,
    params_schema_for,
)

SCHEMA_FAILED = "schema_validation_failed"
FAIL_SUBTITLE = "schema_fail.subtitle_one_sentence"
FAIL_EVIDENCE = "schema_fail.evidence_ids_not_allowed"
FAIL_ACTION_NOT_ENABLED = "schema_fail.action_not_enabled"
FAIL_ACTION_MAPPING = "schema_fail.action_mapping"
FAIL_ACTION_PARAMS = "schema_fail.action_params"
FAIL_OTHER = "schema_fail.other"

_SENTENCE_END = re.compile(r"[.!?](\s|$)")

SUGGESTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": [
        "type", "rank", "title", "subtitle", "normalized_action", "grounding",
        "target_label", "action", "evidence_ids", "confidence",
    ],
    "properties": {
        "type": {"const": "suggestion"},
        "rank": {"type": "integer", "minimum": 1, "maximum": 5},
        "title": {"type": "string", "minLength": 1, "maxLength": 120},
        "subtitle": {"type": "string", "minLength": 1, "maxLength": 240},
        "normalized_action": {"enum": NORMALIZED_ACTIONS},
        "grounding": {"enum": GROUNDINGS},
        "target_label": {"type": "string", "minLength": 1, "maxLength": 180},
        "action": {
            "type": "object",
            "required": ["type", "params"],
            "properties": {
                "type": {"type": "string"},
                "params": {"type": "object"},
            },
        },
        "evidence_ids": {
            "type": "array",
            "minItems": 1,
            "maxItems": 10,
            "items": {"type": "string", "minLength": 1},
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}

DONE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {"type": {"const": "done"}},
}

_SUGGESTION_VALIDATOR = jsonschema.Draft202012Validator(SUGGESTION_SCHEMA)
_DONE_VALIDATOR = jsonschema.Draft202012Validator(DONE_SCHEMA)


class ValidationResult(NamedTuple):
    is_valid: bool
    event: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    errors: Optional[List[str]] = None


def is_single_sentence(text: str) -> bool:
    return len(_SENTENCE_END.findall(text.strip())) <= 1


class GuideEventValidator:
    """Validates one streamed event against the allow-lists shown to the model this turn"""

    def __init__(self, allowed_evidence_ids: Iterable[str], allowed_action_types: Iterable[str]):
        self.allowed_evidence_ids = frozenset(allowed_evidence_ids)
        self.allowed_action_types = frozenset(allowed_action_types)

    def validate(self, event: Any) -> ValidationResult:
        """Return the event when valid, otherwise the detail drop reason"""

        if not isinstance(event, dict):
            return ValidationResult(False, reason=FAIL_OTHER, errors=["event is not an object"])

        event_type = event.get("type")
        if event_type == "done":
            errors = [e.message for e in _DONE_VALIDATOR.iter_errors(event)]
            if errors:
                return ValidationResult(False, reason=FAIL_OTHER, errors=errors)
            return ValidationResult(True, event={"type": "done"})

        if event_type != "suggestion":
            return ValidationResult(False, reason=FAIL_OTHER, errors=[f"unknown event type: {event_type!r}"])

        return self._validate_suggestion(event)

    def _validate_suggestion(self, event: Dict[str, Any]) -> ValidationResult:
        errors = [e.message for e in _SUGGESTION_VALIDATOR.iter_errors(event)]
        if errors:
            return ValidationResult(False, reason=FAIL_OTHER, errors=errors)

        if not is_single_sentence(event["subtitle"]):
            return ValidationResult(False, reason=FAIL_SUBTITLE, errors=["subtitle must be one sentence"])

        unknown = [eid for eid in event["evidence_ids"] if eid not in self.allowed_evidence_ids]
        if unknown:
            return ValidationResult(False, reason=FAIL_EVIDENCE, errors=[f"evidence ids not shown: {unknown}"])

        action = event["action"]
        action_type = action["type"]
        normalized = event["normalized_action"]

        if action_type not in allowed_action_types_for(normalized):
            return ValidationResult(
                False,
                reason=FAIL_ACTION_MAPPING,
                errors=[f"{normalized} cannot map to {action_type}"]
            )

        if self.allowed_action_types and action_type not in self.allowed_action_types:
            return ValidationResult(False, reason=FAIL_ACTION_NOT_ENABLED, errors=[f"{action_type} not enabled"])

        params = dict(action["params"])
        if isinstance(params.get("ref_key"), str):
            params["ref_key"] = params["ref_key"].strip()
        try:
            jsonschema.validate(params, params_schema_for(normalized))
        except jsonschema.ValidationError as e:
            return ValidationResult(False, reason=FAIL_ACTION_PARAMS, errors=[f"Schema validation failed: {e.message}"])

        return ValidationResult(True, event={**event, "action": {**action, "params": params}})
