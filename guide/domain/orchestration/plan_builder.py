from typing import Dict, List, Optional, Sequence
import re

from guide.domain.context.scripture import BOOK_NAME_TO_CODE, find_references, parse_compact_ref
from guide.domain.models.candidate import TemporalRange
from guide.domain.models.pipeline import Entrypoint, Plan, ResponseMode, ScriptureScope

SELF_HARM_PATTERN = re.compile(r"\b(suicid|self.?harm|kill myself)", re.IGNORECASE)
VIOLENCE_PATTERN = re.compile(r"\b(abuse|assault|violence)\b", re.IGNORECASE)

_RESUME_PATTERN = re.compile(
    r"\b(pick up|pick-up|continue|resume|pick it back up|pick back up)\b|\bwhere we left (off|it)\b",
    re.IGNORECASE,
)
_PRAYER_PATTERN = re.compile(r"\bpray", re.IGNORECASE)
_DISTRESS_PATTERN = re.compile(r"\b(struggling|anxious|worried|afraid|scared|guilty|hopeless)\b", re.IGNORECASE)
_STUDY_PATTERN = re.compile(r"\b(word study|cross.?reference|greek|hebrew)\b", re.IGNORECASE)
_COACH_PATTERN = re.compile(r"\b(apply|application|practice|how do i)\b", re.IGNORECASE)

_READING_HISTORY_PATTERNS = [
    re.compile(r"\bsummariz(e|ing)\b[^?.!]*\b(read|reading|readings)\b", re.IGNORECASE),
    re.compile(r"\b(where|what)\b[^?.!]*\b(i|we)\b[^?.!]*\b(read|reading)\b", re.IGNORECASE),
    re.compile(r"\brecently\b[^?.!]*\b(read|reading)\b", re.IGNORECASE),
    re.compile(r"\b(read|reading)\b[^?.!]*\brecently\b", re.IGNORECASE),
]
_LEARNINGS_PATTERNS = [
    re.compile(r"\b(summarize|summarise)\b", re.IGNORECASE),
    re.compile(r"\bmy learnings?\b", re.IGNORECASE),
    re.compile(r"\bwhat (?:did|have) i (?:learn|learned|learnt)\b", re.IGNORECASE),
]

# Longest names first so "1 john" wins over "john".
_BOOK_KEYS = sorted(BOOK_NAME_TO_CODE, key=len, reverse=True)

_ZERO_WIDTH = re.compile(r"[\u200b-\u200d\ufeff]")


def normalize_message(message: str) -> str:
    """Strip zero-width characters and collapse whitespace"""
    return re.sub(r"\s+", " ", _ZERO_WIDTH.sub("", message)).strip()


def merge_entity_refs(message: str, supplied: Sequence[str]) -> List[str]:
    """Supplied refs first, then refs found in the message; case-insensitive dedupe"""

    merged: List[str] = []
    seen = set()
    for ref in list(supplied) + find_references(message):
        key = ref.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(ref.strip())
    return merged


def detect_temporal_filter(message: str) -> Optional[TemporalRange]:
    m = message.lower()
    if "today" in m:
        return TemporalRange.LAST_DAY
    if "this week" in m or "last week" in m:
        return TemporalRange.LAST_WEEK
    if "this month" in m or "last month" in m:
        return TemporalRange.LAST_MONTH
    if "last year" in m:
        return TemporalRange.LAST_YEAR
    if "this year" in m:
        return TemporalRange.THIS_YEAR
    if "last 3 months" in m or "last three months" in m:
        return TemporalRange.LAST_3_MONTHS
    if "yesterday" in m or "last day" in m:
        return TemporalRange.LAST_DAY
    return None


def detect_response_mode(message: str) -> ResponseMode:
    if _RESUME_PATTERN.search(message):
        return ResponseMode.CONTINUITY
    if _PRAYER_PATTERN.search(message) or _DISTRESS_PATTERN.search(message):
        return ResponseMode.PASTORAL
    if _STUDY_PATTERN.search(message):
        return ResponseMode.STUDY
    if _COACH_PATTERN.search(message):
        return ResponseMode.COACH
    return ResponseMode.EXPLAIN


def detect_safety_flags(message: str) -> Dict[str, bool]:
    return {
        "self_harm": bool(SELF_HARM_PATTERN.search(message)),
        "violence": bool(VIOLENCE_PATTERN.search(message)),
    }


def detect_scope(message: str, entity_refs: Sequence[str]) -> Optional[ScriptureScope]:
    """Chapter scope from the first resolvable ref, else a book named in the text"""

    for ref in entity_refs:
        parsed = parse_compact_ref(ref)
        if parsed:
            return ScriptureScope(kind="chapter", book_id=parsed.book_code, chapter=parsed.chapter)

    lowered = message.lower()
    for key in _BOOK_KEYS:
        if len(key) >= 3 and re.search(rf"\b{re.escape(key)}\b", lowered):
            return ScriptureScope(kind="book", book_id=BOOK_NAME_TO_CODE[key])
    return None


def build_plan(entrypoint: Entrypoint, message: str, entity_refs: Sequence[str] = ()) -> Plan:
    """Rules-based plan; the first chat turn always coaches over the last month"""

    if entrypoint == Entrypoint.CHAT_START:
        return Plan(
            mode=ResponseMode.COACH,
            length="short",
            temporal_range=TemporalRange.LAST_MONTH,
            safety_flags=detect_safety_flags(message),
            signals=["chat_start"],
        )

    signals: List[str] = []
    if _RESUME_PATTERN.search(message):
        signals.append("resume_detected")
    if any(p.search(message) for p in _READING_HISTORY_PATTERNS):
        signals.append("reading_history_query")
    if re.search(r"\bhighlights?\b", message, re.IGNORECASE):
        signals.append("highlights_query")
    if re.search(r"\bnotes?\b", message, re.IGNORECASE):
        signals.append("notes_query")

    learnings = any(p.search(message) for p in _LEARNINGS_PATTERNS)
    if learnings:
        signals.append("learning_summary_query")

    mode = detect_response_mode(message)
    if entrypoint == Entrypoint.PRAYER_HELP:
        mode = ResponseMode.PASTORAL
    elif entrypoint == Entrypoint.EXPLAIN and mode == ResponseMode.CONTINUITY:
        mode = ResponseMode.EXPLAIN

    return Plan(
        mode=mode,
        length="medium" if learnings else "short",
        temporal_range=detect_temporal_filter(message) or TemporalRange.LAST_WEEK,
        scope=detect_scope(message, entity_refs),
        safety_flags=detect_safety_flags(message),
        signals=signals,
    )
