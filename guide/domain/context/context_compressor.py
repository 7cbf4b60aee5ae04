from typing import Dict, List, Optional, Sequence, Tuple
from datetime import datetime
import json

import structlog

from guide.domain.context.context_ranker import ContextRanker
from guide.domain.context.fetchers.base import parse_timestamp
from guide.domain.context.scripture import parse_loose_ref
from guide.domain.models.candidate import (
    Candidate,
    CandidateSource,
    HighlightMetadata,
    NoteMetadata,
    ReadingSessionMetadata,
)
from guide.domain.models.context_pack import (
    AnchorEntry,
    ArtEntry,
    CompressedContext,
    ContextPack,
    ConvoEntry,
    LifeEntry,
    PackPlan,
)
from guide.domain.models.pipeline import Plan
from guide.domain.tool.action_registry import normalize_enabled_actions

logger = structlog.get_logger(__name__)

ELLIPSIS = "…"
PREVIEW_MAX_CHARS = 160
SHRINK_STEPS = (80, 40)
MIN_SESSION_SECONDS = 15
CLUSTER_WINDOW_SECONDS = 10 * 60
MAX_RAW_ANCHORS = 24
MAX_ARTS = 24
MAX_CONVOS = 10
MAX_AFF = 32
ELISION_ORDER = ("convos", "arts", "anchors", "life")


def truncate(value: str, max_chars: int) -> str:
    return value if len(value) <= max_chars else value[:max_chars] + ELLIPSIS


def _shrink(value: Optional[str], max_chars: int) -> Optional[str]:
    if value is None:
        return None
    base = value[:-1] if value.endswith(ELLIPSIS) else value
    if len(base) <= max_chars:
        return value
    return truncate(base, max_chars)


def _epoch(t: Optional[str]) -> float:
    when = parse_timestamp(t)
    return when.timestamp() if when else 0.0


def _measure(pack: ContextPack) -> int:
    return len(json.dumps(pack.to_payload(), separators=(",", ":"), ensure_ascii=False))


def estimate_tokens(chars: int) -> int:
    return (chars + 3) // 4


class ContextCompressor:
    """Projects deduped candidates into a bounded short-key payload and derives the allow-lists"""

    def __init__(
        self,
        max_payload_chars: int = 12000,
        ranker: Optional[ContextRanker] = None,
        now: Optional[datetime] = None
    ):
        self.max_payload_chars = max_payload_chars
        self.ranker = ranker or ContextRanker(now=now)

    def compress(
        self,
        candidates: Sequence[Candidate],
        plan: Optional[Plan] = None,
        enabled_actions: Optional[Sequence[str]] = None
    ) -> CompressedContext:
        """Build the pack, fit it under the ceiling, and compute allow-lists from what survived"""

        allowed_actions = normalize_enabled_actions(enabled_actions)

        primary = self.ranker.select_primary_anchors(self._anchors(candidates))
        arts = self.ranker.attach_supporting_arts(primary, self._arts(candidates))

        pack = ContextPack(
            plan=self._plan(plan),
            life=self._life(candidates),
            anchors=primary,
            arts=arts,
            convos=self._convos(candidates),
            aff=allowed_actions[:MAX_AFF],
        )

        pack, elided = self.enforce_ceiling(pack)
        payload = pack.to_payload()
        chars = _measure(pack)

        if chars > self.max_payload_chars:
            logger.warning("Context payload still over ceiling", payload_chars=chars, ceiling=self.max_payload_chars)

        return CompressedContext(
            pack=pack,
            payload=payload,
            allowed_evidence_ids=pack.evidence_ids(),
            allowed_action_types=list(pack.aff),
            payload_chars=chars,
            estimated_tokens=estimate_tokens(chars),
            elided=elided,
        )

    def enforce_ceiling(self, pack: ContextPack) -> Tuple[ContextPack, int]:
        """Shorten text fields step by step, then elide whole items from the tail"""

        if _measure(pack) <= self.max_payload_chars:
            return pack, 0

        for limit in SHRINK_STEPS:
            pack = self._shrink_text(pack, limit)
            if _measure(pack) <= self.max_payload_chars:
                return pack, 0

        elided = 0
        groups: Dict[str, list] = {key: list(getattr(pack, key)) for key in ELISION_ORDER}
        for key in ELISION_ORDER:
            while groups[key]:
                groups[key].pop()
                elided += 1
                pack = pack.model_copy(update={key: list(groups[key])})
                if _measure(pack) <= self.max_payload_chars:
                    logger.info("Elided context items", elided=elided)
                    return pack, elided

        return pack, elided

    def _shrink_text(self, pack: ContextPack, limit: int) -> ContextPack:
        return pack.model_copy(update={
            "life": [e.model_copy(update={"p": _shrink(e.p, limit)}) for e in pack.life],
            "arts": [e.model_copy(update={"summary": _shrink(e.summary, limit)}) for e in pack.arts],
            "convos": [e.model_copy(update={"p": _shrink(e.p, limit)}) for e in pack.convos],
        })

    def _plan(self, plan: Optional[Plan]) -> Optional[PackPlan]:
        if plan is None:
            return None
        return PackPlan(mode=plan.mode.value, len=plan.length, range=plan.temporal_range.value)

    def _life(self, candidates: Sequence[Candidate]) -> List[LifeEntry]:
        return [
            LifeEntry(id=c.id, p=truncate(c.preview, PREVIEW_MAX_CHARS))
            for c in candidates
            if c.source == CandidateSource.LIFE_CONTEXT and c.preview
        ]

    def _anchors(self, candidates: Sequence[Candidate]) -> List[AnchorEntry]:
        """Collapse reading sessions into per-chapter, per-day anchors"""

        sessions = [
            c for c in candidates
            if c.source == CandidateSource.READING_SESSION
            and isinstance(c.metadata, ReadingSessionMetadata)
            and c.metadata.duration_seconds >= MIN_SESSION_SECONDS
        ]

        groups: Dict[str, List[Candidate]] = {}
        for session in sessions:
            meta = session.metadata
            ended_at = meta.ended_at or session.features.created_at
            local_date = meta.local_date or (ended_at[:10] if ended_at else "unknown")
            groups.setdefault(f"{meta.book_id}:{meta.chapter}:{local_date}", []).append(session)

        anchors: List[AnchorEntry] = []
        for group in groups.values():
            ordered = sorted(group, key=lambda s: _epoch(s.metadata.ended_at or s.features.created_at), reverse=True)

            clusters: List[List[Candidate]] = []
            for session in ordered:
                if clusters:
                    head = parse_timestamp(clusters[-1][0].metadata.ended_at)
                    this = parse_timestamp(session.metadata.ended_at)
                    if head and this and abs((head - this).total_seconds()) <= CLUSTER_WINDOW_SECONDS:
                        clusters[-1].append(session)
                        continue
                clusters.append([session])

            for cluster in clusters:
                most_recent = cluster[0]
                longest = max(cluster, key=lambda s: s.metadata.duration_seconds)
                picked = {most_recent.id: most_recent, longest.id: longest}
                anchors.extend(self._anchor_entry(s) for s in picked.values())

        anchors.sort(key=lambda a: _epoch(a.t), reverse=True)
        return anchors[:MAX_RAW_ANCHORS]

    def _anchor_entry(self, session: Candidate) -> AnchorEntry:
        meta: ReadingSessionMetadata = session.metadata
        if meta.read_ranges:
            ref = f"{meta.book_id} {', '.join(meta.read_ranges)}"
        else:
            ref = f"{meta.book_id} {meta.chapter}"

        return AnchorEntry(
            id=session.id,
            ref=ref,
            dur_s=meta.duration_seconds,
            status=meta.completion_status,
            t=meta.ended_at or session.features.created_at,
            score=session.features.recency_score,
        )

    def _arts(self, candidates: Sequence[Candidate]) -> List[ArtEntry]:
        arts: List[ArtEntry] = []
        for c in candidates:
            if not isinstance(c.metadata, (NoteMetadata, HighlightMetadata)):
                continue

            first_ref = c.metadata.scripture_refs[0] if c.metadata.scripture_refs else None
            parsed = parse_loose_ref(first_ref) if first_ref else None
            if parsed:
                ref = parsed.format()
            else:
                ref = truncate(first_ref, 48) if first_ref else None

            summary = c.metadata.summary if isinstance(c.metadata, NoteMetadata) else None
            entry = ArtEntry(
                id=c.id,
                src="note" if isinstance(c.metadata, NoteMetadata) else "hl",
                ref=ref,
                t=c.features.created_at,
                summary=truncate(summary, PREVIEW_MAX_CHARS) if summary else None,
                tags=list(c.metadata.tags) or None,
            )
            if entry.t or entry.ref:
                arts.append(entry)

        arts.sort(key=lambda a: _epoch(a.t), reverse=True)
        return arts[:MAX_ARTS]

    def _convos(self, candidates: Sequence[Candidate]) -> List[ConvoEntry]:
        convos = [
            ConvoEntry(
                id=c.id,
                t=c.features.created_at,
                p=truncate(c.preview, PREVIEW_MAX_CHARS) if c.preview else None,
            )
            for c in candidates
            if c.source == CandidateSource.CONVERSATION_SUMMARY
        ]
        convos = [c for c in convos if c.t or c.p]
        convos.sort(key=lambda c: _epoch(c.t), reverse=True)
        return convos[:MAX_CONVOS]
