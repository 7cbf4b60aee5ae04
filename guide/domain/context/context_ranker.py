from typing import Dict, List, Optional, Tuple, TypeVar
from datetime import datetime
from functools import cmp_to_key

from guide.domain.context.fetchers.base import calculate_recency_score, parse_timestamp
from guide.domain.context.scripture import ScriptureRef, parse_compact_ref, refs_overlap
from guide.domain.models.context_pack import AnchorEntry, ArtEntry

PRIMARY_ANCHOR_LIMIT = 9
LONG_SESSION_SECONDS = 5 * 60
DURATION_CAP_SECONDS = 15 * 60
TOTAL_ITEM_CAP = 12
SUPPORT_CAP = 6
SUPPORT_PER_ANCHOR = 2

T = TypeVar("T")


def recency_from_time(t: Optional[str], now: Optional[datetime] = None) -> float:
    when = parse_timestamp(t)
    if when is None:
        return 0.0
    return calculate_recency_score(when, now)


def _epoch(t: Optional[str]) -> Optional[float]:
    when = parse_timestamp(t)
    return when.timestamp() if when else None


def _compare_scored(x: Tuple[float, Optional[str], str], y: Tuple[float, Optional[str], str]) -> int:
    """Score desc, then time desc when both parse, then id asc"""

    if x[0] != y[0]:
        return -1 if x[0] > y[0] else 1
    xt, yt = _epoch(x[1]), _epoch(y[1])
    if xt is not None and yt is not None and xt != yt:
        return -1 if xt > yt else 1
    if x[2] == y[2]:
        return 0
    return -1 if x[2] < y[2] else 1


def _sort_scored(items: List[Tuple[float, T]], time_of, id_of) -> List[Tuple[float, T]]:
    keyed = [((score, time_of(item), id_of(item)), (score, item)) for score, item in items]
    keyed.sort(key=cmp_to_key(lambda a, b: _compare_scored(a[0], b[0])))
    return [pair for _, pair in keyed]


def _duration_fraction(dur_s: Optional[int]) -> float:
    if dur_s is None:
        return 0.0
    return min(dur_s, DURATION_CAP_SECONDS) / DURATION_CAP_SECONDS


class ContextRanker:
    """Ranks reading anchors and the notes/highlights that support them"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now

    def score_anchor(self, anchor: AnchorEntry) -> float:
        status = (anchor.status or "").lower()
        resume_like = any(word in status for word in ("in_progress", "continue", "resume"))
        is_long = (anchor.dur_s or 0) >= LONG_SESSION_SECONDS

        type_weight = 1.4 if resume_like else 1.1 if is_long else 0.9
        recency = anchor.score if anchor.score is not None else recency_from_time(anchor.t, self.now)
        return type_weight + recency + _duration_fraction(anchor.dur_s) * 0.35

    def select_primary_anchors(
        self,
        anchors: List[AnchorEntry],
        limit: int = PRIMARY_ANCHOR_LIMIT
    ) -> List[AnchorEntry]:
        """Keep the highest scoring anchors"""

        scored = [(self.score_anchor(a), a) for a in anchors]
        ordered = _sort_scored(scored, lambda a: a.t, lambda a: a.id)
        return [a for _, a in ordered[:limit]]

    def score_support(self, art: ArtEntry) -> float:
        src_weight = 1.2 if art.src == "note" else 0.9
        summary_bonus = 0.4 if art.src == "note" and art.summary else 0.0
        tags_bonus = 0.1 if art.tags else 0.0
        return src_weight + summary_bonus + tags_bonus + recency_from_time(art.t, self.now)

    def attach_supporting_arts(
        self,
        anchors: List[AnchorEntry],
        arts: List[ArtEntry]
    ) -> List[ArtEntry]:
        """Pick the arts whose reference overlaps a kept anchor, within per-anchor and total caps"""

        parsed_anchors: List[Tuple[AnchorEntry, ScriptureRef]] = []
        for anchor in anchors:
            parsed = parse_compact_ref(anchor.ref) if anchor.ref else None
            if parsed:
                parsed_anchors.append((anchor, parsed))

        assignments: Dict[str, Tuple[str, float]] = {}
        for art in arts:
            parsed_art = parse_compact_ref(art.ref) if art.ref else None
            if not parsed_art:
                continue

            best: Optional[Tuple[str, float]] = None
            for anchor, parsed in parsed_anchors:
                if not refs_overlap(parsed, parsed_art):
                    continue

                overlap_bonus = 0.15 if parsed.verse_start and parsed_art.verse_start else 0.0
                anchor_recency = anchor.score if anchor.score is not None else recency_from_time(anchor.t, self.now)
                anchor_base = 1.0 + anchor_recency + _duration_fraction(anchor.dur_s) * 0.25
                score = anchor_base + self.score_support(art) + overlap_bonus

                if best is None or score > best[1] or (score == best[1] and anchor.id < best[0]):
                    best = (anchor.id, score)

            if best is None:
                continue
            existing = assignments.get(art.id)
            if existing is None or best[1] > existing[1] or (best[1] == existing[1] and best[0] < existing[0]):
                assignments[art.id] = best

        by_anchor: Dict[str, List[Tuple[float, ArtEntry]]] = {}
        for art in arts:
            assigned = assignments.get(art.id)
            if assigned:
                by_anchor.setdefault(assigned[0], []).append((assigned[1], art))

        picked: List[Tuple[float, ArtEntry]] = []
        for anchor in anchors:
            candidates = by_anchor.get(anchor.id, [])
            picked.extend(_sort_scored(candidates, lambda a: a.t, lambda a: a.id)[:SUPPORT_PER_ANCHOR])

        cap = min(SUPPORT_CAP, max(0, TOTAL_ITEM_CAP - len(anchors)))
        ordered = _sort_scored(picked, lambda a: a.t, lambda a: a.id)
        return [art for _, art in ordered[:cap]]
