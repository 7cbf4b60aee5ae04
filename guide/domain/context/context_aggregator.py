from typing import Dict, Iterable, List, Optional

from guide.domain.models.candidate import Candidate, CandidateFeatures

_SCORE_FIELDS = (
    "recency_score",
    "semantic_score",
    "temporal_match_score",
    "scope_match_score",
    "freshness_score",
)


def _max_or_none(current: Optional[float], incoming: Optional[float]) -> Optional[float]:
    if incoming is None:
        return current
    if current is None:
        return incoming
    return max(current, incoming)


def merge_features(current: CandidateFeatures, incoming: CandidateFeatures) -> CandidateFeatures:
    """Element-wise maximum of every score; the later created_at wins when present"""

    merged = {
        name: _max_or_none(getattr(current, name), getattr(incoming, name))
        for name in _SCORE_FIELDS
    }
    merged["created_at"] = incoming.created_at or current.created_at
    return CandidateFeatures(**merged)


def _outranks(incoming: Candidate, existing: Candidate) -> bool:
    """Higher semantic score wins; ties (or both absent) fall back to recency"""

    incoming_sem = incoming.features.semantic_score if incoming.features.semantic_score is not None else -1
    existing_sem = existing.features.semantic_score if existing.features.semantic_score is not None else -1
    if incoming_sem != existing_sem:
        return incoming_sem > existing_sem

    incoming_rec = incoming.features.recency_score if incoming.features.recency_score is not None else -1
    existing_rec = existing.features.recency_score if existing.features.recency_score is not None else -1
    return incoming_rec > existing_rec


def dedupe(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Collapse candidates sharing an id into one merged record, keeping first-seen order"""

    by_id: Dict[str, Candidate] = {}

    for candidate in candidates:
        existing = by_id.get(candidate.id)
        if existing is None:
            by_id[candidate.id] = candidate
            continue

        winner = candidate if _outranks(candidate, existing) else existing
        by_id[candidate.id] = winner.model_copy(
            update={"features": merge_features(existing.features, candidate.features)}
        )

    return list(by_id.values())


def group_by_source(candidates: Iterable[Candidate]) -> Dict[str, int]:
    """Frequency map by source, for diagnostics only"""

    counts: Dict[str, int] = {}
    for candidate in candidates:
        counts[candidate.source.value] = counts.get(candidate.source.value, 0) + 1
    return counts
