from guide.domain.context.context_aggregator import dedupe, group_by_source, merge_features
from guide.domain.models.candidate import (
    Candidate, CandidateFeatures, CandidateSource, HighlightMetadata, NoteMetadata
)


def note(candidate_id: str, label: str = "Note", **features) -> Candidate:
    return Candidate(
        id=candidate_id,
        source=CandidateSource.NOTE,
        label=label,
        metadata=NoteMetadata(artifact_id=candidate_id),
        features=CandidateFeatures(**features),
    )


def highlight(candidate_id: str, **features) -> Candidate:
    return Candidate(
        id=candidate_id,
        source=CandidateSource.HIGHLIGHT,
        label="Highlight",
        metadata=HighlightMetadata(artifact_id=candidate_id),
        features=CandidateFeatures(**features),
    )


def test_dedupe_keeps_first_seen_order():
    result = dedupe([note("a"), note("b"), note("a"), note("c")])

    assert [c.id for c in result] == ["a", "b", "c"]


def test_dedupe_is_idempotent():
    once = dedupe([note("a", recency_score=0.5), note("a", semantic_score=0.2), note("b")])

    assert dedupe(once) == once


def test_higher_semantic_score_wins_the_record():
    result = dedupe([
        note("a", label="first", semantic_score=0.2),
        note("a", label="second", semantic_score=0.9),
    ])

    assert len(result) == 1
    assert result[0].label == "second"


def test_recency_breaks_semantic_ties():
    result = dedupe([
        note("a", label="older", recency_score=0.3),
        note("a", label="newer", recency_score=0.9),
    ])

    assert result[0].label == "newer"


def test_features_are_merged_elementwise():
    result = dedupe([
        note("a", semantic_score=0.4, recency_score=0.9),
        note("a", semantic_score=0.7, temporal_match_score=0.5),
    ])

    features = result[0].features
    assert features.semantic_score == 0.7
    assert features.recency_score == 0.9
    assert features.temporal_match_score == 0.5


def test_merge_features_prefers_later_created_at():
    merged = merge_features(
        CandidateFeatures(created_at="2024-01-01T00:00:00"),
        CandidateFeatures(created_at="2024-02-01T00:00:00"),
    )
    kept = merge_features(CandidateFeatures(created_at="2024-01-01T00:00:00"), CandidateFeatures())

    assert merged.created_at == "2024-02-01T00:00:00"
    assert kept.created_at == "2024-01-01T00:00:00"


def test_group_by_source_counts():
    counts = group_by_source([note("a"), note("b"), highlight("c")])

    assert counts == {"note": 2, "highlight": 1}


def test_empty_input():
    assert dedupe([]) == []
    assert group_by_source([]) == {}
