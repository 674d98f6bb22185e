import numpy as np
import pytest

from matchcut.align.features import FeatureSet, Keypoint
from matchcut.align.matcher import (
    CandidateMatch,
    CorrespondenceMatcher,
    paired_points,
    ratio_filter,
)
from matchcut.errors import FeatureExtractionEmpty, InsufficientMatches
from matchcut.models import GREEDY_MATCHING, NORMAL_MATCHING, MatchConfig


def _feature_set(descriptors):
    keypoints = [Keypoint(x=float(ii), y=float(2 * ii)) for ii in range(len(descriptors))]
    return FeatureSet(keypoints, descriptors)


def _random_descriptors(rng, n):
    # AKAZE descriptors are 61 bytes
    return rng.integers(0, 256, size=(n, 61), dtype=np.uint8)


def _pair(n_shared, seed=0):
    rng = np.random.default_rng(seed)
    reference = _random_descriptors(rng, 50)
    query = np.vstack([reference[:n_shared], _random_descriptors(rng, 20)])
    return _feature_set(query), _feature_set(reference)


def test_match_configs():
    assert NORMAL_MATCHING == MatchConfig(0.75, 10)
    assert GREEDY_MATCHING == MatchConfig(0.85, 5)
    assert MatchConfig.for_mode(True) is GREEDY_MATCHING
    assert MatchConfig.for_mode(False) is NORMAL_MATCHING


def test_ratio_filter_keeps_distinct_nearest():
    candidates = [
        (CandidateMatch(0, 0, 10.0), CandidateMatch(0, 1, 100.0)),
        (CandidateMatch(1, 2, 80.0), CandidateMatch(1, 3, 100.0)),
        (CandidateMatch(2, 4, 5.0),),
    ]
    assert ratio_filter(candidates, 0.75) == [candidates[0][0]]
    assert ratio_filter(candidates, 0.85) == [candidates[0][0], candidates[1][0]]


def test_too_few_matches_raises_with_counts():
    query, reference = _pair(3)
    with pytest.raises(InsufficientMatches) as exc_info:
        CorrespondenceMatcher(NORMAL_MATCHING).match(query, reference)
    assert exc_info.value.count == 3
    assert exc_info.value.required == 10
    assert "3/10" in str(exc_info.value)


def test_greedy_mode_accepts_fewer_matches():
    query, reference = _pair(6)
    with pytest.raises(InsufficientMatches):
        CorrespondenceMatcher(NORMAL_MATCHING).match(query, reference)
    good = CorrespondenceMatcher(GREEDY_MATCHING).match(query, reference)
    assert len(good) == 6


def test_shared_descriptors_are_matched_to_their_source():
    query, reference = _pair(12)
    good = CorrespondenceMatcher().match(query, reference)

    assert sorted((mm.query_idx, mm.reference_idx) for mm in good) == [
        (ii, ii) for ii in range(12)
    ]
    query_pts, reference_pts = paired_points(query, reference, good)
    assert query_pts.dtype == np.float32
    np.testing.assert_array_equal(query_pts, reference_pts)


@pytest.mark.parametrize("empty_side", ["query", "reference"])
def test_empty_features_raise(empty_side):
    query, reference = _pair(12)
    empty = FeatureSet([], None)
    if empty_side == "query":
        query = empty
    else:
        reference = empty
    with pytest.raises(FeatureExtractionEmpty):
        CorrespondenceMatcher().match(query, reference)


def test_feature_set_rejects_misaligned_rows():
    with pytest.raises(ValueError):
        FeatureSet([Keypoint(0, 0)], np.zeros((2, 61), dtype=np.uint8))
