"""Descriptor matching with a distance-ratio test."""

import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..errors import FeatureExtractionEmpty, InsufficientMatches
from ..models import MatchConfig, NORMAL_MATCHING
from ..resources import Arena
from .features import FeatureSet

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CandidateMatch:
    """Index into the query set, index into the reference set, distance."""

    query_idx: int
    reference_idx: int
    distance: float

    def to_cv(self) -> cv2.DMatch:
        return cv2.DMatch(self.query_idx, self.reference_idx, self.distance)


def ratio_filter(
    candidates: Sequence[Sequence[CandidateMatch]], ratio: float
) -> List[CandidateMatch]:
    """Keep the nearest neighbour when it is clearly closer than the second."""
    good = []
    for pair in candidates:
        if len(pair) < 2:
            continue
        best, second = pair[0], pair[1]
        if best.distance < ratio * second.distance:
            good.append(best)
    return good


class CorrespondenceMatcher:
    """Brute-force Hamming kNN (k=2) plus the ratio test."""

    def __init__(self, config: MatchConfig = NORMAL_MATCHING):
        self.config = config

    def knn(
        self, query: FeatureSet, reference: FeatureSet
    ) -> List[Tuple[CandidateMatch, ...]]:
        if query.empty or reference.empty:
            raise FeatureExtractionEmpty()
        matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        knn_matches = matcher.knnMatch(query.descriptors, reference.descriptors, k=2)
        return [
            tuple(CandidateMatch(mm.queryIdx, mm.trainIdx, float(mm.distance)) for mm in pair)
            for pair in knn_matches
        ]

    def match(
        self,
        query: FeatureSet,
        reference: FeatureSet,
        arena: Optional[Arena] = None,
    ) -> List[CandidateMatch]:
        """Good matches of `query` against `reference`.

        Raises `InsufficientMatches` when fewer than the configured minimum
        survive the ratio test.
        """
        with Arena("match") as local:
            candidates = local.adopt(self.knn(query, reference))
            good = ratio_filter(candidates, self.config.ratio)
        log.debug(
            f"{len(good):6} good matches of {len(candidates)} candidates "
            f"(ratio {self.config.ratio})"
        )
        if len(good) < self.config.min_matches:
            raise InsufficientMatches(len(good), self.config.min_matches)
        if arena is not None:
            arena.adopt(good)
        return good


def paired_points(
    query: FeatureSet, reference: FeatureSet, matches: Sequence[CandidateMatch]
) -> Tuple[np.ndarray, np.ndarray]:
    """(query_pts, reference_pts) as float32 (N, 2) arrays."""
    query_pts = query.points([mm.query_idx for mm in matches])
    reference_pts = reference.points([mm.reference_idx for mm in matches])
    return query_pts, reference_pts
