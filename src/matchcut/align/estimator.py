"""Robust affine/homography fitting and the ordered estimation strategies.

Each strategy returns an outcome carrying either a transform or the reason
it gave up. `run_chain` tries strategies in order and only raises
`TransformEstimationFailed` once every one of them has failed.
"""

import abc
import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..errors import AlignmentError, TransformEstimationFailed
from ..resources import Arena
from .features import FeatureExtractor, FeatureSet
from .matcher import CorrespondenceMatcher, paired_points
from .transforms import Transform, compose

log = logging.getLogger(__name__)

RANSAC_REPROJ_THRESHOLD = 3.0


def estimate_affine(src_pts: np.ndarray, dst_pts: np.ndarray) -> Optional[Transform]:
    """RANSAC affine fit mapping `src_pts` onto `dst_pts`; None if no consensus."""
    if len(src_pts) < 3:
        return None
    mx, _inliers = cv2.estimateAffine2D(
        src_pts.reshape(-1, 1, 2),
        dst_pts.reshape(-1, 1, 2),
        method=cv2.RANSAC,
        ransacReprojThreshold=RANSAC_REPROJ_THRESHOLD,
    )
    if mx is None or mx.size == 0 or not np.all(np.isfinite(mx)):
        return None
    return Transform(mx)


def estimate_homography(
    src_pts: np.ndarray, dst_pts: np.ndarray
) -> Optional[Transform]:
    """RANSAC homography fit mapping `src_pts` onto `dst_pts`; None if no consensus."""
    if len(src_pts) < 4:
        return None
    mx, _mask = cv2.findHomography(
        src_pts.reshape(-1, 1, 2),
        dst_pts.reshape(-1, 1, 2),
        cv2.RANSAC,
        RANSAC_REPROJ_THRESHOLD,
    )
    if mx is None or mx.size == 0 or not np.all(np.isfinite(mx)):
        return None
    return Transform(mx)


@dataclasses.dataclass
class PairContext:
    """Everything a strategy may use for one target-vs-reference pair."""

    reference: np.ndarray
    target: np.ndarray
    reference_features: FeatureSet
    target_points: np.ndarray
    reference_points: np.ndarray
    extractor: FeatureExtractor
    matcher: CorrespondenceMatcher
    arena: Arena

    @property
    def reference_size(self) -> Tuple[int, int]:
        height, width = self.reference.shape[:2]
        return width, height


@dataclasses.dataclass(frozen=True)
class StrategyOutcome:
    strategy: str
    transform: Optional[Transform] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transform is not None


def rematch_after_warp(
    ctx: PairContext, coarse: Transform
) -> Tuple[np.ndarray, np.ndarray]:
    """Warp the target by `coarse` and match it against the reference again.

    Returns (warped_pts, reference_pts). Raises `AlignmentError` subclasses
    when the warped image has no features or too few good matches.
    """
    arena = ctx.arena
    warped = arena.adopt(
        cv2.warpAffine(ctx.target, np.asarray(coarse), ctx.reference_size)
    )
    warped_features = ctx.extractor.extract(warped, arena=arena)
    matches = ctx.matcher.match(warped_features, ctx.reference_features, arena=arena)
    warped_pts, reference_pts = paired_points(
        warped_features, ctx.reference_features, matches
    )
    arena.adopt(warped_pts)
    arena.adopt(reference_pts)
    return warped_pts, reference_pts


class EstimationStrategy(abc.ABC):
    name = "strategy"

    @abc.abstractmethod
    def attempt(self, ctx: PairContext) -> StrategyOutcome:
        pass

    def success(self, transform: Transform) -> StrategyOutcome:
        return StrategyOutcome(self.name, transform=transform)

    def failure(self, reason: str) -> StrategyOutcome:
        return StrategyOutcome(self.name, reason=reason)


class PlainAffine(EstimationStrategy):
    name = "affine"

    def attempt(self, ctx):
        affine = estimate_affine(ctx.target_points, ctx.reference_points)
        if affine is None:
            return self.failure("affine fit found no consensus")
        return self.success(affine)


class RefinedAffine(EstimationStrategy):
    """Coarse affine, then a second affine fitted on the pre-warped target.

    A refinement pass without enough matches keeps the coarse affine.
    """

    name = "refined-affine"

    def attempt(self, ctx):
        coarse = estimate_affine(ctx.target_points, ctx.reference_points)
        if coarse is None:
            return self.failure("affine fit found no consensus")
        ctx.arena.adopt(coarse)

        try:
            warped_pts, reference_pts = rematch_after_warp(ctx, coarse)
        except AlignmentError as e:
            log.debug(f"Affine refinement skipped: {e}")
            return self.success(coarse)

        fine = estimate_affine(warped_pts, reference_pts)
        if fine is None:
            log.debug("Affine refinement found no consensus, keeping coarse affine.")
            return self.success(coarse)
        return self.success(coarse.then(fine))


class CoarseToFineHomography(EstimationStrategy):
    """Coarse affine, then a residual homography on the pre-warped target.

    The refinement lives in the coarse-warped coordinate space, so the final
    matrix is `H_refine @ A`.
    """

    name = "coarse-to-fine-homography"

    def attempt(self, ctx):
        coarse = estimate_affine(ctx.target_points, ctx.reference_points)
        if coarse is None:
            log.warning("Coarse affine failed, falling back to direct homography.")
            return self.failure("coarse affine found no consensus")
        ctx.arena.adopt(coarse)

        try:
            warped_pts, reference_pts = rematch_after_warp(ctx, coarse)
        except AlignmentError as e:
            log.warning(
                f"Not enough matches in fine-tuning ({e}), falling back to direct homography."
            )
            return self.failure(f"fine-tuning re-match failed: {e}")

        refinement = estimate_homography(warped_pts, reference_pts)
        if refinement is None:
            log.warning("Fine-tuning homography failed, falling back to direct homography.")
            return self.failure("fine-tuning homography found no consensus")
        ctx.arena.adopt(refinement)
        return self.success(compose(refinement, coarse))


class DirectHomography(EstimationStrategy):
    name = "direct-homography"

    def attempt(self, ctx):
        homography = estimate_homography(ctx.target_points, ctx.reference_points)
        if homography is None:
            return self.failure("homography fit found no consensus")
        return self.success(homography)


def strategy_chain(perspective: bool, refine: bool) -> List[EstimationStrategy]:
    """The ordered strategies tried for one pair."""
    if perspective:
        return [CoarseToFineHomography(), DirectHomography()]
    if refine:
        return [RefinedAffine()]
    return [PlainAffine()]


def run_chain(
    strategies: Sequence[EstimationStrategy], ctx: PairContext
) -> StrategyOutcome:
    reasons = []
    for strategy in strategies:
        outcome = strategy.attempt(ctx)
        if outcome.ok:
            log.debug(f"Strategy {outcome.strategy!r} succeeded: {outcome.transform}")
            return outcome
        reasons.append(f"{outcome.strategy}: {outcome.reason}")
    raise TransformEstimationFailed(reasons)
