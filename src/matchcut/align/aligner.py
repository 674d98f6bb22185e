"""Main alignment orchestrator class."""

import dataclasses
import logging
import pathlib
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..errors import FeatureExtractionEmpty
from ..image_io import to_rgb, to_rgba
from ..models import AlignmentSettings, MatchConfig
from ..resources import Arena
from .estimator import PairContext, run_chain, strategy_chain
from .features import FeatureExtractor, FeatureSet, Keypoint
from .matcher import CandidateMatch, CorrespondenceMatcher, paired_points
from .transforms import Transform

log = logging.getLogger(__name__)


# --- Data Structures ---
@dataclasses.dataclass(frozen=True)
class AlignmentResult:
    transform: Transform
    diagnostic: np.ndarray
    strategy: str
    reference_keypoints: Tuple[Keypoint, ...] = ()
    target_keypoints: Tuple[Keypoint, ...] = ()
    matches: Tuple[CandidateMatch, ...] = ()


def placeholder_diagnostic() -> np.ndarray:
    return np.zeros((1, 1, 4), dtype=np.uint8)


def draw_matches(
    target: np.ndarray,
    target_features: FeatureSet,
    reference: np.ndarray,
    reference_features: FeatureSet,
    matches: List[CandidateMatch],
) -> np.ndarray:
    """Target on the left, reference on the right, good matches joined."""
    canvas = cv2.drawMatches(
        to_rgb(target),
        target_features.cv_keypoints(),
        to_rgb(reference),
        reference_features.cv_keypoints(),
        [mm.to_cv() for mm in matches],
        None,
    )
    return to_rgba(canvas)


# --- Main Orchestrator ---
class ImageAligner:
    """Aligns a target image onto a reference image."""

    def __init__(
        self,
        extractor: Optional[FeatureExtractor] = None,
        matcher_factory: Callable[[MatchConfig], CorrespondenceMatcher] = CorrespondenceMatcher,
    ):
        self.extractor = extractor or FeatureExtractor()
        self.matcher_factory = matcher_factory

    def align(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        greedy: bool = False,
        refine: bool = True,
        perspective: bool = False,
        is_master: bool = False,
    ) -> AlignmentResult:
        if is_master:
            return AlignmentResult(
                transform=Transform.identity(perspective),
                diagnostic=placeholder_diagnostic(),
                strategy="identity",
            )

        matcher = self.matcher_factory(MatchConfig.for_mode(greedy))
        with Arena("align") as arena:
            reference = arena.adopt(to_rgba(reference))
            target = arena.adopt(to_rgba(target))

            reference_features = self.extractor.extract(reference, arena=arena)
            target_features = self.extractor.extract(target, arena=arena)
            if reference_features.empty or target_features.empty:
                raise FeatureExtractionEmpty()

            matches = matcher.match(target_features, reference_features, arena=arena)
            target_pts, reference_pts = paired_points(
                target_features, reference_features, matches
            )
            arena.adopt(target_pts)
            arena.adopt(reference_pts)

            ctx = PairContext(
                reference=reference,
                target=target,
                reference_features=reference_features,
                target_points=target_pts,
                reference_points=reference_pts,
                extractor=self.extractor,
                matcher=matcher,
                arena=arena,
            )
            outcome = run_chain(strategy_chain(perspective, refine), ctx)
            log.info(
                f"Aligned with {outcome.strategy} on {len(matches)} good matches "
                f"({len(target_features)}/{len(reference_features)} keypoints)"
            )

            diagnostic = draw_matches(
                target, target_features, reference, reference_features, matches
            )
            return AlignmentResult(
                transform=outcome.transform,
                diagnostic=diagnostic,
                strategy=outcome.strategy,
                reference_keypoints=reference_features.keypoints,
                target_keypoints=target_features.keypoints,
                matches=tuple(matches),
            )

    def align_with(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        settings: AlignmentSettings,
        is_master: bool = False,
    ) -> AlignmentResult:
        return self.align(
            reference,
            target,
            greedy=settings.greedy,
            refine=settings.refine,
            perspective=settings.perspective,
            is_master=is_master,
        )


# --- QC Plotter ---
class QcPlotter:
    """Collects diagnostic match figures and writes them to a QC folder."""

    def __init__(self, qc_out_dir: Optional[str]):
        self.qc_out_dir = qc_out_dir
        self.figures = []

    def plot_matches(
        self,
        name: str,
        master_name: str,
        diagnostic: np.ndarray,
        n_matches: Optional[int] = None,
    ):
        if self.qc_out_dir is None or diagnostic.shape[:2] == (1, 1):
            return
        import matplotlib.pyplot as plt

        name1, name2 = self._get_truncated_names(name, master_name)
        fig, ax = plt.subplots()
        ax.imshow(diagnostic)
        ax.set_axis_off()
        if n_matches is not None:
            ax.set_title(f"{n_matches} good matches", fontsize=8)
        fig.suptitle(f"Alignment: {name1} (left) onto {name2} (right)", fontsize=10)
        self._set_figure_size(fig, diagnostic.shape[:2])
        fig.name = f"qc_alignment-{pathlib.Path(name).stem}"
        self.figures.append(fig)

    def save_figures(self) -> List[pathlib.Path]:
        saved = []
        if len(self.figures) and (self.qc_out_dir is not None):
            import matplotlib.pyplot as plt

            qc_dir = pathlib.Path(self.qc_out_dir)
            qc_dir.mkdir(parents=True, exist_ok=True)
            for fig in self.figures:
                out = qc_dir / f"{fig.name}.jpg"
                fig.savefig(out, dpi=144, bbox_inches="tight")
                plt.close(fig)
                saved.append(out)
            self.figures = []
        return saved

    @staticmethod
    def _get_truncated_names(name1, name2):
        name1 = str(name1)
        name2 = str(name2)
        if len(name1) > 23:
            name1 = name1[:20] + "..."
        if len(name2) > 23:
            name2 = name2[:20] + "..."
        return name1, name2

    @staticmethod
    def _set_figure_size(fig, shape):
        im_h, im_w = shape
        if im_w < 500:
            im_h *= 500 / im_w
            im_w = 500
        _size_factor = np.divide([im_h, im_w], 2500).max()
        if _size_factor > 1:
            im_h, im_w = np.divide([im_h, im_w], _size_factor)
        fig.set_size_inches(im_w / 144, (im_h + 50) / 144)
        fig.tight_layout(pad=1.5)
