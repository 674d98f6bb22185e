"""Golden-template drift correction for already-aligned images."""

import logging
from typing import Optional

import cv2
import numpy as np

from .align.aligner import ImageAligner
from .errors import RefinementSoftFailure
from .image_io import to_rgba
from .resources import Arena

log = logging.getLogger(__name__)


class GoldenTemplateRefiner:
    """Re-aligns a processed image onto an exemplar with a single affine.

    This pass is best effort: any failure returns the input unchanged.
    """

    def __init__(self, aligner: Optional[ImageAligner] = None):
        self.aligner = aligner or ImageAligner()

    def refine(self, img: np.ndarray, template: np.ndarray) -> np.ndarray:
        try:
            return self._refine(img, template)
        except Exception as e:
            log.warning(
                f"Refinement with golden template failed, returning original: {e}",
                exc_info=log.isEnabledFor(logging.DEBUG),
            )
            return img

    def _refine(self, img, template):
        try:
            with Arena("refine") as arena:
                source = arena.adopt(to_rgba(img))
                template = arena.adopt(to_rgba(template))
                result = self.aligner.align(
                    template, source, greedy=False, refine=False, perspective=False
                )
                affine = result.transform
                if not affine.is_affine:
                    raise RefinementSoftFailure(f"Expected an affine, got {affine.kind}")

                height, width = template.shape[:2]
                # nothing is drawn where the source has no data
                canvas = np.zeros((height, width, 4), dtype=np.uint8)
                cv2.warpAffine(
                    source,
                    np.asarray(affine),
                    (width, height),
                    dst=canvas,
                    flags=cv2.INTER_LINEAR,
                    borderMode=cv2.BORDER_TRANSPARENT,
                )
                return canvas
        except RefinementSoftFailure:
            raise
        except Exception as e:
            raise RefinementSoftFailure(str(e)) from e
