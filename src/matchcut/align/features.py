"""AKAZE keypoints on contrast-equalized grayscale images."""

import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..resources import Arena

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Keypoint:
    x: float
    y: float
    size: float = 1.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @classmethod
    def from_cv(cls, kp: cv2.KeyPoint) -> "Keypoint":
        return cls(
            x=float(kp.pt[0]),
            y=float(kp.pt[1]),
            size=float(kp.size),
            angle=float(kp.angle),
            response=float(kp.response),
            octave=int(kp.octave),
        )

    def to_cv(self) -> cv2.KeyPoint:
        return cv2.KeyPoint(
            self.x, self.y, self.size, self.angle, self.response, self.octave
        )


class FeatureSet:
    """Keypoints of one image and their row-aligned binary descriptors."""

    def __init__(self, keypoints: Sequence[Keypoint], descriptors: np.ndarray):
        keypoints = tuple(keypoints)
        if descriptors is None:
            descriptors = np.zeros((0, 0), dtype=np.uint8)
        if len(keypoints) != descriptors.shape[0]:
            raise ValueError(
                f"{len(keypoints)} keypoints but {descriptors.shape[0]} descriptor rows"
            )
        self.keypoints: Tuple[Keypoint, ...] = keypoints
        self.descriptors = descriptors

    def __len__(self):
        return len(self.keypoints)

    @property
    def empty(self) -> bool:
        return len(self.keypoints) == 0

    def points(self, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        """(N, 2) float32 coordinates, optionally for a subset of indices."""
        kps = self.keypoints
        if indices is not None:
            kps = [self.keypoints[ii] for ii in indices]
        if not kps:
            return np.zeros((0, 2), dtype=np.float32)
        return np.array([(kp.x, kp.y) for kp in kps], dtype=np.float32)

    def cv_keypoints(self) -> List[cv2.KeyPoint]:
        return [kp.to_cv() for kp in self.keypoints]

    def release(self):
        # keypoints and descriptors go together
        self.keypoints = ()
        self.descriptors = np.zeros((0, 0), dtype=np.uint8)


def create_detector():
    """AKAZE detector from the main cv2 namespace (absent in OpenCV 5)."""
    factory = getattr(cv2, "AKAZE_create", None)
    if factory is None:
        raise RuntimeError(
            f"OpenCV {cv2.__version__} has no AKAZE detector, install opencv-python<5"
        )
    return factory()


def to_gray(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img.copy()
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_RGBA2GRAY)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_RGB2GRAY)
    if img.shape[2] == 1:
        return img[..., 0].copy()
    raise ValueError(f"Unsupported image shape {img.shape}")


class FeatureExtractor:
    """Detects AKAZE keypoints after CLAHE lighting normalization.

    A fresh detector and equalizer are created on every call so concurrent
    alignments never share OpenCV state.
    """

    def __init__(self, clip_limit: float = 2.0, tile_grid_size: int = 8):
        self.clip_limit = clip_limit
        self.tile_grid_size = tile_grid_size

    def equalize(self, gray: np.ndarray) -> np.ndarray:
        clahe = cv2.createCLAHE(
            clipLimit=self.clip_limit,
            tileGridSize=(self.tile_grid_size, self.tile_grid_size),
        )
        return clahe.apply(gray)

    def extract(self, img: np.ndarray, arena: Optional[Arena] = None) -> FeatureSet:
        """Zero keypoints is a valid outcome; callers decide if it is fatal."""
        with Arena("extract") as local:
            gray = local.adopt(to_gray(img))
            if gray.dtype != np.uint8:
                raise ValueError(f"Expected uint8 image, got {gray.dtype}")
            equalized = local.adopt(self.equalize(gray))
            akaze = create_detector()
            cv_kps, descriptors = akaze.detectAndCompute(equalized, None)

        keypoints = [Keypoint.from_cv(kp) for kp in (cv_kps or ())]
        if descriptors is None or not keypoints:
            keypoints, descriptors = [], None
        features = FeatureSet(keypoints, descriptors)
        log.debug(f"{len(features):6} keypoints on {img.shape[1]}x{img.shape[0]} image")
        if arena is not None:
            arena.adopt(features)
        return features
