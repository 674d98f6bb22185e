import cv2
import numpy as np
import pytest

from matchcut.align.features import FeatureExtractor, Keypoint, create_detector, to_gray
from matchcut.resources import Arena


def test_blank_image_has_no_keypoints(blank):
    features = FeatureExtractor().extract(blank)
    assert features.empty
    assert len(features) == 0
    assert features.points().shape == (0, 2)


def test_textured_image_has_row_aligned_descriptors(small_logo):
    features = FeatureExtractor().extract(small_logo)
    assert len(features) > 50
    assert features.descriptors.shape[0] == len(features.keypoints)
    assert features.descriptors.dtype == np.uint8

    pts = features.points()
    height, width = small_logo.shape[:2]
    assert pts.shape == (len(features), 2)
    assert np.all((pts[:, 0] >= 0) & (pts[:, 0] < width))
    assert np.all((pts[:, 1] >= 0) & (pts[:, 1] < height))


def test_extract_is_deterministic(small_logo):
    extractor = FeatureExtractor()
    first = extractor.extract(small_logo)
    second = extractor.extract(small_logo.copy())
    assert first.keypoints == second.keypoints
    np.testing.assert_array_equal(first.descriptors, second.descriptors)


def test_arena_owns_and_releases_features(small_logo):
    with Arena("test") as arena:
        features = FeatureExtractor().extract(small_logo, arena=arena)
        assert len(arena) == 1
        assert not features.empty
    assert features.empty
    assert features.descriptors.shape[0] == 0


def test_keypoint_round_trips_through_opencv():
    kp = Keypoint(x=1.5, y=2.5, size=7.0, angle=30.0, response=0.01, octave=2)
    assert Keypoint.from_cv(kp.to_cv()) == Keypoint(
        x=1.5, y=2.5, size=7.0, angle=30.0, response=np.float32(0.01).item(), octave=2
    )


def test_to_gray_accepts_all_layouts(small_logo):
    assert to_gray(small_logo).shape == small_logo.shape[:2]
    assert to_gray(small_logo[..., :3]).shape == small_logo.shape[:2]
    assert to_gray(small_logo[..., :1]).shape == small_logo.shape[:2]


def test_missing_akaze_is_reported(monkeypatch, small_logo):
    monkeypatch.delattr(cv2, "AKAZE_create")
    with pytest.raises(RuntimeError, match="no AKAZE detector"):
        FeatureExtractor().extract(small_logo)


def test_detector_is_akaze():
    assert isinstance(create_detector(), cv2.AKAZE)
