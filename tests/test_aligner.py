import logging
import math

import cv2
import numpy as np
import pytest

from conftest import corners, make_logo, rotation_matrix, warp_affine
from matchcut.align import estimator
from matchcut.align.aligner import ImageAligner, QcPlotter
from matchcut.align.transforms import Transform
from matchcut.errors import FeatureExtractionEmpty
from matchcut.models import AlignmentSettings


class _ExplodingExtractor:
    def extract(self, img, arena=None):
        raise AssertionError("extractor must not run for the master")


def _angle(mx):
    return math.degrees(math.atan2(mx[1, 0], mx[0, 0]))


@pytest.mark.parametrize("perspective", [False, True])
def test_master_is_identity_without_matching(perspective):
    img = np.zeros((10, 20, 4), dtype=np.uint8)
    result = ImageAligner(extractor=_ExplodingExtractor()).align(
        img, img, perspective=perspective, is_master=True
    )
    assert result.transform == Transform.identity(perspective)
    assert result.strategy == "identity"
    assert result.diagnostic.shape == (1, 1, 4)


@pytest.mark.parametrize("refine", [True, False])
def test_recovers_rotation_and_shift(logo, refine):
    mx = rotation_matrix(logo, 15, tx=5)
    target = warp_affine(logo, mx)

    result = ImageAligner().align(logo, target, refine=refine)

    assert result.transform.is_affine
    assert result.strategy == ("refined-affine" if refine else "affine")
    expected = cv2.invertAffineTransform(mx)
    assert abs(_angle(result.transform.matrix) - _angle(expected)) < 1.0

    pts = corners(logo)
    moved = Transform(mx).apply(pts)
    np.testing.assert_allclose(result.transform.apply(moved), pts, atol=2.0)


def test_diagnostic_places_target_left_of_reference(logo):
    target = warp_affine(logo, rotation_matrix(logo, 5))
    result = ImageAligner().align(logo, target)
    height, width = logo.shape[:2]
    assert result.diagnostic.shape == (height, 2 * width, 4)
    assert len(result.matches) >= 10
    assert len(result.target_keypoints) > 0


HOMOGRAPHY = np.array([[1.0, 0.05, 3.0], [0.02, 1.0, -4.0], [1e-4, 5e-5, 1.0]])


def _tilted(img):
    height, width = img.shape[:2]
    return cv2.warpPerspective(
        img, HOMOGRAPHY, (width, height), borderMode=cv2.BORDER_CONSTANT,
        borderValue=(235, 235, 235, 255),
    )


def _assert_undoes_tilt(result, img):
    pts = corners(img, inset=100)
    moved = Transform(HOMOGRAPHY).apply(pts)
    np.testing.assert_allclose(result.transform.apply(moved), pts, atol=3.0)


def test_recovers_homography_coarse_to_fine(logo):
    result = ImageAligner().align(logo, _tilted(logo), perspective=True)

    assert not result.transform.is_affine
    assert result.strategy == "coarse-to-fine-homography"
    _assert_undoes_tilt(result, logo)


def test_failed_coarse_affine_falls_back_to_direct_homography(
    logo, monkeypatch, caplog
):
    monkeypatch.setattr(estimator, "estimate_affine", lambda src, dst: None)

    with caplog.at_level(logging.WARNING, logger="matchcut.align.estimator"):
        result = ImageAligner().align(logo, _tilted(logo), perspective=True)

    assert result.strategy == "direct-homography"
    assert "Coarse affine failed" in caplog.text
    _assert_undoes_tilt(result, logo)


def test_failed_refinement_homography_falls_back_to_direct_homography(
    logo, monkeypatch, caplog
):
    fit = estimator.estimate_homography
    calls = []

    def refinement_fails(src, dst):
        calls.append(len(src))
        if len(calls) == 1:
            return None
        return fit(src, dst)

    monkeypatch.setattr(estimator, "estimate_homography", refinement_fails)

    with caplog.at_level(logging.WARNING, logger="matchcut.align.estimator"):
        result = ImageAligner().align(logo, _tilted(logo), perspective=True)

    assert result.strategy == "direct-homography"
    assert len(calls) == 2
    assert "Fine-tuning homography failed" in caplog.text
    _assert_undoes_tilt(result, logo)


def test_align_with_uses_settings(logo):
    target = warp_affine(logo, rotation_matrix(logo, -8, ty=4))
    settings = AlignmentSettings(greedy=True, refine=False, perspective=True)
    result = ImageAligner().align_with(logo, target, settings)
    assert not result.transform.is_affine


def test_unrelated_images_fail_to_align(blank):
    logo = make_logo(300, 400, seed=11)
    with pytest.raises(FeatureExtractionEmpty):
        ImageAligner().align(logo, blank)
    with pytest.raises(FeatureExtractionEmpty):
        ImageAligner().align(blank, logo)


def test_qc_plotter_writes_figures(tmp_path, logo):
    import matplotlib

    matplotlib.use("Agg")
    target = warp_affine(logo, rotation_matrix(logo, 3))
    result = ImageAligner().align(logo, target)

    plotter = QcPlotter(tmp_path / "qc")
    plotter.plot_matches("a-very-long-target-file-name.png", "master.png", result.diagnostic, 42)
    plotter.plot_matches("master.png", "master.png", np.zeros((1, 1, 4), dtype=np.uint8))
    assert plotter.figures[0].axes[0].get_title() == "42 good matches"
    saved = plotter.save_figures()

    assert [pp.name for pp in saved] == ["qc_alignment-a-very-long-target-file-name.jpg"]
    assert saved[0].exists()
    assert plotter.figures == []


def test_qc_plotter_without_directory_is_noop(logo):
    plotter = QcPlotter(None)
    plotter.plot_matches("a.png", "b.png", logo)
    assert plotter.save_figures() == []
