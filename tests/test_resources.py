import pytest

from conftest import make_logo, rotation_matrix, warp_affine
from matchcut import resources
from matchcut.align import estimator
from matchcut.align.aligner import ImageAligner
from matchcut.align.matcher import CorrespondenceMatcher
from matchcut.errors import AlignmentError, InsufficientMatches, TransformEstimationFailed
from matchcut.models import MatchConfig
from matchcut.refiner import GoldenTemplateRefiner
from matchcut.resources import Arena, outstanding


class _Tracked:
    def __init__(self):
        self.released = 0

    def release(self):
        self.released += 1


def test_arena_releases_on_exception():
    before = outstanding()
    owned, kept = _Tracked(), _Tracked()
    with pytest.raises(RuntimeError):
        with Arena("boom") as arena:
            arena.adopt(owned)
            arena.adopt(kept)
            arena.adopt([1, 2, 3])
            assert outstanding() == before + 3
            arena.detach(kept)
            raise RuntimeError("boom")
    assert owned.released == 1
    assert kept.released == 0
    assert outstanding() == before


def test_closed_arena_refuses_new_objects():
    arena = Arena()
    arena.close()
    arena.close()
    with pytest.raises(RuntimeError):
        arena.adopt(object())


def test_detach_unknown_object_is_noop():
    before = outstanding()
    with Arena() as arena:
        arena.adopt(_Tracked())
        arena.detach(_Tracked())
        assert len(arena) == 1
    assert outstanding() == before


def test_no_leaks_across_mixed_outcomes(monkeypatch, blank):
    logo = make_logo(300, 400, seed=5)
    aligner = ImageAligner()
    refiner = GoldenTemplateRefiner(aligner)
    before = resources.outstanding()

    for angle in (4, -6):
        target = warp_affine(logo, rotation_matrix(logo, angle, tx=3))
        aligner.align(logo, target)
        aligner.align(logo, target, perspective=True)
        refiner.refine(target, logo)

    with pytest.raises(AlignmentError):
        aligner.align(logo, blank)
    refiner.refine(blank, logo)

    strict = ImageAligner(
        matcher_factory=lambda config: CorrespondenceMatcher(MatchConfig(0.75, 10**6))
    )
    with pytest.raises(InsufficientMatches):
        strict.align(logo, warp_affine(logo, rotation_matrix(logo, 1)))

    monkeypatch.setattr(estimator, "estimate_affine", lambda src, dst: None)
    with pytest.raises(TransformEstimationFailed):
        aligner.align(logo, warp_affine(logo, rotation_matrix(logo, 2)))

    assert resources.outstanding() == before
