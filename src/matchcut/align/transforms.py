"""2x3 affine and 3x3 projective transforms."""

import enum
from typing import Sequence

import numpy as np
import skimage.transform


class TransformKind(str, enum.Enum):
    AFFINE = "affine"
    HOMOGRAPHY = "homography"


class Transform:
    """An immutable affine (2x3) or homography (3x3) matrix.

    Matrices map target pixel coordinates into reference pixel coordinates.
    """

    def __init__(self, matrix: np.ndarray):
        matrix = np.array(matrix, dtype=np.float64)
        if matrix.shape == (2, 3):
            self.kind = TransformKind.AFFINE
        elif matrix.shape == (3, 3):
            self.kind = TransformKind.HOMOGRAPHY
        else:
            raise ValueError(f"Transform must be 2x3 or 3x3, got {matrix.shape}")
        matrix.setflags(write=False)
        self.matrix = matrix

    @classmethod
    def identity(cls, perspective: bool = False) -> "Transform":
        if perspective:
            return cls(np.eye(3))
        return cls(np.eye(3)[:2])

    @property
    def is_affine(self) -> bool:
        return self.kind is TransformKind.AFFINE

    def to_homogeneous(self) -> np.ndarray:
        """3x3 form; an affine gets the bottom row [0, 0, 1]."""
        if self.is_affine:
            return np.vstack([self.matrix, [0, 0, 1]])
        return self.matrix.copy()

    def then(self, outer: "Transform") -> "Transform":
        """`outer ∘ self`: apply this transform first, `outer` second."""
        return compose(outer, self)

    def apply(self, points: Sequence[Sequence[float]]) -> np.ndarray:
        """Map (N, 2) xy points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        tform = skimage.transform.ProjectiveTransform(matrix=self.to_homogeneous())
        return tform(points)

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self.matrix.copy()
        return self.matrix.astype(dtype)

    def __eq__(self, other):
        if not isinstance(other, Transform):
            return NotImplemented
        return self.kind == other.kind and np.array_equal(self.matrix, other.matrix)

    def __repr__(self):
        rows = np.array2string(self.matrix, precision=4, suppress_small=True)
        return f"Transform({self.kind.value}, {rows})"


def compose(outer: Transform, inner: Transform) -> Transform:
    """`outer ∘ inner` as a matrix product of the 3x3 embeddings.

    Two affines compose to an affine (top two rows of the product); anything
    involving a homography stays a homography.
    """
    product = outer.to_homogeneous() @ inner.to_homogeneous()
    if outer.is_affine and inner.is_affine:
        return Transform(product[:2])
    return Transform(product)
