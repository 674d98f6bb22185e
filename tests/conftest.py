import cv2
import numpy as np
import pytest


def make_logo(width=400, height=700, seed=0):
    """Textured RGBA test card with plenty of corners for AKAZE."""
    rng = np.random.default_rng(seed)
    img = np.full((height, width, 3), 235, dtype=np.uint8)
    for _ in range(90):
        color = tuple(int(c) for c in rng.integers(0, 255, 3))
        x, y = int(rng.integers(0, width)), int(rng.integers(0, height))
        kind = int(rng.integers(0, 3))
        if kind == 0:
            w, h = int(rng.integers(10, 60)), int(rng.integers(10, 60))
            cv2.rectangle(img, (x, y), (x + w, y + h), color, -1)
        elif kind == 1:
            cv2.circle(img, (x, y), int(rng.integers(5, 30)), color, -1)
        else:
            end = (int(rng.integers(0, width)), int(rng.integers(0, height)))
            cv2.line(img, (x, y), end, color, int(rng.integers(1, 4)))
    cv2.putText(
        img, "LOGO", (width // 8, height // 2), cv2.FONT_HERSHEY_SIMPLEX, 2.0,
        (20, 20, 120), 5,
    )
    return cv2.cvtColor(img, cv2.COLOR_RGB2RGBA)


def rotation_matrix(img, angle_deg, tx=0.0, ty=0.0, scale=1.0):
    height, width = img.shape[:2]
    mx = cv2.getRotationMatrix2D((width / 2, height / 2), angle_deg, scale)
    mx[0, 2] += tx
    mx[1, 2] += ty
    return mx


def warp_affine(img, mx):
    height, width = img.shape[:2]
    return cv2.warpAffine(
        img, mx, (width, height), flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT, borderValue=(235, 235, 235, 255),
    )


def corners(img, inset=60):
    height, width = img.shape[:2]
    return np.array(
        [
            [inset, inset],
            [width - inset, inset],
            [width - inset, height - inset],
            [inset, height - inset],
            [width / 2, height / 2],
        ],
        dtype=np.float64,
    )


@pytest.fixture(scope="session")
def logo():
    return make_logo()


@pytest.fixture(scope="session")
def small_logo():
    return make_logo(300, 400, seed=3)


@pytest.fixture
def blank():
    return np.full((400, 300, 4), 200, dtype=np.uint8)
