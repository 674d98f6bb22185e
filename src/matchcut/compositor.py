"""Warp an aligned target into the reference frame and pad it to a canvas."""

import dataclasses
import logging
import math
from typing import Tuple

import cv2
import numpy as np

from .align.transforms import Transform
from .models import AspectRatio
from .resources import Arena

log = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Padding:
    top: int
    bottom: int
    left: int
    right: int
    width: int
    height: int


def compute_padding(width: int, height: int, aspect_ratio: AspectRatio) -> Padding:
    """Symmetric padding that brings (width, height) to `aspect_ratio`.

    Half pixels round up. The odd pixel, if any, goes to the bottom/right side.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size {width}x{height}")
    target = aspect_ratio.ratio
    if width / height > target:
        final_width = width
        final_height = math.floor(width / target + 0.5)
    else:
        final_height = height
        final_width = math.floor(height * target + 0.5)

    pad_x = final_width - width
    pad_y = final_height - height
    left = pad_x // 2
    top = pad_y // 2
    return Padding(
        top=top,
        bottom=pad_y - top,
        left=left,
        right=pad_x - left,
        width=final_width,
        height=final_height,
    )


def warp_to_reference(
    img: np.ndarray, transform: Transform, size: Tuple[int, int]
) -> np.ndarray:
    """Warp into a (width, height) frame; empty regions repeat the edge color."""
    mx = np.asarray(transform)
    if transform.is_affine:
        return cv2.warpAffine(
            img, mx, size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
        )
    return cv2.warpPerspective(
        img, mx, size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
    )


def pad_to_aspect(img: np.ndarray, aspect_ratio: AspectRatio) -> np.ndarray:
    height, width = img.shape[:2]
    pad = compute_padding(width, height, aspect_ratio)
    if pad.width == width and pad.height == height:
        return img.copy()
    return cv2.copyMakeBorder(
        img, pad.top, pad.bottom, pad.left, pad.right, cv2.BORDER_REFLECT_101
    )


def composite(
    target: np.ndarray,
    transform: Transform,
    reference_shape: Tuple[int, ...],
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT,
) -> np.ndarray:
    """Warp `target` into the reference's pixel size, then pad to the canvas."""
    height, width = reference_shape[:2]
    with Arena("composite") as arena:
        warped = arena.adopt(warp_to_reference(target, transform, (width, height)))
        canvas = pad_to_aspect(warped, aspect_ratio)
    log.debug(
        f"Composited {target.shape[1]}x{target.shape[0]} -> "
        f"{canvas.shape[1]}x{canvas.shape[0]} ({aspect_ratio.value})"
    )
    return canvas
