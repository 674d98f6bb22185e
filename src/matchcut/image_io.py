"""Loading and encoding of bitmaps as RGBA numpy buffers."""

import logging
import pathlib
from typing import Union

import cv2
import numpy as np

log = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".png", ".jpg", ".jpeg")


def to_rgba(img: np.ndarray) -> np.ndarray:
    """Return a uint8 RGBA copy of a gray, RGB or RGBA buffer."""
    img = np.asarray(img)
    if img.dtype != np.uint8:
        raise ValueError(f"Expected uint8 image, got {img.dtype}")
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    if img.ndim == 3 and img.shape[2] == 1:
        return cv2.cvtColor(img[..., 0], cv2.COLOR_GRAY2RGBA)
    if img.ndim == 3 and img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_RGB2RGBA)
    if img.ndim == 3 and img.shape[2] == 4:
        return img.copy()
    raise ValueError(f"Unsupported image shape {img.shape}")


def to_rgb(img: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(to_rgba(img), cv2.COLOR_RGBA2RGB)


def decode_image(data: bytes) -> np.ndarray:
    """Decode PNG/JPEG bytes into an RGBA buffer."""
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED)
    if img is None or img.size == 0:
        raise ValueError("Could not decode image data.")
    if img.dtype != np.uint8:
        img = cv2.convertScaleAbs(img, alpha=255.0 / max(float(img.max()), 1.0))
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    return cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)


def load_image(path: Union[str, pathlib.Path]) -> np.ndarray:
    path = pathlib.Path(path)
    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise ValueError(f"Unsupported file type: {path.name}")
    log.debug(f"Loading {path}")
    return decode_image(path.read_bytes())


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", cv2.cvtColor(to_rgba(img), cv2.COLOR_RGBA2BGRA))
    if not ok:
        raise ValueError("Could not encode image as PNG.")
    return buf.tobytes()


def save_png(img: np.ndarray, path: Union[str, pathlib.Path]) -> pathlib.Path:
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_png(img))
    return path
