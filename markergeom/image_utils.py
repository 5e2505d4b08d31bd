"""
Image access and sampling helpers.

All geometry in this package works on float RGB arrays of shape (H, W, 3)
with values in [0, 1] and 0-based (row, col) coordinates.
"""

import cv2
import numpy as np
from pathlib import Path
from typing import Union

# Tolerance for treating a sample position as lying on the image border
_BORDER_EPS = 1e-6


def as_rgb_array(image) -> np.ndarray:
    """
    Return image data as a float64 (H, W, 3) array.

    Args:
        image: ndarray, or an object exposing `data` (attribute or accessor)
            that returns one. uint8 data is scaled to [0, 1].

    Returns:
        Float RGB array (a new array, the input is never modified)
    """
    if isinstance(image, np.ndarray):
        data = image
    else:
        data = getattr(image, 'data', image)
        if callable(data):
            data = data()
    arr = np.asarray(data)

    if arr.ndim != 3 or arr.shape[2] < 3:
        raise ValueError(f"Expected an (H, W, 3) RGB image, got shape {arr.shape}")

    if arr.dtype == np.uint8:
        return arr[:, :, :3].astype(np.float64) / 255.0
    return arr[:, :, :3].astype(np.float64, copy=True)


def load_rgb(path: Union[str, Path]) -> np.ndarray:
    """Read an image file into a float RGB array, or None if unreadable."""
    bgr = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if bgr is None:
        return None
    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    return rgb.astype(np.float64) / 255.0


def save_rgb(path: Union[str, Path], image: np.ndarray) -> bool:
    """Write a float RGB array (values in [0, 1]) to disk."""
    rgb = np.clip(np.rint(np.asarray(image) * 255.0), 0, 255).astype(np.uint8)
    return cv2.imwrite(str(path), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))


def save_mask(path: Union[str, Path], mask: np.ndarray) -> bool:
    """Write a boolean mask as an 8-bit PNG (0 / 255)."""
    return cv2.imwrite(str(path), np.asarray(mask, dtype=np.uint8) * 255)


def bilinear_sample(image: np.ndarray,
                    rows: np.ndarray,
                    cols: np.ndarray,
                    fill_value: float = 0.5) -> np.ndarray:
    """
    Sample an (H, W, C) image at real-valued positions.

    Positions within a tiny tolerance of the border are clamped onto it;
    positions further outside receive fill_value.

    Args:
        image: Source image (H, W, C)
        rows, cols: Arrays of equal shape with sample coordinates
        fill_value: Value for samples outside the image

    Returns:
        Array of shape rows.shape + (C,)
    """
    h, w = image.shape[:2]
    rows = np.asarray(rows, dtype=np.float64)
    cols = np.asarray(cols, dtype=np.float64)

    inside = ((rows >= -_BORDER_EPS) & (rows <= h - 1 + _BORDER_EPS) &
              (cols >= -_BORDER_EPS) & (cols <= w - 1 + _BORDER_EPS))

    r = np.clip(rows, 0, h - 1)
    c = np.clip(cols, 0, w - 1)
    r0 = np.floor(r).astype(np.intp)
    c0 = np.floor(c).astype(np.intp)
    r1 = np.minimum(r0 + 1, h - 1)
    c1 = np.minimum(c0 + 1, w - 1)
    fr = (r - r0)[..., None]
    fc = (c - c0)[..., None]

    top = (1 - fc) * image[r0, c0] + fc * image[r0, c1]
    bottom = (1 - fc) * image[r1, c0] + fc * image[r1, c1]
    sampled = (1 - fr) * top + fr * bottom

    return np.where(inside[..., None], sampled, fill_value)
