"""
Connected Components Module

Labelling of boolean masks plus per-region measurements used by the
marker detector and by downstream quality reporting.
"""

import cv2
import numpy as np
from typing import Dict, Tuple

from .image_utils import as_rgb_array

CHANNEL_NAMES = ('red', 'green', 'blue')


def label_components(mask: np.ndarray) -> Tuple[np.ndarray, int, np.ndarray]:
    """
    Label 4-connected components of a boolean mask.

    Returns:
        Tuple of (labels, count, areas)
        - labels: int32 array, 0 = background, 1..count = components
        - count: number of components
        - areas: pixel count per label (index 0 is the background)
    """
    mask_u8 = np.asarray(mask, dtype=np.uint8)
    n_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask_u8, connectivity=4)
    return labels, n_labels - 1, stats[:, cv2.CC_STAT_AREA]


def component_coordinates(labels: np.ndarray, label: int) -> np.ndarray:
    """Return the (N, 2) array of (row, col) pixels carrying a label."""
    rows, cols = np.nonzero(labels == label)
    return np.column_stack([rows, cols])


def extract_contours(mask: np.ndarray) -> np.ndarray:
    """
    Boundary pixels of a mask using 4-connectivity.

    A pixel is on the boundary if it is true and at least one of its
    4-neighbours is false or outside the image.

    Returns:
        (N, 2) array of (row, col) coordinates in row-major order
    """
    mask = np.asarray(mask, dtype=bool)
    cross = cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))
    interior = cv2.erode(mask.astype(np.uint8), cross,
                         borderType=cv2.BORDER_CONSTANT, borderValue=0).astype(bool)
    rows, cols = np.nonzero(mask & ~interior)
    return np.column_stack([rows, cols])


def region_channel_stats(image, mask: np.ndarray) -> Tuple[Dict[str, Dict[str, float]], int]:
    """
    Per-channel statistics of the pixels inside a mask.

    Args:
        image: RGB image
        mask: Boolean mask of the region

    Returns:
        Tuple of (stats, pixel_count) where stats maps 'red'/'green'/'blue'
        to {'mean', 'std', 'skewness'}
    """
    rgb = as_rgb_array(image)
    mask = np.asarray(mask, dtype=bool)
    count = int(mask.sum())

    stats = {}
    for i, name in enumerate(CHANNEL_NAMES):
        if count == 0:
            stats[name] = {'mean': 0.0, 'std': 0.0, 'skewness': 0.0}
            continue

        values = rgb[:, :, i][mask]
        mean = float(values.mean())
        std = float(values.std(ddof=1)) if count > 1 else 0.0

        if count > 2 and std > 0:
            skewness = float(np.mean((values - mean) ** 3) / std ** 3)
        else:
            skewness = 0.0

        stats[name] = {'mean': mean, 'std': std, 'skewness': skewness}

    return stats, count
