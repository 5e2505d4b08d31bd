"""
Morphology Module

Binary dilation, erosion, closing and opening with a square structuring
element of configurable radius. A radius k gives a (2k+1)x(2k+1) kernel.

Border handling: out-of-bounds neighbours are ignored by dilation and count
as background for erosion, so erosion always shrinks at the image border.
"""

import cv2
import numpy as np


def _square_kernel(k: int) -> np.ndarray:
    return np.ones((2 * k + 1, 2 * k + 1), np.uint8)


def dilate(mask: np.ndarray, k: int) -> np.ndarray:
    """Expand true regions by k pixels (Chebyshev distance)."""
    mask = np.asarray(mask, dtype=bool)
    if k <= 0:
        return mask.copy()
    out = cv2.dilate(mask.astype(np.uint8), _square_kernel(k),
                     borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return out.astype(bool)


def erode(mask: np.ndarray, k: int) -> np.ndarray:
    """Keep a pixel only if its whole (2k+1)x(2k+1) neighbourhood is true."""
    mask = np.asarray(mask, dtype=bool)
    if k <= 0:
        return mask.copy()
    # borderValue must be explicit: OpenCV's default erosion border is "max"
    out = cv2.erode(mask.astype(np.uint8), _square_kernel(k),
                    borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return out.astype(bool)


def closing(mask: np.ndarray, k: int) -> np.ndarray:
    """
    Dilate then erode. Fills small gaps and connects nearby regions.

    Args:
        mask: Boolean mask
        k: Kernel radius (0 = no operation)

    Returns:
        New boolean mask
    """
    if k <= 0:
        return np.array(mask, dtype=bool)
    return erode(dilate(mask, k), k)


def opening(mask: np.ndarray, k: int) -> np.ndarray:
    """
    Erode then dilate. Removes speckles and thin protrusions.

    Args:
        mask: Boolean mask
        k: Kernel radius (0 = no operation)

    Returns:
        New boolean mask
    """
    if k <= 0:
        return np.array(mask, dtype=bool)
    return dilate(erode(mask, k), k)
