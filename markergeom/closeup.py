"""
Closeup Module

Extracts a de-skewed closeup of a detected marker by resampling the source
image along the marker's oriented bounding box, and rotates images by
arbitrary angles with bilinear interpolation.
"""

import logging
import math
import numpy as np
from typing import Tuple

from .config import PipelineConfig, merge_config
from .image_utils import as_rgb_array, bilinear_sample

logger = logging.getLogger(__name__)

# Slack for floating point noise when sizing rotated canvases
_SIZE_EPS = 1e-9


def rotate_image(image: np.ndarray, angle_degrees: float, fill_value: float = 0.5) -> np.ndarray:
    """
    Rotate an (H, W, C) image about its centre.

    Args:
        image: Input image
        angle_degrees: Rotation angle, positive = clockwise on screen
        fill_value: Value for output pixels not covered by the source

    Returns:
        Rotated image on a canvas large enough to hold all four rotated corners
    """
    img = np.asarray(image, dtype=np.float64)
    if angle_degrees == 0:
        return img.copy()

    h, w = img.shape[:2]
    center_r = (h - 1) / 2.0
    center_c = (w - 1) / 2.0

    theta = math.radians(angle_degrees)
    cos_t, sin_t = math.cos(theta), math.sin(theta)

    # Forward rotation of the corners to size the canvas
    corner_dr = np.array([0.0, 0.0, h - 1.0, h - 1.0]) - center_r
    corner_dc = np.array([0.0, w - 1.0, 0.0, w - 1.0]) - center_c
    rot_r = corner_dr * cos_t + corner_dc * sin_t
    rot_c = -corner_dr * sin_t + corner_dc * cos_t

    new_h = int(math.ceil(np.ptp(rot_r) - _SIZE_EPS)) + 1
    new_w = int(math.ceil(np.ptp(rot_c) - _SIZE_EPS)) + 1
    new_center_r = (new_h - 1) / 2.0
    new_center_c = (new_w - 1) / 2.0

    logger.debug("Rotate: %dx%d by %.2f deg -> %dx%d", h, w, angle_degrees, new_h, new_w)

    # Inverse mapping: output pixel -> source position
    out_r, out_c = np.mgrid[0:new_h, 0:new_w].astype(np.float64)
    dr = out_r - new_center_r
    dc = out_c - new_center_c
    src_r = dr * cos_t - dc * sin_t + center_r
    src_c = dr * sin_t + dc * cos_t + center_c

    return bilinear_sample(img, src_r, src_c, fill_value)


def obb_basis(corners) -> Tuple[float, float, np.ndarray, np.ndarray]:
    """
    Width/height and unit basis vectors of an oriented box.

    Args:
        corners: 8 values [r1,c1,r2,c2,r3,c3,r4,c4]

    Returns:
        Tuple of (width, height, width_vec, height_vec); width is the longer
        edge. Basis vectors come straight from corner differences.
    """
    c1, c2, c3, _ = np.asarray(corners, dtype=np.float64).reshape(4, 2)
    edge_12 = float(np.linalg.norm(c2 - c1))
    edge_23 = float(np.linalg.norm(c3 - c2))

    if edge_12 >= edge_23:
        width_vec = (c2 - c1) / edge_12 if edge_12 > 0 else np.array([0.0, 1.0])
        height_vec = (c3 - c2) / edge_23 if edge_23 > 0 else np.array([width_vec[1], -width_vec[0]])
        return edge_12, edge_23, width_vec, height_vec

    # c2 -> c1 keeps the output unmirrored when the long side is edge 2-3
    width_vec = (c3 - c2) / edge_23
    height_vec = (c1 - c2) / edge_12 if edge_12 > 0 else np.array([-width_vec[1], width_vec[0]])
    return edge_23, edge_12, width_vec, height_vec


class CloseupRectifier:
    """Builds rectified closeup images of detected markers."""

    def __init__(self, config: dict = None):
        """
        Initialize rectifier.

        Args:
            config: Optional overrides for PipelineConfig.CLOSEUP
        """
        self.config = merge_config(PipelineConfig.CLOSEUP, config)
        self.placeholder = float(self.config['PLACEHOLDER'])
        self.placeholder_size = int(self.config['PLACEHOLDER_SIZE'])

    def placeholder_image(self) -> np.ndarray:
        """Neutral gray image returned when there is nothing to show."""
        size = self.placeholder_size
        return np.full((size, size, 3), self.placeholder, dtype=np.float64)

    def extract(self, image, marker, rotation_degrees: float = None) -> np.ndarray:
        """
        Resample the marker into an axis-aligned canvas.

        Args:
            image: Source RGB image
            marker: Detected Marker (centroid, corners and mask are used)
            rotation_degrees: Extra clockwise rotation relative to the
                detected angle; 0 shows the marker as detected

        Returns:
            Float RGB closeup; pixels outside the image or outside the
            marker mask are neutral gray
        """
        if rotation_degrees is None:
            rotation_degrees = float(self.config['ROTATION_DEGREES'])

        if marker is None:
            return self.placeholder_image()

        if len(marker.corners) != 8:
            logger.warning("Invalid corner data (%d values), returning placeholder", len(marker.corners))
            return self.placeholder_image()

        mask = np.asarray(marker.mask, dtype=bool)
        if not mask.any():
            logger.warning("Empty marker mask, returning placeholder")
            return self.placeholder_image()

        rgb = as_rgb_array(image)
        h, w = rgb.shape[:2]

        width, height, width_vec, height_vec = obb_basis(marker.corners)
        out_h = max(1, int(round(height)))
        out_w = max(1, int(round(width)))

        out_r, out_c = np.mgrid[0:out_h, 0:out_w].astype(np.float64)
        local_r = out_r - (out_h - 1) / 2.0
        local_c = out_c - (out_w - 1) / 2.0

        centroid_r, centroid_c = marker.centroid
        src_r = centroid_r + local_c * width_vec[0] + local_r * height_vec[0]
        src_c = centroid_c + local_c * width_vec[1] + local_r * height_vec[1]

        closeup = bilinear_sample(rgb, src_r, src_c, self.placeholder)

        # Gray out samples whose nearest pixel is not part of the marker
        near_r = np.clip(np.rint(src_r), 0, h - 1).astype(np.intp)
        near_c = np.clip(np.rint(src_c), 0, w - 1).astype(np.intp)
        closeup[~mask[near_r, near_c]] = self.placeholder

        logger.debug("Closeup canvas %dx%d, %.1f%% marker pixels", out_h, out_w,
                     100.0 * mask[near_r, near_c].mean())

        if rotation_degrees != 0:
            closeup = rotate_image(closeup, rotation_degrees, self.placeholder)

        return closeup


def extract_closeup(image, marker, rotation_degrees: float = 0.0) -> np.ndarray:
    """Rectified closeup of a marker using the default configuration."""
    return CloseupRectifier().extract(image, marker, rotation_degrees)
