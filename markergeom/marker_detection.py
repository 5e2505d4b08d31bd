"""
Marker Detection Module

Finds the bright calibration marker (ruler) in a photograph.
Thresholds the image, cleans the candidate mask with morphology, labels
components and keeps the one whose oriented bounding box best combines
fill density with the preferred aspect ratio.
"""

import logging
import math
import cv2
import numpy as np
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Tuple

from .components import component_coordinates, label_components
from .config import PipelineConfig, merge_config
from .image_utils import as_rgb_array
from .morphology import closing, opening
from .obb import fit_oriented_box

logger = logging.getLogger(__name__)


class Region(NamedTuple):
    """Inclusive axis-aligned search rectangle in pixel coordinates."""
    row_min: int
    row_max: int
    col_min: int
    col_max: int

    def to_mask(self, shape: Tuple[int, int]) -> np.ndarray:
        """Boolean mask of the region, clamped to an image of the given shape."""
        h, w = shape[:2]
        r0 = max(0, min(int(self.row_min), h - 1))
        r1 = max(0, min(int(self.row_max), h - 1))
        c0 = max(0, min(int(self.col_min), w - 1))
        c1 = max(0, min(int(self.col_max), w - 1))
        mask = np.zeros((h, w), dtype=bool)
        mask[r0:r1 + 1, c0:c1 + 1] = True
        return mask


@dataclass(frozen=True, eq=False)
class Marker:
    """A detected calibration marker."""

    centroid: Tuple[float, float]
    corners: Tuple[float, ...]
    mask: np.ndarray
    pixel_count: int
    rotation_angle: float
    aspect_ratio: float
    density: float
    score: float = 0.0

    def corner_points(self) -> np.ndarray:
        """Corners as a (4, 2) array of (row, col)."""
        return np.asarray(self.corners, dtype=np.float64).reshape(4, 2)


@dataclass(frozen=True, eq=False)
class DetectionResult:
    """Outcome of a detection call. marker is None when nothing qualified."""

    marker: Optional[Marker]
    num_components: int
    candidate_mask: np.ndarray
    area_percentage: float
    message: str

    @property
    def found(self) -> bool:
        return self.marker is not None


def rotated_rect_mask(shape: Tuple[int, int],
                      corner_a: Tuple[float, float],
                      corner_b: Tuple[float, float],
                      angle_degrees: float) -> np.ndarray:
    """
    Mask of a rectangle rotated about its centre.

    The rectangle is spanned by two opposite (row, col) corners and rotated
    by angle_degrees (clockwise on screen). Only pixels within the clamped
    axis-aligned bounds of the two corners are tested, so corners of the
    rotated shape that fall outside those bounds are cut off.

    Args:
        shape: (H, W) of the image
        corner_a, corner_b: Opposite corners (row, col)
        angle_degrees: Rotation of the rectangle

    Returns:
        Boolean mask of shape (H, W)
    """
    h, w = shape[:2]
    row_lo, row_hi = sorted((float(corner_a[0]), float(corner_b[0])))
    col_lo, col_hi = sorted((float(corner_a[1]), float(corner_b[1])))
    center_r = (row_lo + row_hi) / 2
    center_c = (col_lo + col_hi) / 2

    mask = np.zeros((h, w), dtype=bool)
    r0, r1 = max(0, int(math.floor(row_lo))), min(h - 1, int(math.ceil(row_hi)))
    c0, c1 = max(0, int(math.floor(col_lo))), min(w - 1, int(math.ceil(col_hi)))
    if r0 > r1 or c0 > c1:
        return mask

    rows, cols = np.mgrid[r0:r1 + 1, c0:c1 + 1].astype(np.float64)
    dr = rows - center_r
    dc = cols - center_c

    # Undo the rotation, then test against the unrotated rectangle
    theta = math.radians(angle_degrees)
    cos_t, sin_t = math.cos(theta), math.sin(theta)
    local_c = dc * cos_t + dr * sin_t
    local_r = -dc * sin_t + dr * cos_t

    half_h = (row_hi - row_lo) / 2
    half_w = (col_hi - col_lo) / 2
    mask[r0:r1 + 1, c0:c1 + 1] = (np.abs(local_r) <= half_h) & (np.abs(local_c) <= half_w)
    return mask


class MarkerDetector:
    """
    Detects the best-scoring bright marker in an RGB image.

    PIXEL_PADDING = 0.5 measures pixels as unit cells; set it to 0 to score
    components on their raw min/max pixel-centre extents instead.
    """

    def __init__(self, config: dict = None):
        """
        Initialize marker detector.

        Args:
            config: Optional overrides for PipelineConfig.MARKER_DETECTION
        """
        self.config = merge_config(PipelineConfig.MARKER_DETECTION, config)
        self.threshold = float(self.config['THRESHOLD'])
        self.threshold_upper = float(self.config['THRESHOLD_UPPER'])
        self.min_area = int(self.config['MIN_COMPONENT_AREA'])
        self.preferred_aspect = float(self.config['PREFERRED_ASPECT_RATIO'])
        self.aspect_weight = float(self.config['ASPECT_RATIO_WEIGHT'])
        self.kernel_size = int(self.config['KERNEL_SIZE'])
        self.pixel_padding = float(self.config['PIXEL_PADDING'])
        self.adaptive = bool(self.config['ADAPTIVE'])
        self.adaptive_window = self._odd_window(int(self.config['ADAPTIVE_WINDOW']))
        self.adaptive_offset = float(self.config['ADAPTIVE_OFFSET'])
        self._validate()

    def _validate(self):
        if not 0.0 <= self.threshold <= 1.0 or not 0.0 <= self.threshold_upper <= 1.0:
            raise ValueError("Thresholds must be within [0, 1]")
        if self.threshold > self.threshold_upper:
            raise ValueError("THRESHOLD must not exceed THRESHOLD_UPPER")
        if self.min_area < 1:
            raise ValueError("MIN_COMPONENT_AREA must be a positive pixel count")
        if self.preferred_aspect < 1.0:
            raise ValueError("PREFERRED_ASPECT_RATIO must be >= 1.0")
        if not 0.0 <= self.aspect_weight <= 1.0:
            raise ValueError("ASPECT_RATIO_WEIGHT must be within [0, 1]")
        if not 0 <= self.kernel_size <= self.config['MAX_KERNEL_SIZE']:
            raise ValueError(f"KERNEL_SIZE must be within 0-{self.config['MAX_KERNEL_SIZE']}")

    @staticmethod
    def _odd_window(window: int) -> int:
        fixed = max(3, window)
        if fixed % 2 == 0:
            fixed += 1
        if fixed != window:
            logger.warning("Adaptive window %d adjusted to %d (odd, >= 3)", window, fixed)
        return fixed

    def build_candidate_mask(self, rgb: np.ndarray) -> np.ndarray:
        """
        Threshold an RGB image into candidate marker pixels.

        Fixed mode: every channel within [THRESHOLD, THRESHOLD_UPPER].
        Adaptive mode: the channel mean must exceed its local box mean minus
        ADAPTIVE_OFFSET, and every channel must stay <= THRESHOLD_UPPER.
        An upper bound of 1.0 or more means no upper bound, so unclamped
        values above 1.0 still qualify.
        """
        if self.threshold_upper >= 1.0:
            below_upper = np.ones(rgb.shape[:2], dtype=bool)
        else:
            below_upper = np.all(rgb <= self.threshold_upper, axis=2)

        if not self.adaptive:
            return np.all(rgb >= self.threshold, axis=2) & below_upper

        intensity = rgb.mean(axis=2)
        local_mean = cv2.boxFilter(intensity, cv2.CV_64F,
                                   (self.adaptive_window, self.adaptive_window),
                                   normalize=True, borderType=cv2.BORDER_REPLICATE)
        return (intensity > local_mean - self.adaptive_offset) & below_upper

    def prepare_mask(self,
                     rgb: np.ndarray,
                     region: Optional[Region] = None,
                     region_mask: Optional[np.ndarray] = None) -> np.ndarray:
        """Candidate mask restricted to the search area and cleaned by morphology."""
        mask = self.build_candidate_mask(rgb)

        if region is not None:
            mask &= Region(*region).to_mask(mask.shape)
        if region_mask is not None:
            mask &= np.asarray(region_mask, dtype=bool)

        if self.kernel_size > 0:
            mask = closing(mask, self.kernel_size)
            mask = opening(mask, self.kernel_size)
        return mask

    def score_component(self, box, pixel_count: int) -> Tuple[float, float, float]:
        """
        Score one component from its oriented bounding box.

        Returns:
            Tuple of (combined_score, density, aspect_ratio)
        """
        density = box.density(pixel_count)
        aspect_ratio = box.aspect_ratio
        aspect_score = math.exp(-abs(aspect_ratio - self.preferred_aspect) / self.preferred_aspect)
        combined = (1.0 - self.aspect_weight) * min(density, 1.0) + self.aspect_weight * aspect_score
        return combined, density, aspect_ratio

    def _measure(self, labels: np.ndarray, label: int, pixel_count: int):
        box = fit_oriented_box(component_coordinates(labels, label), self.pixel_padding)
        score, density, aspect_ratio = self.score_component(box, pixel_count)
        logger.debug("Component %d: area=%d density=%.3f aspect=%.2f score=%.3f",
                     label, pixel_count, density, aspect_ratio, score)
        return box, score, density, aspect_ratio

    @staticmethod
    def _to_marker(labels: np.ndarray, label: int, pixel_count: int, measured) -> Marker:
        box, score, density, aspect_ratio = measured
        return Marker(
            centroid=box.centroid,
            corners=box.corners,
            mask=labels == label,
            pixel_count=int(pixel_count),
            rotation_angle=box.rotation_angle,
            aspect_ratio=aspect_ratio,
            density=density,
            score=score
        )

    def detect(self,
               image,
               region: Optional[Region] = None,
               region_mask: Optional[np.ndarray] = None) -> DetectionResult:
        """
        Main detection method.

        Args:
            image: RGB image (float in [0, 1] or uint8)
            region: Optional (row_min, row_max, col_min, col_max) search rectangle
            region_mask: Optional boolean mask further restricting the search

        Returns:
            DetectionResult; result.marker is None when no component reaches
            MIN_COMPONENT_AREA
        """
        rgb = as_rgb_array(image)
        mask = self.prepare_mask(rgb, region, region_mask)
        labels, num_components, areas = label_components(mask)
        where = "full image" if region is None and region_mask is None else "selected region"

        best = None
        for label in range(1, num_components + 1):
            if areas[label] < self.min_area:
                continue

            measured = self._measure(labels, label, int(areas[label]))

            # Strictly greater: ties keep the lowest label
            if best is None or measured[1] > best[1][1]:
                best = (label, measured)

        if best is None:
            message = (f"No marker found in {where} (found {num_components} components total, "
                       f"try adjusting parameters)")
            logger.info(message)
            return DetectionResult(None, num_components, mask, 0.0, message)

        label, measured = best
        marker = self._to_marker(labels, label, int(areas[label]), measured)
        percentage = 100.0 * marker.pixel_count / (rgb.shape[0] * rgb.shape[1])
        message = (f"Detected best marker: density={marker.density:.3f}, "
                   f"aspect={marker.aspect_ratio:.2f} (from {num_components} total components)")
        logger.info(message)
        return DetectionResult(marker, num_components, mask, percentage, message)

    def detect_all(self,
                   image,
                   region: Optional[Region] = None,
                   region_mask: Optional[np.ndarray] = None,
                   max_markers: Optional[int] = None) -> List[Marker]:
        """
        Every component above the area floor, largest first.

        Args:
            image: RGB image
            region: Optional search rectangle
            region_mask: Optional boolean search mask
            max_markers: Stop after this many qualifying components (label order)

        Returns:
            List of Marker sorted by pixel count (descending)
        """
        rgb = as_rgb_array(image)
        mask = self.prepare_mask(rgb, region, region_mask)
        labels, num_components, areas = label_components(mask)

        markers = []
        for label in range(1, num_components + 1):
            if areas[label] < self.min_area:
                continue
            count = int(areas[label])
            markers.append(self._to_marker(labels, label, count, self._measure(labels, label, count)))
            if max_markers is not None and len(markers) >= max_markers:
                break

        markers.sort(key=lambda m: m.pixel_count, reverse=True)
        logger.debug("detect_all: %d of %d components kept", len(markers), num_components)
        return markers
