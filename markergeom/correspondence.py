"""
Correspondence Module

Detects several calibration markers, assigns them canonical (ideal)
positions and dewarps the photograph with a thin plate spline so that the
detected marker centroids land on those positions.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import PipelineConfig, merge_config
from .image_utils import as_rgb_array
from .marker_detection import Marker, MarkerDetector, Region
from .tps import (DeformationReport, ResidualReport, TPSModel,
                  estimate_deformation_magnitude, fit_tps, residual_error, warp_image)

logger = logging.getLogger(__name__)

CANONICAL_MODES = ('corners_4', 'grid_2x2', 'grid_3x3', 'auto', 'preserve_relative')
MATCHING_METHODS = ('spatial_order', 'nearest_neighbor')


@dataclass(frozen=True, eq=False)
class DewarpResult:
    """Dewarped image plus the intermediate products of the pipeline."""

    image: np.ndarray
    markers: List[Marker]
    source_points: np.ndarray
    target_points: np.ndarray
    model: TPSModel
    residual: ResidualReport
    deformation: DeformationReport


def detect_calibration_markers(image,
                               config: dict = None,
                               region: Optional[Region] = None,
                               max_markers: int = None) -> List[Marker]:
    """
    Detect every marker-like component, largest first.

    Args:
        image: RGB image
        config: Overrides for PipelineConfig.MARKER_DETECTION
        region: Optional search rectangle
        max_markers: Upper bound on markers (default CORRESPONDENCE['MAX_MARKERS'])

    Returns:
        List of Marker sorted by pixel count
    """
    if max_markers is None:
        max_markers = PipelineConfig.CORRESPONDENCE['MAX_MARKERS']
    return MarkerDetector(config).detect_all(image, region=region, max_markers=max_markers)


def _centroids(markers: List[Marker]) -> np.ndarray:
    return np.array([m.centroid for m in markers], dtype=np.float64).reshape(-1, 2)


def define_canonical_positions(markers: List[Marker],
                               mode: str = 'corners_4',
                               image_size: Optional[Tuple[int, int]] = None,
                               margin: float = 10.0,
                               spacing: Optional[float] = None) -> np.ndarray:
    """
    Define target positions for detected markers.

    Modes:
        corners_4: rectangle corners inset by margin (TL, TR, BR, BL)
        grid_2x2: 2x2 grid starting at (margin, margin)
        grid_3x3: 3x3 grid starting at (margin, margin)
        auto: snap marker centroids onto a regular grid
        preserve_relative: rescale centroids into [margin, size - margin]

    Args:
        markers: Detected markers
        mode: One of CANONICAL_MODES
        image_size: (height, width); inferred from the markers when None
        margin: Inset from the image border in pixels
        spacing: Grid spacing for the grid modes (derived from size when None)

    Returns:
        (N, 2) array of canonical (row, col) positions
    """
    if not markers:
        raise ValueError("No markers provided")
    if mode not in CANONICAL_MODES:
        raise ValueError(f"Unknown mode: {mode}. Use one of {', '.join(CANONICAL_MODES)}")

    centroids = _centroids(markers)
    n = len(markers)

    if image_size is None:
        height = int(np.ceil(centroids[:, 0].max() + 2 * margin))
        width = int(np.ceil(centroids[:, 1].max() + 2 * margin))
    else:
        height, width = image_size

    if mode == 'corners_4':
        if n != 4:
            logger.warning("corners_4 mode expects 4 markers, got %d. Using first %d.", n, min(4, n))
        positions = np.array([
            [margin, margin],
            [margin, width - margin],
            [height - margin, width - margin],
            [height - margin, margin]
        ])
        return positions[:min(4, n)]

    if mode == 'grid_2x2':
        if n != 4:
            logger.warning("grid_2x2 expects 4 markers, got %d", n)
        step = spacing if spacing is not None else min(height, width) - 2 * margin
        positions = np.array([[margin + i * step, margin + j * step] for i in range(2) for j in range(2)])
        return positions[:min(4, n)]

    if mode == 'grid_3x3':
        if n != 9:
            logger.warning("grid_3x3 expects 9 markers, got %d", n)
        step = spacing if spacing is not None else (min(height, width) - 2 * margin) / 2
        positions = np.array([[margin + i * step, margin + j * step] for i in range(3) for j in range(3)])
        return positions[:min(9, n)]

    lo = centroids.min(axis=0)
    span = centroids.max(axis=0) - lo

    if mode == 'auto':
        positions = np.empty_like(centroids)
        for axis in range(2):
            levels = np.unique(np.round(centroids[:, axis]))
            step = span[axis] / (len(levels) - 1) if len(levels) > 1 else 0.0
            if step > 0:
                index = np.round((centroids[:, axis] - lo[axis]) / step)
            else:
                index = np.zeros(n)
            positions[:, axis] = margin + index * step
        return positions

    # preserve_relative
    extent = np.array([height - 2 * margin, width - 2 * margin], dtype=np.float64)
    normalized = np.where(span > 0, (centroids - lo) / np.where(span > 0, span, 1.0), 0.5)
    return margin + normalized * extent


def establish_correspondence(markers: List[Marker],
                             canonical_positions,
                             method: str = 'spatial_order') -> Tuple[np.ndarray, np.ndarray]:
    """
    Match detected markers to canonical positions.

    Methods:
        spatial_order: sort both sets row-major and pair them in order
        nearest_neighbor: greedy, each canonical position used once

    Returns:
        Tuple of (source_points, target_points), both (N, 2) [row, col]
    """
    if method not in MATCHING_METHODS:
        raise ValueError(f"Unknown method: {method}. Use one of {', '.join(MATCHING_METHODS)}")

    canonical = np.asarray(canonical_positions, dtype=np.float64).reshape(-1, 2)
    if len(markers) != len(canonical):
        n = min(len(markers), len(canonical))
        logger.warning("Number of markers (%d) != canonical positions (%d). Using %d.",
                       len(markers), len(canonical), n)
        markers = markers[:n]
        canonical = canonical[:n]

    centroids = _centroids(markers)

    if method == 'spatial_order':
        marker_order = np.lexsort((centroids[:, 1], centroids[:, 0]))
        canonical_order = np.lexsort((canonical[:, 1], canonical[:, 0]))
        return centroids[marker_order].copy(), canonical[canonical_order].copy()

    targets = np.empty_like(centroids)
    used = set()
    for i, point in enumerate(centroids):
        distances = np.linalg.norm(canonical - point, axis=1)
        for j in np.argsort(distances, kind='stable'):
            if j not in used:
                used.add(j)
                targets[i] = canonical[j]
                break
    return centroids.copy(), targets


def dewarp_image_with_markers(image,
                              detection_config: dict = None,
                              correspondence_config: dict = None,
                              regularization: float = None,
                              output_size: Optional[Tuple[int, int]] = None,
                              spacing: Optional[float] = None) -> DewarpResult:
    """
    Complete marker-based dewarping.

    Workflow: detect markers -> canonical positions -> correspondence ->
    TPS fit and error metrics -> image warp.

    Args:
        image: RGB image to dewarp
        detection_config: Overrides for PipelineConfig.MARKER_DETECTION
        correspondence_config: Overrides for PipelineConfig.CORRESPONDENCE
        regularization: TPS smoothing (default PipelineConfig.TPS['REGULARIZATION'])
        output_size: (height, width) of the output (default: input size)
        spacing: Grid spacing for the grid modes

    Returns:
        DewarpResult

    Raises:
        ValueError: when no markers are detected or the fit is impossible
    """
    cfg = merge_config(PipelineConfig.CORRESPONDENCE, correspondence_config)
    if regularization is None:
        regularization = PipelineConfig.TPS['REGULARIZATION']

    rgb = as_rgb_array(image)
    markers = detect_calibration_markers(rgb, detection_config, max_markers=cfg['MAX_MARKERS'])
    if not markers:
        raise ValueError("No calibration markers detected. Adjust detection parameters.")
    logger.info("Detected %d calibration markers", len(markers))

    size = output_size or rgb.shape[:2]
    canonical = define_canonical_positions(markers, cfg['CANONICAL_MODE'], image_size=size,
                                           margin=cfg['MARGIN'], spacing=spacing)
    source, target = establish_correspondence(markers, canonical, cfg['METHOD'])
    logger.info("Established correspondence for %d control points", len(source))

    model = fit_tps(source, target, regularization)
    residual = residual_error(source, target, model)
    deformation = estimate_deformation_magnitude(source, target)
    logger.info("TPS fitted: mean residual = %.3f px, max residual = %.3f px",
                residual.mean, residual.max)
    logger.info("Deformation: mean = %.2f px, max = %.2f px", deformation.mean, deformation.max)

    dewarped = warp_image(rgb, source, target, regularization=regularization, output_size=output_size)

    return DewarpResult(
        image=dewarped,
        markers=markers,
        source_points=source,
        target_points=target,
        model=model,
        residual=residual,
        deformation=deformation
    )
