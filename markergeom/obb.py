"""
Oriented Bounding Box Module

Fits a PCA-aligned bounding rectangle to the pixels of one component.

Axis convention (shared by detection scoring and closeup extraction):
- The primary axis is the covariance eigenvector with the largest
  eigenvalue (numpy.linalg.eigh sorts ascending, so it is the last column).
- Its sign is fixed so that the column component is positive, or the row
  component when the column component is zero.
- The secondary axis is (p_col, -p_row), so a horizontal box has primary
  axis +col and secondary axis +row.
- Corners run (min1,min2), (max1,min2), (max1,max2), (min1,max2): clockwise
  on screen from the top-left of a horizontal box. Edge 1->2 follows the
  primary axis.
- rotation_angle = atan2(p_row, p_col), in (-pi/2, pi/2].
"""

import math
import numpy as np
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class OrientedBox:
    """PCA oriented bounding box of a pixel set."""

    centroid: Tuple[float, float]
    primary_axis: Tuple[float, float]
    secondary_axis: Tuple[float, float]
    eigenvalues: Tuple[float, float]
    width: float
    height: float
    rotation_angle: float
    corners: Tuple[float, ...]

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        """Longer over shorter side; 1.0 when the shorter side is zero."""
        short = min(self.width, self.height)
        if short <= 0:
            return 1.0
        return max(self.width, self.height) / short

    def density(self, pixel_count: int) -> float:
        """Fraction of the box covered by pixel_count pixels; 0.0 for a zero-area box."""
        if self.area <= 0:
            return 0.0
        return pixel_count / self.area

    def corner_points(self) -> np.ndarray:
        """Corners as a (4, 2) array of (row, col)."""
        return np.asarray(self.corners, dtype=np.float64).reshape(4, 2)


def _principal_axes(cov: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    primary = eigenvectors[:, 1].copy()

    if primary[1] < 0 or (primary[1] == 0 and primary[0] < 0):
        primary = -primary

    secondary = np.array([primary[1], -primary[0]])
    return eigenvalues, primary, secondary


def fit_oriented_box(coords, pixel_padding: float = 0.0) -> OrientedBox:
    """
    Fit an oriented bounding box to pixel coordinates.

    Args:
        coords: (N, 2) array-like of (row, col) pixel coordinates
        pixel_padding: Extra extent added on both sides of each axis.
            0.5 measures pixels as unit cells instead of points.

    Returns:
        OrientedBox (a zero extent is a valid result for collinear input)
    """
    pts = np.asarray(coords, dtype=np.float64).reshape(-1, 2)
    if len(pts) == 0:
        raise ValueError("Cannot fit an oriented box to an empty coordinate set")

    centroid = pts.mean(axis=0)
    centered = pts - centroid

    # Population covariance (divide by N)
    cov = centered.T @ centered / len(pts)
    eigenvalues, primary, secondary = _principal_axes(cov)

    proj1 = centered @ primary
    proj2 = centered @ secondary
    min1, max1 = proj1.min() - pixel_padding, proj1.max() + pixel_padding
    min2, max2 = proj2.min() - pixel_padding, proj2.max() + pixel_padding

    corners = []
    for p1, p2 in ((min1, min2), (max1, min2), (max1, max2), (min1, max2)):
        point = centroid + p1 * primary + p2 * secondary
        corners.extend([float(point[0]), float(point[1])])

    return OrientedBox(
        centroid=(float(centroid[0]), float(centroid[1])),
        primary_axis=(float(primary[0]), float(primary[1])),
        secondary_axis=(float(secondary[0]), float(secondary[1])),
        eigenvalues=(float(eigenvalues[0]), float(eigenvalues[1])),
        width=float(max1 - min1),
        height=float(max2 - min2),
        rotation_angle=math.atan2(primary[0], primary[1]),
        corners=tuple(corners)
    )
