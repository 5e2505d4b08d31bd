"""
Thin Plate Spline Module

Non-rigid warping from point correspondences (Bookstein, 1989).

The fitted map is
    f(p) = a0 + a1*row + a2*col + sum_i w_i * U(|p - s_i|),  U(r) = r^2 log r
solved independently for the output row and output column from

    [K + lambda*I  P] [w]   [v]
    [P^T           0] [a] = [0]

where K[i, j] = U(|s_i - s_j|) and P = [1, row, col]. lambda = 0 interpolates
every control point exactly; lambda > 0 trades exactness for smoothness.

Warping uses inverse mapping: the model is fitted target -> source and every
output pixel looks up its source position, so the output has no holes.
"""

import logging
import numpy as np
from dataclasses import dataclass
from scipy import linalg
from scipy.spatial.distance import cdist
from typing import Optional, Tuple

from .config import PipelineConfig
from .image_utils import as_rgb_array, bilinear_sample

logger = logging.getLogger(__name__)

KERNEL_EPSILON = PipelineConfig.TPS['KERNEL_EPSILON']


def tps_kernel(r):
    """
    Thin plate spline radial basis function U(r) = r^2 log(r).

    Returns 0 for r below KERNEL_EPSILON (the limit at r -> 0).
    Accepts a scalar or an array.
    """
    r_arr = np.asarray(r, dtype=np.float64)
    safe = np.where(r_arr < KERNEL_EPSILON, 1.0, r_arr)
    values = np.where(r_arr < KERNEL_EPSILON, 0.0, safe * safe * np.log(safe))
    if values.ndim == 0:
        return float(values)
    return values


def build_kernel_matrix(points) -> np.ndarray:
    """N x N matrix with K[i, j] = U(|p_i - p_j|); symmetric with a zero diagonal."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return tps_kernel(cdist(pts, pts))


@dataclass(frozen=True, eq=False)
class TPSModel:
    """Fitted thin plate spline parameters (source space -> target space)."""

    source_points: np.ndarray
    weights_row: np.ndarray
    weights_col: np.ndarray
    affine_row: np.ndarray
    affine_col: np.ndarray

    def apply(self, points) -> np.ndarray:
        """
        Transform points.

        Args:
            points: (M, 2) array-like of (row, col)

        Returns:
            (M, 2) array of transformed (row, col)
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        U = tps_kernel(cdist(pts, self.source_points))
        rows, cols = pts[:, 0], pts[:, 1]

        out_row = self.affine_row[0] + self.affine_row[1] * rows + self.affine_row[2] * cols + U @ self.weights_row
        out_col = self.affine_col[0] + self.affine_col[1] * rows + self.affine_col[2] * cols + U @ self.weights_col
        return np.column_stack([out_row, out_col])

    def __call__(self, point: Tuple[float, float]) -> Tuple[float, float]:
        out = self.apply([point])[0]
        return float(out[0]), float(out[1])


@dataclass(frozen=True, eq=False)
class ResidualReport:
    """Fit error at the control points."""
    per_point: np.ndarray
    mean: float
    max: float


@dataclass(frozen=True, eq=False)
class DeformationReport:
    """Raw displacement between corresponding points."""
    per_point: np.ndarray
    mean: float
    max: float


def _as_points(points) -> np.ndarray:
    return np.asarray(points, dtype=np.float64).reshape(-1, 2)


def fit_tps(source_points, target_points, regularization: float = 0.0) -> TPSModel:
    """
    Compute TPS parameters mapping source points onto target points.

    Args:
        source_points: (N, 2) control points [row, col]
        target_points: (N, 2) corresponding points [row, col]
        regularization: lambda added to the kernel diagonal
            (0 = exact interpolation, > 0 = smooth approximation)

    Returns:
        TPSModel

    Raises:
        ValueError: fewer than 3 points, mismatched counts, or a singular system
    """
    source = _as_points(source_points)
    target = _as_points(target_points)
    n = len(source)

    if len(target) != n:
        raise ValueError("Source and target points must have the same number of points "
                         f"(got {n} and {len(target)})")
    if n < 3:
        raise ValueError(f"Need at least 3 control points for TPS (got {n})")
    if regularization < 0.0:
        raise ValueError(f"regularization must be >= 0 (got {regularization})")

    K = build_kernel_matrix(source)
    if regularization > 0.0:
        K = K + regularization * np.eye(n)

    P = np.column_stack([np.ones(n), source])

    L = np.zeros((n + 3, n + 3))
    L[:n, :n] = K
    L[:n, n:] = P
    L[n:, :n] = P.T

    # One right-hand side per output axis
    rhs = np.zeros((n + 3, 2))
    rhs[:n] = target

    try:
        solution = linalg.solve(L, rhs)
    except linalg.LinAlgError as exc:
        raise ValueError("Failed to solve TPS system (matrix may be singular). "
                         "Try adding regularization.") from exc

    model = TPSModel(
        source_points=source.copy(),
        weights_row=solution[:n, 0].copy(),
        weights_col=solution[:n, 1].copy(),
        affine_row=solution[n:, 0].copy(),
        affine_col=solution[n:, 1].copy()
    )
    logger.debug("TPS fitted on %d points (regularization=%g)", n, regularization)
    return model


def apply_tps(point: Tuple[float, float], model: TPSModel) -> Tuple[float, float]:
    """Transform a single (row, col) point from source to target space."""
    return model(point)


def residual_error(source_points, target_points, model: TPSModel) -> ResidualReport:
    """Euclidean error between the model's image of each source point and its target."""
    predicted = model.apply(_as_points(source_points))
    errors = np.linalg.norm(predicted - _as_points(target_points), axis=1)
    return ResidualReport(per_point=errors, mean=float(errors.mean()), max=float(errors.max()))


def estimate_deformation_magnitude(source_points, target_points) -> DeformationReport:
    """Mean and max displacement over the raw correspondences (no model involved)."""
    displacements = np.linalg.norm(_as_points(target_points) - _as_points(source_points), axis=1)
    return DeformationReport(per_point=displacements,
                             mean=float(displacements.mean()),
                             max=float(displacements.max()))


def _source_grid(model: TPSModel, out_h: int, out_w: int, chunk_rows: int):
    """Yield (row_slice, src_rows, src_cols) for the output grid in row chunks."""
    cols = np.arange(out_w, dtype=np.float64)
    for start in range(0, out_h, chunk_rows):
        stop = min(start + chunk_rows, out_h)
        grid_r, grid_c = np.meshgrid(np.arange(start, stop, dtype=np.float64), cols, indexing='ij')
        mapped = model.apply(np.column_stack([grid_r.ravel(), grid_c.ravel()]))
        shape = (stop - start, out_w)
        yield slice(start, stop), mapped[:, 0].reshape(shape), mapped[:, 1].reshape(shape)


def warp_mask(mask: np.ndarray,
              source_points,
              target_points,
              regularization: float = 0.0,
              output_size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """
    Warp a binary mask so that source points move onto target points.

    Uses nearest-pixel lookup (no sub-pixel blending, masks are boolean).
    Output pixels that map outside the input are False.

    Args:
        mask: Boolean (H, W) mask
        source_points, target_points: (N, 2) correspondences [row, col]
        regularization: TPS regularization
        output_size: (height, width) of the output (default: input size)

    Returns:
        Warped boolean mask
    """
    mask = np.asarray(mask, dtype=bool)
    in_h, in_w = mask.shape
    out_h, out_w = output_size or (in_h, in_w)

    # Inverse model: output (target) space -> input (source) space
    inverse = fit_tps(target_points, source_points, regularization)
    out = np.zeros((out_h, out_w), dtype=bool)

    for rows, src_r, src_c in _source_grid(inverse, out_h, out_w, PipelineConfig.TPS['CHUNK_ROWS']):
        near_r = np.rint(src_r)
        near_c = np.rint(src_c)
        inside = (near_r >= 0) & (near_r <= in_h - 1) & (near_c >= 0) & (near_c <= in_w - 1)
        idx_r = np.clip(near_r, 0, in_h - 1).astype(np.intp)
        idx_c = np.clip(near_c, 0, in_w - 1).astype(np.intp)
        out[rows] = inside & mask[idx_r, idx_c]

    return out


def warp_image(image,
               source_points,
               target_points,
               regularization: float = 0.0,
               output_size: Optional[Tuple[int, int]] = None,
               fill_value: float = None) -> np.ndarray:
    """
    Warp an RGB image so that source points move onto target points.

    Same inverse mapping as warp_mask, with bilinear interpolation of every
    channel.

    Args:
        image: RGB image
        source_points: (N, 2) control points in the distorted image [row, col]
        target_points: (N, 2) canonical positions [row, col]
        regularization: TPS regularization
        output_size: (height, width) of the output (default: input size)
        fill_value: Value for pixels mapping outside the input
            (default PipelineConfig.TPS['FILL_VALUE'])

    Returns:
        Warped float RGB image
    """
    rgb = as_rgb_array(image)
    in_h, in_w = rgb.shape[:2]
    out_h, out_w = output_size or (in_h, in_w)
    if fill_value is None:
        fill_value = PipelineConfig.TPS['FILL_VALUE']

    inverse = fit_tps(target_points, source_points, regularization)
    out = np.empty((out_h, out_w, rgb.shape[2]), dtype=np.float64)

    for rows, src_r, src_c in _source_grid(inverse, out_h, out_w, PipelineConfig.TPS['CHUNK_ROWS']):
        out[rows] = bilinear_sample(rgb, src_r, src_c, fill_value)

    return out
