# test_tps.py
import math
import numpy as np
import pytest

from markergeom.config import PipelineConfig
from markergeom.tps import (apply_tps, build_kernel_matrix, estimate_deformation_magnitude,
                            fit_tps, residual_error, tps_kernel, warp_image, warp_mask)


def test_kernel_values():
    assert tps_kernel(0.0) == 0.0
    assert tps_kernel(1e-15) == 0.0
    assert tps_kernel(1.0) == 0.0
    assert tps_kernel(2.0) == pytest.approx(4 * math.log(2))
    assert tps_kernel(10.0) == pytest.approx(100 * math.log(10))


def test_kernel_accepts_arrays():
    values = tps_kernel(np.array([0.0, 2.0, 3.0]))
    assert values.shape == (3,)
    assert np.allclose(values, [0.0, 4 * math.log(2), 9 * math.log(3)])


def test_kernel_matrix_symmetric_zero_diagonal():
    points = np.array([[0.0, 0.0], [3.0, 4.0], [6.0, 0.0]])
    K = build_kernel_matrix(points)
    assert K.shape == (3, 3)
    assert np.all(np.diag(K) == 0.0)
    assert np.allclose(K, K.T)
    assert K[0, 1] == pytest.approx(25 * math.log(5))
    assert K[0, 2] == pytest.approx(36 * math.log(6))


def test_identity_fit(square_points):
    model = fit_tps(square_points, square_points)
    assert np.max(np.abs(model.weights_row)) < 1e-10
    assert np.max(np.abs(model.weights_col)) < 1e-10
    assert apply_tps((50.0, 50.0), model) == pytest.approx((50.0, 50.0), abs=1e-6)


def test_translation(square_points):
    model = fit_tps(square_points, square_points + np.array([5.0, 10.0]))
    assert apply_tps((50.0, 50.0), model) == pytest.approx((55.0, 60.0), abs=1e-6)
    assert apply_tps((30.0, 70.0), model) == pytest.approx((35.0, 80.0), abs=1e-6)


def test_scaling():
    source = np.array([[10.0, 10.0], [50.0, 10.0], [50.0, 50.0], [10.0, 50.0]])
    model = fit_tps(source, source * 2.0)
    assert model((30.0, 30.0)) == pytest.approx((60.0, 60.0), abs=1e-4)


def test_exact_interpolation_at_control_points(skewed_correspondence):
    source, target = skewed_correspondence
    model = fit_tps(source, target)
    assert np.allclose(model.apply(source), target, atol=1e-6)


def test_regularization_smooths(skewed_correspondence):
    source, target = skewed_correspondence
    smooth = fit_tps(source, target, regularization=0.1)
    exact = fit_tps(source, target, regularization=0.0)

    predicted = smooth.apply(source)
    assert np.all(np.abs(predicted - target) < 2.0)
    assert np.linalg.norm(smooth.weights_row) <= np.linalg.norm(exact.weights_row) * 1.1
    assert np.linalg.norm(smooth.weights_col) <= np.linalg.norm(exact.weights_col) * 1.1
    assert residual_error(source, target, smooth).max > 0.0


def test_too_few_points():
    points = np.array([[0.0, 0.0], [1.0, 1.0]])
    with pytest.raises(ValueError, match="at least 3"):
        fit_tps(points, points)


def test_mismatched_counts(square_points):
    with pytest.raises(ValueError, match="same number"):
        fit_tps(square_points, square_points[:3])


def test_singular_system_raises():
    duplicated = np.array([[0.0, 0.0], [0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    with pytest.raises(ValueError, match="singular"):
        fit_tps(duplicated, duplicated)


def test_residual_report(skewed_correspondence):
    source, target = skewed_correspondence
    report = residual_error(source, target, fit_tps(source, target))
    assert report.per_point.shape == (4,)
    assert report.mean < 1e-6
    assert report.max < 1e-6


def test_deformation_magnitude(square_points):
    none = estimate_deformation_magnitude(square_points, square_points.copy())
    assert none.mean == 0.0 and none.max == 0.0

    shifted = estimate_deformation_magnitude(square_points, square_points + np.array([3.0, 4.0]))
    assert shifted.mean == pytest.approx(5.0)
    assert shifted.max == pytest.approx(5.0)

    target = np.array([[10.0, 10.0], [95.0, 10.0], [90.0, 94.0], [10.0, 90.0]])
    mixed = estimate_deformation_magnitude(square_points, target)
    assert mixed.mean == pytest.approx(2.25)
    assert mixed.max == pytest.approx(5.0)
    assert np.allclose(mixed.per_point, [0.0, 5.0, 4.0, 0.0])


def test_non_rigid_deformation(square_points):
    target = np.array([[20.0, 20.0], [80.0, 20.0], [90.0, 90.0], [10.0, 90.0]])
    model = fit_tps(square_points, target)
    out_row, out_col = model((50.0, 50.0))
    assert 10.0 < out_row < 90.0
    assert 10.0 < out_col < 90.0
    assert np.allclose(model.apply(square_points), target, atol=1e-6)


def test_warp_mask_identity(square_points):
    mask = np.zeros((100, 100), dtype=bool)
    mask[40:61, 40:61] = True
    warped = warp_mask(mask, square_points, square_points)
    assert warped.shape == mask.shape
    assert warped.dtype == bool
    assert abs(int(warped.sum()) - int(mask.sum())) <= 0.05 * mask.sum()
    assert warped[45:56, 45:56].all()


def test_warp_mask_translation_and_output_size(square_points):
    mask = np.zeros((100, 100), dtype=bool)
    mask[20:30, 20:30] = True
    warped = warp_mask(mask, square_points, square_points + np.array([10.0, 0.0]),
                       output_size=(120, 100))
    assert warped.shape == (120, 100)
    assert warped[30:40, 20:30].all()
    assert not warped[20:30, 20:30].any()
    assert not warped[110:].any()


def test_warp_image_identity(square_points):
    image = np.random.default_rng(0).random((60, 80, 3))
    warped = warp_image(image, square_points, square_points)
    assert np.allclose(warped, image, atol=1e-6)


def test_warp_image_translation_fills_uncovered(square_points):
    image = np.random.default_rng(1).random((60, 80, 3))
    warped = warp_image(image, square_points, square_points + np.array([0.0, 5.0]))
    assert np.allclose(warped[:, 5:], image[:, :-5], atol=1e-6)
    assert np.all(warped[:, :5] == 0.0)


def test_warp_image_chunking_is_seamless(monkeypatch, skewed_correspondence):
    source, target = skewed_correspondence
    image = np.random.default_rng(2).random((50, 40, 3))
    whole = warp_image(image, source, target)
    monkeypatch.setitem(PipelineConfig.TPS, 'CHUNK_ROWS', 7)
    chunked = warp_image(image, source, target)
    assert np.allclose(whole, chunked)


def test_negative_regularization_rejected(square_points):
    with pytest.raises(ValueError, match="regularization must be >= 0"):
        fit_tps(square_points, square_points, regularization=-0.1)


def test_models_compare_by_identity(square_points):
    model = fit_tps(square_points, square_points)
    assert model == model
    assert model != fit_tps(square_points, square_points)
