# test_correspondence.py
import numpy as np
import pytest

from markergeom.correspondence import (define_canonical_positions, detect_calibration_markers,
                                       dewarp_image_with_markers, establish_correspondence)
from markergeom.marker_detection import Marker

DETECT = {'MIN_COMPONENT_AREA': 100, 'KERNEL_SIZE': 1}


def fake_markers(centroids):
    """Markers carrying only a centroid, enough for positioning and matching."""
    return [Marker(centroid=(float(r), float(c)), corners=(0.0,) * 8,
                   mask=np.zeros((1, 1), dtype=bool), pixel_count=1,
                   rotation_angle=0.0, aspect_ratio=1.0, density=1.0)
            for r, c in centroids]


@pytest.fixture
def four_marker_image():
    image = np.full((200, 300, 3), 0.1)
    for r0 in (20, 170):
        for c0 in (30, 230):
            image[r0:r0 + 10, c0:c0 + 40] = 0.9
    return image


GRID_CENTROIDS = [(20.0, 30.0), (20.0, 80.0), (70.0, 30.0), (70.0, 80.0)]


def test_detect_calibration_markers(four_marker_image):
    markers = detect_calibration_markers(four_marker_image, DETECT)
    assert len(markers) == 4
    assert all(m.pixel_count == 400 for m in markers)
    centroids = sorted(m.centroid for m in markers)
    assert centroids[0] == pytest.approx((24.5, 49.5))
    assert centroids[-1] == pytest.approx((174.5, 249.5))


def test_detect_calibration_markers_limit(four_marker_image):
    assert len(detect_calibration_markers(four_marker_image, DETECT, max_markers=2)) == 2


def test_corners_4_positions():
    positions = define_canonical_positions(fake_markers(GRID_CENTROIDS), 'corners_4',
                                           image_size=(200, 300), margin=10.0)
    assert positions.tolist() == [[10.0, 10.0], [10.0, 290.0], [190.0, 290.0], [190.0, 10.0]]


def test_corners_4_with_fewer_markers_truncates():
    positions = define_canonical_positions(fake_markers(GRID_CENTROIDS[:3]), 'corners_4',
                                           image_size=(200, 300))
    assert positions.shape == (3, 2)


def test_grid_2x2_positions():
    markers = fake_markers(GRID_CENTROIDS)
    positions = define_canonical_positions(markers, 'grid_2x2', image_size=(100, 100), margin=10.0)
    assert positions.tolist() == [[10.0, 10.0], [10.0, 90.0], [90.0, 10.0], [90.0, 90.0]]
    spaced = define_canonical_positions(markers, 'grid_2x2', image_size=(100, 100), spacing=20.0)
    assert spaced.tolist() == [[10.0, 10.0], [10.0, 30.0], [30.0, 10.0], [30.0, 30.0]]


def test_grid_3x3_positions():
    markers = fake_markers([(r, c) for r in (0, 1, 2) for c in (0, 1, 2)])
    positions = define_canonical_positions(markers, 'grid_3x3', image_size=(100, 100), margin=10.0)
    assert positions.shape == (9, 2)
    assert sorted(set(positions[:, 0])) == [10.0, 50.0, 90.0]
    assert sorted(set(positions[:, 1])) == [10.0, 50.0, 90.0]


def test_auto_snaps_to_regular_grid():
    jittered = [(20.2, 30.1), (19.8, 79.9), (70.1, 30.3), (69.9, 80.2)]
    positions = define_canonical_positions(fake_markers(jittered), 'auto', margin=10.0)
    assert positions[0, 0] == positions[1, 0] == pytest.approx(10.0)
    assert positions[2, 0] == positions[3, 0] == pytest.approx(10.0 + 70.1 - 19.8)
    assert positions[0, 1] == positions[2, 1] == pytest.approx(10.0)
    assert positions[1, 1] == positions[3, 1] == pytest.approx(10.0 + 80.2 - 30.1)


def test_preserve_relative_spans_image():
    positions = define_canonical_positions(fake_markers(GRID_CENTROIDS), 'preserve_relative',
                                           image_size=(110, 210), margin=10.0)
    assert np.allclose(positions, [[10, 10], [10, 200], [100, 10], [100, 200]])


def test_preserve_relative_single_row_is_centred():
    markers = fake_markers([(20.0, 30.0), (20.0, 80.0), (20.0, 130.0)])
    positions = define_canonical_positions(markers, 'preserve_relative',
                                           image_size=(110, 210), margin=10.0)
    assert np.allclose(positions[:, 0], 55.0)
    assert np.allclose(positions[:, 1], [10.0, 105.0, 200.0])


def test_image_size_inferred_from_markers():
    positions = define_canonical_positions(fake_markers(GRID_CENTROIDS), 'corners_4', margin=10.0)
    assert positions[2].tolist() == [80.0, 90.0]


def test_invalid_canonical_arguments():
    with pytest.raises(ValueError):
        define_canonical_positions([], 'corners_4')
    with pytest.raises(ValueError, match="Unknown mode"):
        define_canonical_positions(fake_markers(GRID_CENTROIDS), 'hexagonal')


def test_spatial_order_pairs_row_major():
    # Detection order is arbitrary; pairing follows position
    markers = fake_markers([(70.0, 80.0), (20.0, 30.0), (70.0, 30.0), (20.0, 80.0)])
    canonical = [[10.0, 10.0], [10.0, 90.0], [90.0, 90.0], [90.0, 10.0]]
    source, target = establish_correspondence(markers, canonical, 'spatial_order')
    assert source.tolist() == [list(p) for p in GRID_CENTROIDS]
    assert target.tolist() == [[10.0, 10.0], [10.0, 90.0], [90.0, 10.0], [90.0, 90.0]]


def test_nearest_neighbor_uses_each_target_once():
    markers = fake_markers([(0.0, 0.0), (1.0, 1.0)])
    canonical = [[10.0, 10.0], [0.5, 0.5]]
    source, target = establish_correspondence(markers, canonical, 'nearest_neighbor')
    assert source.tolist() == [[0.0, 0.0], [1.0, 1.0]]
    assert target.tolist() == [[0.5, 0.5], [10.0, 10.0]]


def test_correspondence_count_mismatch_truncates():
    markers = fake_markers(GRID_CENTROIDS[:3])
    canonical = [[10.0, 10.0], [10.0, 90.0], [90.0, 10.0], [90.0, 90.0]]
    source, target = establish_correspondence(markers, canonical)
    assert source.shape == target.shape == (3, 2)


def test_unknown_correspondence_method():
    with pytest.raises(ValueError, match="Unknown method"):
        establish_correspondence(fake_markers(GRID_CENTROIDS), GRID_CENTROIDS, 'hungarian')


def test_dewarp_moves_markers_to_corners(four_marker_image):
    result = dewarp_image_with_markers(four_marker_image, detection_config=DETECT)
    assert result.image.shape == (200, 300, 3)
    assert len(result.markers) == 4
    assert np.allclose(result.source_points,
                       [[24.5, 49.5], [24.5, 249.5], [174.5, 49.5], [174.5, 249.5]])
    assert np.allclose(result.target_points,
                       [[10.0, 10.0], [10.0, 290.0], [190.0, 10.0], [190.0, 290.0]])
    assert result.residual.max < 1e-6
    expected = np.hypot([14.5, 14.5, 15.5, 15.5], [39.5, 40.5, 39.5, 40.5]).mean()
    assert result.deformation.mean == pytest.approx(expected)
    # Each canonical corner now shows the centre of a marker
    assert np.allclose(result.image[10, 10], 0.9)
    assert np.allclose(result.image[190, 290], 0.9)


def test_dewarp_output_size(four_marker_image):
    result = dewarp_image_with_markers(four_marker_image, detection_config=DETECT,
                                       output_size=(100, 150))
    assert result.image.shape == (100, 150, 3)
    assert result.target_points.max(axis=0).tolist() == [90.0, 140.0]


def test_dewarp_without_markers_raises():
    with pytest.raises(ValueError, match="No calibration markers"):
        dewarp_image_with_markers(np.full((50, 50, 3), 0.1), detection_config=DETECT)
