"""Shared fixtures for the marker geometry tests."""
import logging
import numpy as np
import pytest

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def make_rect_image(shape=(100, 200), rows=(40, 60), cols=(50, 150), value=0.9, background=0.1):
    """Dark RGB image with one bright axis-aligned rectangle [r0:r1, c0:c1]."""
    image = np.full(shape + (3,), background, dtype=np.float64)
    image[rows[0]:rows[1], cols[0]:cols[1]] = value
    return image


@pytest.fixture
def rect_image():
    return make_rect_image()


@pytest.fixture
def square_points():
    return np.array([[10.0, 10.0],
                     [90.0, 10.0],
                     [90.0, 90.0],
                     [10.0, 90.0]])


@pytest.fixture
def skewed_correspondence():
    source = np.array([[10.0, 20.0],
                       [80.0, 15.0],
                       [75.0, 85.0],
                       [15.0, 90.0]])
    target = np.array([[5.0, 25.0],
                       [85.0, 20.0],
                       [80.0, 80.0],
                       [10.0, 85.0]])
    return source, target
