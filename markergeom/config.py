"""
Configuration settings for the marker geometry toolkit.
Centralized configuration for all modules.
"""

import logging
from typing import Dict


class PipelineConfig:
    """Configuration for marker detection, rectification and warping."""

    # Marker Detection (bright calibration ruler)
    MARKER_DETECTION = {
        'THRESHOLD': 0.7,
        'THRESHOLD_UPPER': 1.0,
        'MIN_COMPONENT_AREA': 8000,
        'PREFERRED_ASPECT_RATIO': 5.0,
        'ASPECT_RATIO_WEIGHT': 0.6,
        'KERNEL_SIZE': 3,
        'MAX_KERNEL_SIZE': 10,
        'PIXEL_PADDING': 0.5,
        'ADAPTIVE': False,
        'ADAPTIVE_WINDOW': 25,
        'ADAPTIVE_OFFSET': 0.1
    }

    # Closeup extraction
    CLOSEUP = {
        'PLACEHOLDER': 0.5,
        'PLACEHOLDER_SIZE': 100,
        'ROTATION_DEGREES': 0.0
    }

    # Thin Plate Spline
    TPS = {
        'REGULARIZATION': 0.0,
        'KERNEL_EPSILON': 1e-10,
        'CHUNK_ROWS': 256,
        'FILL_VALUE': 0.0
    }

    # Multi-marker correspondence and dewarping
    CORRESPONDENCE = {
        'MAX_MARKERS': 20,
        'CANONICAL_MODE': 'corners_4',
        'MARGIN': 10.0,
        'METHOD': 'spatial_order'
    }

    # Bradford white balance from the marker's white patch
    WHITE_BALANCE = {
        'ENABLED': False,
        'REFERENCE_WHITE': (0.95047, 1.0, 1.08883),  # D65, XYZ
        'NORMALIZE_LUMINANCE': True,
        'BLACK_LEVEL': 0.01,
        'CLAMP': True
    }

    LOGGING = {
        'LEVEL': 'INFO',
        'FORMAT': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    }


def merge_config(defaults: Dict, overrides: Dict = None) -> Dict:
    """Return a copy of a config section with overrides applied."""
    merged = dict(defaults)
    if overrides:
        merged.update(overrides)
    return merged


def setup_logging(level: str = None):
    """Configure root logging for command line use."""
    cfg = PipelineConfig.LOGGING
    logging.basicConfig(
        level=getattr(logging, (level or cfg['LEVEL']).upper(), logging.INFO),
        format=cfg['FORMAT']
    )
