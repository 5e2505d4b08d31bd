"""
White Balance Module

Bradford chromatic adaptation driven by the calibration marker.
The marker's white patch is measured in linear light, converted to XYZ and
used as the source white; every pixel is then adapted to a reference white
(D65 by default).

Colour pipeline per pixel:
    sRGB -> linear RGB -> XYZ -> Bradford cone space -> von Kries scaling
         -> XYZ -> linear RGB -> sRGB
All matrix steps are folded into one 3x3 matrix applied to the whole image.
"""

import logging
import numpy as np
from typing import Optional

from .config import PipelineConfig, merge_config
from .image_utils import as_rgb_array

logger = logging.getLogger(__name__)

# XYZ -> cone response
BRADFORD = np.array([[0.8951, 0.2664, -0.1614],
                     [-0.7502, 1.7135, 0.0367],
                     [0.0389, -0.0685, 1.0296]])
BRADFORD_INV = np.linalg.inv(BRADFORD)

# Linear sRGB <-> XYZ, D65 reference white
SRGB_TO_XYZ = np.array([[0.4124564, 0.3575761, 0.1804375],
                        [0.2126729, 0.7151522, 0.0721750],
                        [0.0193339, 0.1191920, 0.9503041]])
XYZ_TO_SRGB = np.array([[3.2404542, -1.5371385, -0.4985314],
                        [-0.9692660, 1.8760108, 0.0415560],
                        [0.0556434, -0.2040259, 1.0572252]])

D65_WHITE = np.array(PipelineConfig.WHITE_BALANCE['REFERENCE_WHITE'], dtype=np.float64)

# Cone responses below this are left unscaled
_CONE_EPS = 1e-10


def srgb_to_linear(values) -> np.ndarray:
    """Remove the sRGB gamma encoding (IEC 61966-2-1)."""
    v = np.asarray(values, dtype=np.float64)
    return np.where(v <= 0.04045, v / 12.92, ((np.maximum(v, 0.04045) + 0.055) / 1.055) ** 2.4)


def linear_to_srgb(values) -> np.ndarray:
    """Apply the sRGB gamma encoding to linear values."""
    v = np.asarray(values, dtype=np.float64)
    return np.where(v <= 0.0031308, 12.92 * v, 1.055 * np.maximum(v, 0.0031308) ** (1.0 / 2.4) - 0.055)


def compute_bradford_matrix(src_white, ref_white) -> np.ndarray:
    """
    Combined 3x3 adaptation matrix BRADFORD_INV @ diag(ref / src) @ BRADFORD.

    Args:
        src_white: Source white point, XYZ
        ref_white: Reference white point, XYZ

    Returns:
        Matrix mapping source XYZ to adapted XYZ
    """
    src_cone = BRADFORD @ np.asarray(src_white, dtype=np.float64)
    ref_cone = BRADFORD @ np.asarray(ref_white, dtype=np.float64)

    scale = np.ones(3)
    usable = np.abs(src_cone) > _CONE_EPS
    scale[usable] = ref_cone[usable] / src_cone[usable]

    return BRADFORD_INV @ np.diag(scale) @ BRADFORD


def whitebalance_bradford(color_xyz, src_white, ref_white) -> np.ndarray:
    """Adapt a single XYZ colour from src_white to ref_white."""
    return compute_bradford_matrix(src_white, ref_white) @ np.asarray(color_xyz, dtype=np.float64)


def normalize_white_point_luminance(white_xyz) -> np.ndarray:
    """
    Scale a white point to Y = 1 keeping its chromaticity.

    Adapting from a normalized white corrects colour only and leaves the
    overall brightness alone. A white point with Y <= 0 is returned unchanged.
    """
    white = np.asarray(white_xyz, dtype=np.float64)
    if white[1] <= 0:
        logger.warning("White point luminance Y=%.4f <= 0, not normalizing", white[1])
        return white.copy()
    return white / white[1]


def extract_white_point(image, mask: np.ndarray, black_level: float = 0.01) -> np.ndarray:
    """
    Measure the scene white from the marker's pixels.

    Pixels inside the mask with every channel at or below black_level are
    ignored. The remaining pixels are linearized and the per-channel median
    is converted to XYZ, so dirt and glare on the marker do not pull the
    estimate.

    Args:
        image: RGB image (sRGB encoded)
        mask: Boolean marker mask
        black_level: Channel value below which a pixel counts as black

    Returns:
        XYZ white point; D65 when no usable pixel exists
    """
    rgb = as_rgb_array(image)
    pixels = rgb[np.asarray(mask, dtype=bool)]
    pixels = pixels[np.any(pixels > black_level, axis=1)]

    if len(pixels) == 0:
        logger.warning("No white pixels under the marker mask, using D65")
        return D65_WHITE.copy()

    white_linear = np.median(srgb_to_linear(pixels), axis=0)
    white_xyz = SRGB_TO_XYZ @ white_linear
    logger.debug("White point XYZ(%.3f, %.3f, %.3f) from %d pixels",
                 white_xyz[0], white_xyz[1], white_xyz[2], len(pixels))
    return white_xyz


def apply_whitebalance_to_image(image,
                                src_white,
                                ref_white=D65_WHITE,
                                clamp: bool = True) -> np.ndarray:
    """
    Apply Bradford white balance to a whole image.

    Args:
        image: RGB image (sRGB encoded)
        src_white: White point of the scene illumination, XYZ
        ref_white: Target white point, XYZ
        clamp: Clip the result to [0, 1] (out-of-gamut colours)

    Returns:
        New float RGB image; pure black pixels are kept as they are
    """
    rgb = as_rgb_array(image)
    combined = XYZ_TO_SRGB @ compute_bradford_matrix(src_white, ref_white) @ SRGB_TO_XYZ

    adapted = linear_to_srgb(srgb_to_linear(rgb) @ combined.T)
    if clamp:
        adapted = np.clip(adapted, 0.0, 1.0)

    black = np.all(rgb == 0, axis=2)
    adapted[black] = rgb[black]
    return adapted


def apply_whitebalance_with_clamping(image, src_white, ref_white=D65_WHITE) -> np.ndarray:
    """White balance with the result clipped to [0, 1]."""
    return apply_whitebalance_to_image(image, src_white, ref_white, clamp=True)


class WhiteBalancer:
    """Corrects a photograph's colour cast using the detected marker as the white reference."""

    def __init__(self, config: dict = None):
        """
        Initialize white balancer.

        Args:
            config: Optional overrides for PipelineConfig.WHITE_BALANCE
        """
        self.config = merge_config(PipelineConfig.WHITE_BALANCE, config)
        self.reference_white = np.asarray(self.config['REFERENCE_WHITE'], dtype=np.float64)
        self.normalize_luminance = bool(self.config['NORMALIZE_LUMINANCE'])
        self.black_level = float(self.config['BLACK_LEVEL'])
        self.clamp = bool(self.config['CLAMP'])

        if self.reference_white.shape != (3,) or self.reference_white[1] <= 0:
            raise ValueError("REFERENCE_WHITE must be an XYZ triple with Y > 0")

    def measure(self, image, mask: np.ndarray) -> np.ndarray:
        """Source white point from the marker, normalized when configured."""
        white = extract_white_point(image, mask, self.black_level)
        if self.normalize_luminance:
            white = normalize_white_point_luminance(white)
        return white

    def balance(self, image, mask: np.ndarray, src_white: Optional[np.ndarray] = None) -> np.ndarray:
        """
        White balance an image from the marker under mask.

        Args:
            image: RGB image
            mask: Boolean marker mask (ignored when src_white is given)
            src_white: Precomputed source white point, XYZ

        Returns:
            Balanced float RGB image
        """
        if src_white is None:
            src_white = self.measure(image, mask)
        return apply_whitebalance_to_image(image, src_white, self.reference_white, self.clamp)
