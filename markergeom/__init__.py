"""
Marker Geometry Modules

This package contains the geometric core of the wound-image toolkit:
- morphology: Binary dilation/erosion/closing/opening
- components: Connected-component labelling and region measurements
- obb: PCA oriented bounding boxes
- marker_detection: Detects the bright calibration marker
- closeup: Rectified marker closeups and bilinear rotation
- tps: Thin plate spline fitting and warping
- correspondence: Multi-marker correspondence and dewarping
- whitebalance: Bradford white balance from the marker's white patch
"""

from .closeup import CloseupRectifier, extract_closeup, rotate_image
from .marker_detection import DetectionResult, Marker, MarkerDetector, Region, rotated_rect_mask
from .obb import OrientedBox, fit_oriented_box
from .tps import (TPSModel, apply_tps, build_kernel_matrix, estimate_deformation_magnitude,
                  fit_tps, residual_error, tps_kernel, warp_image, warp_mask)
from .whitebalance import (WhiteBalancer, apply_whitebalance_to_image, compute_bradford_matrix,
                           extract_white_point, normalize_white_point_luminance)

__all__ = [
    'CloseupRectifier',
    'extract_closeup',
    'rotate_image',
    'DetectionResult',
    'Marker',
    'MarkerDetector',
    'Region',
    'rotated_rect_mask',
    'OrientedBox',
    'fit_oriented_box',
    'TPSModel',
    'apply_tps',
    'build_kernel_matrix',
    'estimate_deformation_magnitude',
    'fit_tps',
    'residual_error',
    'tps_kernel',
    'warp_image',
    'warp_mask',
    'WhiteBalancer',
    'apply_whitebalance_to_image',
    'compute_bradford_matrix',
    'extract_white_point',
    'normalize_white_point_luminance'
]
