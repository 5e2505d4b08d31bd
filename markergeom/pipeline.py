"""
Calibration Marker Pipeline

Runs marker detection and closeup rectification over a directory of
photographs and records the marker measurements.
Process: Threshold -> Morphology -> Components -> OBB Scoring -> Closeup

Usage:
    markergeom <image_directory> [--output <output_dir>] [--save-closeup] [--save-mask] [--white-balance]
"""

import argparse
import json
import logging
import math
import sys
import numpy as np
from pathlib import Path
from typing import Dict

from .closeup import CloseupRectifier
from .components import region_channel_stats
from .config import PipelineConfig, setup_logging
from .image_utils import load_rgb, save_mask, save_rgb
from .marker_detection import MarkerDetector
from .whitebalance import WhiteBalancer

logger = logging.getLogger(__name__)

IMAGE_PATTERNS = ['*.jpg', '*.jpeg', '*.png', '*.tif', '*.tiff', '*.JPG', '*.JPEG', '*.PNG']


class MarkerPipeline:
    """Detection and rectification for one photograph at a time."""

    def __init__(self,
                 detection_config: dict = None,
                 closeup_config: dict = None,
                 whitebalance_config: dict = None):
        """Initialize module components."""
        self.detector = MarkerDetector(detection_config)
        self.rectifier = CloseupRectifier(closeup_config)
        self.balancer = WhiteBalancer(whitebalance_config)
        self.white_balance = bool(self.balancer.config['ENABLED'])

    def process_image(self, image: np.ndarray, rotation_degrees: float = 0.0) -> Dict:
        """
        Run detection and closeup extraction on an image.

        Args:
            image: Float RGB image
            rotation_degrees: Extra closeup rotation relative to the detected angle

        Returns:
            Dictionary with the detection result, closeup and measurements;
            'balanced' holds the white balanced image when enabled
        """
        results = {}

        detection = self.detector.detect(image)
        results['detection'] = detection
        results['message'] = detection.message

        if not detection.found:
            return results

        marker = detection.marker
        results['closeup'] = self.rectifier.extract(image, marker, rotation_degrees)

        stats, _ = region_channel_stats(image, marker.mask)
        results['summary'] = {
            'centroid': [round(v, 2) for v in marker.centroid],
            'corners': [round(v, 2) for v in marker.corners],
            'pixel_count': marker.pixel_count,
            'area_percentage': round(detection.area_percentage, 4),
            'rotation_degrees': round(math.degrees(marker.rotation_angle), 3),
            'aspect_ratio': round(marker.aspect_ratio, 4),
            'density': round(marker.density, 4),
            'score': round(marker.score, 4),
            'num_components': detection.num_components,
            'channel_stats': stats
        }

        if self.white_balance:
            white = self.balancer.measure(image, marker.mask)
            results['balanced'] = self.balancer.balance(image, marker.mask, src_white=white)
            results['summary']['white_point_xyz'] = [round(float(v), 5) for v in white]

        return results


def build_parser() -> argparse.ArgumentParser:
    defaults = PipelineConfig.MARKER_DETECTION
    parser = argparse.ArgumentParser(description='Calibration marker detection pipeline')
    parser.add_argument('input_dir', type=str, help='Directory containing input images')
    parser.add_argument('--output', '-o', type=str, help='Output directory (default: input_dir/marker_results)')
    parser.add_argument('--threshold', type=float, default=defaults['THRESHOLD'])
    parser.add_argument('--threshold-upper', type=float, default=defaults['THRESHOLD_UPPER'])
    parser.add_argument('--min-area', type=int, default=defaults['MIN_COMPONENT_AREA'])
    parser.add_argument('--aspect-ratio', type=float, default=defaults['PREFERRED_ASPECT_RATIO'])
    parser.add_argument('--aspect-weight', type=float, default=defaults['ASPECT_RATIO_WEIGHT'])
    parser.add_argument('--kernel-size', type=int, default=defaults['KERNEL_SIZE'])
    parser.add_argument('--adaptive', action='store_true', help='Use adaptive local thresholding')
    parser.add_argument('--adaptive-window', type=int, default=defaults['ADAPTIVE_WINDOW'])
    parser.add_argument('--adaptive-offset', type=float, default=defaults['ADAPTIVE_OFFSET'])
    parser.add_argument('--rotation', type=float, default=PipelineConfig.CLOSEUP['ROTATION_DEGREES'],
                        help='Closeup rotation in degrees relative to the detected angle')
    parser.add_argument('--save-closeup', action='store_true', help='Write rectified closeup images')
    parser.add_argument('--save-mask', action='store_true', help='Write marker masks')
    parser.add_argument('--white-balance', action='store_true',
                        help='White balance each image from its marker and write the result')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging('DEBUG' if args.verbose else None)

    input_dir = Path(args.input_dir)
    if not input_dir.exists():
        print(f"Error: Input directory does not exist: {input_dir}")
        sys.exit(1)

    output_dir = Path(args.output) if args.output else input_dir / "marker_results"
    output_dir.mkdir(exist_ok=True, parents=True)

    image_files = []
    for pattern in IMAGE_PATTERNS:
        image_files.extend(input_dir.glob(pattern))
    image_files = sorted(set(image_files))

    print(f"Found {len(image_files)} image(s) to process\n")
    if not image_files:
        print("No images found!")
        sys.exit(1)

    try:
        pipeline = MarkerPipeline({
            'THRESHOLD': args.threshold,
            'THRESHOLD_UPPER': args.threshold_upper,
            'MIN_COMPONENT_AREA': args.min_area,
            'PREFERRED_ASPECT_RATIO': args.aspect_ratio,
            'ASPECT_RATIO_WEIGHT': args.aspect_weight,
            'KERNEL_SIZE': args.kernel_size,
            'ADAPTIVE': args.adaptive,
            'ADAPTIVE_WINDOW': args.adaptive_window,
            'ADAPTIVE_OFFSET': args.adaptive_offset
        }, whitebalance_config={'ENABLED': args.white_balance})
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(2)

    summary = {}
    for idx, img_path in enumerate(image_files, 1):
        print(f"[{idx}/{len(image_files)}] Processing {img_path.name}...")

        image = load_rgb(img_path)
        if image is None:
            logger.warning("Could not read image %s, skipping", img_path)
            continue

        results = pipeline.process_image(image, args.rotation)
        print(f"  {results['message']}")

        if 'summary' not in results:
            summary[img_path.name] = None
            continue
        summary[img_path.name] = results['summary']

        if args.save_closeup:
            out_path = output_dir / f"{img_path.stem}_closeup.png"
            save_rgb(out_path, results['closeup'])
            print(f"  Saved: {out_path.name}")

        if args.save_mask:
            out_path = output_dir / f"{img_path.stem}_mask.png"
            save_mask(out_path, results['detection'].marker.mask)
            print(f"  Saved: {out_path.name}")

        if 'balanced' in results:
            out_path = output_dir / f"{img_path.stem}_balanced.png"
            save_rgb(out_path, results['balanced'])
            print(f"  Saved: {out_path.name}")

    with open(output_dir / "summary.json", 'w') as f:
        json.dump(summary, f, indent=2)

    found = sum(1 for v in summary.values() if v is not None)
    print(f"\nDone! Marker found in {found}/{len(summary)} image(s). Results saved to: {output_dir}")


if __name__ == "__main__":
    main()
