"""
Command-line interface for the SfM pipeline.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Tuple

import numpy as np

from seqsfm.errors import SfMError
from seqsfm.geometry.camera import PinholeIntrinsic
from seqsfm.io.image_io import extract_frames_from_video, load_images_from_folder, select_keyframes
from seqsfm.io.scene_io import intrinsic_from_calibration, load_calibration, load_scene_npz, save_scene_npz
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import Scene
from seqsfm.sfm_inc.incremental_sfm import run_sfm_from_frames
from seqsfm.sfm_inc.statistics import save_report_json
from seqsfm.viz.plotly_viz import colorize_landmarks, plot_sfm_reconstruct

logger = logging.getLogger(__name__)

VERBOSE_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sequential Structure-from-Motion from an image folder or a video"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--images", type=str, help="Directory of input images")
    source.add_argument("--video", type=str, help="Input video file")
    parser.add_argument(
        "--every-n",
        type=int,
        default=5,
        help="Keep every Nth video frame (default: 5)",
    )
    parser.add_argument(
        "--max-keyframes",
        type=int,
        default=30,
        help="Maximum number of video keyframes to use (default: 30)",
    )
    parser.add_argument(
        "--calibration",
        type=str,
        default=None,
        help="Calibration .npz file holding K and dist_coeffs",
    )
    parser.add_argument(
        "--focal",
        type=float,
        default=None,
        help="Focal length in pixels when no calibration is given (default: 1.2 * max(width, height))",
    )
    parser.add_argument(
        "--unknown-focal",
        action="store_true",
        help=(
            "Estimate the focal length during resection "
            "(the seed pair still needs a known focal, so use with --resume)"
        ),
    )
    parser.add_argument(
        "--feature",
        type=str,
        default="sift",
        choices=["sift", "orb"],
        help="Feature detector (default: sift)",
    )
    parser.add_argument("--max-features", type=int, default=0, help="Maximum features per image (0 = default)")
    parser.add_argument("--ratio", type=float, default=0.75, help="Lowe ratio for matching (default: 0.75)")
    parser.add_argument(
        "--initial-pair",
        type=int,
        nargs=2,
        default=None,
        metavar=("VIEW_A", "VIEW_B"),
        help="View ids of the seed pair to try first",
    )
    parser.add_argument("--resume", type=str, default=None, help="Scene .npz to continue from")
    parser.add_argument("--local-ba", action="store_true", help="Use local bundle adjustment while growing")
    parser.add_argument(
        "--graph-distance",
        type=int,
        default=1,
        help="View graph distance of local bundle adjustment (default: 1)",
    )
    parser.add_argument("--min-track-length", type=int, default=2, help="Minimum landmark observations (default: 2)")
    parser.add_argument("--seed", type=int, default=0, help="Seed of the robust estimators (default: 0)")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads (default: executor default)")
    parser.add_argument(
        "--save-intermediate",
        action="store_true",
        help="Save a scene snapshot after each resection group",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory (default: output)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate HTML visualization of the reconstruction",
    )
    parser.add_argument(
        "--verbose-level",
        type=str,
        default="info",
        choices=sorted(VERBOSE_LEVELS),
        help="Logging verbosity (default: info)",
    )
    return parser


def load_frames(args: argparse.Namespace) -> Tuple[List[np.ndarray], List[str]]:
    """Frames and their source labels, from an image folder or video keyframes."""
    if args.images:
        return load_images_from_folder(args.images)
    video_frames = extract_frames_from_video(args.video, every_n=args.every_n)
    keep = select_keyframes(video_frames, max_num=args.max_keyframes)
    return [video_frames[i] for i in keep], [f"{args.video}#{i}" for i in keep]


def make_intrinsic(args: argparse.Namespace, width: int, height: int) -> PinholeIntrinsic:
    if args.calibration:
        K, dist_coeffs = load_calibration(args.calibration)
        return intrinsic_from_calibration(K, dist_coeffs, width, height)
    if args.unknown_focal:
        return PinholeIntrinsic(width=width, height=height)
    focal = args.focal if args.focal is not None else 1.2 * max(width, height)
    return PinholeIntrinsic(width=width, height=height, focal=focal)


def write_outputs(args: argparse.Namespace, output_dir: Path, scene: Scene, report, frames) -> None:
    colorize_landmarks(scene, frames)
    scene_path = output_dir / "scene.npz"
    save_scene_npz(scene_path, scene)
    save_report_json(output_dir / "statistics.json", report)
    logger.info(f"Saved scene to {scene_path}")
    if args.visualize:
        html_path = output_dir / "reconstruction.html"
        plot_sfm_reconstruct(scene).write_html(str(html_path))
        logger.info(f"Visualization saved to {html_path}")


def main(argv=None) -> int:
    """
    Entry point of the `seqsfm` console script.

    Usage:
        seqsfm --images path/to/images --focal 1500 --output-dir out/
        seqsfm --video scene.mp4 --calibration calib.npz --local-ba

    Returns:
        Process exit status: 0 on success, 1 when the input is unusable or
        the reconstruction fails.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=VERBOSE_LEVELS[args.verbose_level],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    frames, paths = load_frames(args)
    if len(frames) < 2:
        logger.error("Need at least 2 images for SfM")
        return 1

    height, width = frames[0].shape[:2]
    intrinsic = make_intrinsic(args, width, height)
    logger.info(f"Camera {width}x{height}, focal {intrinsic.focal}")

    config = SequentialSfMConfig(
        initial_pair=tuple(args.initial_pair) if args.initial_pair else None,
        min_track_length=args.min_track_length,
        use_local_ba=args.local_ba,
        local_ba_graph_distance=args.graph_distance,
        seed=args.seed,
        num_workers=args.workers,
        output_dir=output_dir,
        save_intermediate=args.save_intermediate,
    )
    try:
        scene, report = run_sfm_from_frames(
            frames,
            intrinsic,
            config,
            use_sift=args.feature == "sift",
            ratio=args.ratio,
            max_features=args.max_features,
            image_paths=paths,
            initial_scene=load_scene_npz(args.resume) if args.resume else None,
        )
    except SfMError as err:
        logger.error(f"Reconstruction failed: {err}")
        return 1

    write_outputs(args, output_dir, scene, report, frames)
    print(f"Reconstructed {report.n_reconstructed_views}/{report.n_views} views, {report.n_landmarks} landmarks")
    return 0


if __name__ == "__main__":
    sys.exit(main())
