"""
Loading the input frames: image folders or subsampled video.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")


def _to_rgb(bgr: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def load_images_from_folder(
    folder: Union[str, Path],
    max_images: Optional[int] = None,
) -> Tuple[List[np.ndarray], List[str]]:
    """
    Read the images of `folder` in file-name order. Unreadable files are
    skipped with a warning.

    Returns:
        (RGB uint8 images, their paths).
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise ValueError(f"Not a directory: {folder}")

    candidates = sorted(p for p in folder.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)
    images: List[np.ndarray] = []
    paths: List[str] = []
    for path in candidates[:max_images]:
        bgr = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if bgr is None:
            logger.warning(f"Could not read image {path}; skipping")
            continue
        images.append(_to_rgb(bgr))
        paths.append(str(path))
    logger.info(f"Loaded {len(images)} images from {folder}")
    return images, paths


def iter_video_frames(video_path: Union[str, Path], every_n: int = 1) -> Iterator[np.ndarray]:
    """Yield every `every_n`-th frame of a video as an RGB array."""
    if every_n < 1:
        raise ValueError(f"every_n must be >= 1, got {every_n}")
    capture = cv2.VideoCapture(str(video_path))
    if not capture.isOpened():
        raise ValueError(f"Could not open video file: {video_path}")
    try:
        index = 0
        ok, bgr = capture.read()
        while ok:
            if index % every_n == 0:
                yield _to_rgb(bgr)
            index += 1
            ok, bgr = capture.read()
    finally:
        capture.release()


def extract_frames_from_video(
    video_path: Union[str, Path],
    every_n: int = 5,
    max_frames: Optional[int] = None,
) -> List[np.ndarray]:
    """
    Args:
        video_path: Input video.
        every_n: Keep one frame out of `every_n`.
        max_frames: Stop after this many kept frames (None = whole video).
    """
    frames: List[np.ndarray] = []
    for frame in iter_video_frames(video_path, every_n):
        frames.append(frame)
        if max_frames is not None and len(frames) >= max_frames:
            break
    logger.info(f"Extracted {len(frames)} frames from {video_path}")
    return frames


def select_keyframes(frames: List[np.ndarray], max_num: int = 20) -> List[int]:
    """Indices of at most `max_num` frames spread evenly over the sequence, first and last included."""
    if len(frames) <= max_num:
        return list(range(len(frames)))
    return np.unique(np.round(np.linspace(0, len(frames) - 1, max_num)).astype(int)).tolist()


__all__ = ["load_images_from_folder", "iter_video_frames", "extract_frames_from_video", "select_keyframes"]
