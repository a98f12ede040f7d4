"""
Local features of every view: pixel positions plus descriptors.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# ORB has no "unlimited" setting; this is its own default.
ORB_DEFAULT_FEATURES = 500


def create_detector(use_sift: bool = True, max_features: int = 0) -> cv2.Feature2D:
    """SIFT (float descriptors) or ORB (binary descriptors), capped at `max_features` when > 0."""
    if use_sift:
        return cv2.SIFT_create(nfeatures=max_features)
    return cv2.ORB_create(nfeatures=max_features or ORB_DEFAULT_FEATURES)


def detect_keypoints(
    image: np.ndarray,
    detector: cv2.Feature2D,
) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
    """
    Run `detector` on an RGB or grayscale uint8 image.

    Returns:
        (keypoints, descriptors). An image without features gives an empty
        list and a (0, D) descriptor array, so callers never see None.
    """
    gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY) if image.ndim == 3 else image
    keypoints, descriptors = detector.detectAndCompute(gray, None)
    if descriptors is None:
        descriptors = np.empty((0, detector.descriptorSize()), dtype=np.float32)
    return list(keypoints), descriptors


def extract_features(
    images: Sequence[np.ndarray],
    use_sift: bool = True,
    max_features: int = 0,
) -> Tuple[Dict[int, np.ndarray], Dict[int, np.ndarray]]:
    """
    Detect features in every image; view ids are the image indices.

    Returns:
        ({view_id: (N, 2) pixel positions}, {view_id: (N, D) descriptors}).
    """
    detector = create_detector(use_sift, max_features)
    positions: Dict[int, np.ndarray] = {}
    descriptors: Dict[int, np.ndarray] = {}
    for view_id, image in enumerate(images):
        keypoints, descriptors[view_id] = detect_keypoints(image, detector)
        positions[view_id] = np.array([kp.pt for kp in keypoints], dtype=np.float64).reshape(-1, 2)
        logger.debug(f"View {view_id}: {len(keypoints)} keypoints")
    counts = [len(p) for p in positions.values()]
    logger.info(
        f"Detected features in {len(images)} images "
        f"({'SIFT' if use_sift else 'ORB'}, median {int(np.median(counts)) if counts else 0} per image)"
    )
    return positions, descriptors


__all__ = ["create_detector", "detect_keypoints", "extract_features"]
