"""
Essential matrix estimation and relative pose extraction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from seqsfm.geometry.fundamental import eight_point, sampson_distance
from seqsfm.geometry.robust import ErrorMetric, Kernel, PointToLineMetricMixin, Solver, robust_estimate
from seqsfm.sfm_inc.config import RobustEstimationConfig

logger = logging.getLogger(__name__)


def compute_essential_matrix(K1: np.ndarray, K2: np.ndarray, F: np.ndarray) -> np.ndarray:
    """
    Compute essential matrix from fundamental matrix and camera intrinsics.

    Args:
        K1: Intrinsic matrix of the first camera (3x3).
        K2: Intrinsic matrix of the second camera (3x3).
        F: Fundamental matrix (3x3).

    Returns:
        Essential matrix E (3x3), where E = K2^T @ F @ K1.
    """
    return K2.T @ F @ K1


def fundamental_from_essential(K1: np.ndarray, K2: np.ndarray, E: np.ndarray) -> np.ndarray:
    return np.linalg.inv(K2).T @ E @ np.linalg.inv(K1)


def constrain_E(E: np.ndarray) -> np.ndarray:
    """Project a 3x3 matrix onto the essential manifold (singular values 1, 1, 0)."""
    U, _, Vt = np.linalg.svd(E)
    return U @ np.diag([1.0, 1.0, 0.0]) @ Vt


def _to_normalized(K: np.ndarray, pts: np.ndarray) -> np.ndarray:
    homogeneous = np.hstack([pts, np.ones((pts.shape[0], 1))])
    normalized = homogeneous @ np.linalg.inv(K).T
    return normalized[:, :2] / normalized[:, 2:3]


class EssentialSolver(Solver):
    """8-point essential matrix from undistorted pixels of two calibrated cameras."""

    min_samples = 8

    def __init__(self, K1: np.ndarray, K2: np.ndarray) -> None:
        self.K1 = K1
        self.K2 = K2

    def solve(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        n1 = _to_normalized(self.K1, x)
        n2 = _to_normalized(self.K2, y)
        E = eight_point(n1, n2)
        if not np.all(np.isfinite(E)):
            return []
        return [constrain_E(E)]


class SampsonMetric(PointToLineMetricMixin, ErrorMetric):
    """Sampson distance in pixels of the fundamental matrix induced by E."""

    def __init__(self, K1: np.ndarray, K2: np.ndarray) -> None:
        self.K1 = K1
        self.K2 = K2

    def residuals(self, model: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        F = fundamental_from_essential(self.K1, self.K2, model)
        return sampson_distance(F, x, y)


def extract_RT_essential_matrix(
    E: np.ndarray,
    n1: np.ndarray,
    n2: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract camera rotation and translation from essential matrix.

    Args:
        E: Essential matrix (3x3).
        n1: Normalized image coordinates in the first view (N, 2).
        n2: Normalized image coordinates in the second view (N, 2).
        mask: Optional boolean mask of the correspondences to consider.

    Returns:
        Tuple of (R, t, mask) where:
        - R: Rotation matrix (3x3) from first to second camera.
        - t: Unit translation vector (3, 1) from first to second camera.
        - mask: Boolean mask (N,) of points in front of both cameras.
    """
    if len(n1) == 0 or len(n2) == 0:
        return np.eye(3), np.zeros((3, 1)), np.zeros(0, dtype=bool)

    cv_mask = None
    if mask is not None:
        cv_mask = (np.asarray(mask, dtype=bool).astype(np.uint8) * 255).reshape(-1, 1)

    _, R, t, cheiral_mask = cv2.recoverPose(
        E,
        np.ascontiguousarray(n1, dtype=np.float64),
        np.ascontiguousarray(n2, dtype=np.float64),
        np.eye(3),
        mask=cv_mask,
    )

    # OpenCV returns mask as uint8 (0 or 255). Convert to boolean mask of shape (N,).
    return R, t.reshape(3, 1), cheiral_mask.ravel().astype(bool)


@dataclass
class RelativePoseResult:
    R: np.ndarray
    t: np.ndarray
    E: np.ndarray
    # Robust inliers that also lie in front of both cameras.
    inlier_mask: np.ndarray
    threshold: float


def estimate_relative_pose(
    pts1: np.ndarray,
    pts2: np.ndarray,
    K1: np.ndarray,
    K2: np.ndarray,
    image_size: Tuple[int, int],
    config: RobustEstimationConfig,
    rng: np.random.Generator,
) -> Optional[RelativePoseResult]:
    """
    Robust relative pose between two calibrated views.

    Args:
        pts1: Undistorted pixel positions in the first view (N, 2).
        pts2: Undistorted pixel positions in the second view (N, 2).
        K1: Intrinsic matrix of the first view.
        K2: Intrinsic matrix of the second view.
        image_size: (width, height) of the second image.
        config: Robust estimation policy.
        rng: Random generator driving the sampling.

    Returns:
        RelativePoseResult, or None when no meaningful model was found.
    """
    pts1 = np.asarray(pts1, dtype=np.float64)
    pts2 = np.asarray(pts2, dtype=np.float64)
    if len(pts1) < EssentialSolver.min_samples:
        return None

    kernel = Kernel(EssentialSolver(K1, K2), SampsonMetric(K1, K2), pts1, pts2, image_size)
    result = robust_estimate(kernel, config, rng)
    if result is None:
        return None

    robust_mask = np.zeros(len(pts1), dtype=bool)
    robust_mask[result.inliers] = True
    n1 = _to_normalized(K1, pts1)
    n2 = _to_normalized(K2, pts2)
    R, t, cheiral_mask = extract_RT_essential_matrix(result.model, n1, n2, robust_mask)
    inlier_mask = robust_mask & cheiral_mask

    logger.debug(
        f"Relative pose: {int(inlier_mask.sum())}/{len(pts1)} inliers, "
        f"threshold {result.threshold:.3f}px"
    )
    return RelativePoseResult(
        R=R, t=t, E=result.model, inlier_mask=inlier_mask, threshold=float(result.threshold)
    )


__all__ = [
    "compute_essential_matrix",
    "fundamental_from_essential",
    "constrain_E",
    "EssentialSolver",
    "SampsonMetric",
    "extract_RT_essential_matrix",
    "RelativePoseResult",
    "estimate_relative_pose",
]
