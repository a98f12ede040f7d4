"""
3D point triangulation from two or more calibrated views.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from seqsfm.geometry.camera import PinholeIntrinsic, Pose, max_ray_angle_degrees, reprojection_errors

logger = logging.getLogger(__name__)


def triangulate_two_view(
    pose1: Pose,
    pose2: Pose,
    n1: np.ndarray,
    n2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate 3D points from matched normalized coordinates in two views.

    Args:
        pose1: Pose of the first camera.
        pose2: Pose of the second camera.
        n1: Normalized (undistorted, K removed) points in the first view (N, 2).
        n2: Normalized points in the second view (N, 2).

    Returns:
        Triangulated 3D points (N, 3) in world coordinates. Points at
        infinity come back as non-finite rows.
    """
    if len(n1) == 0:
        return np.zeros((0, 3))

    P1 = pose1.projection_matrix()
    P2 = pose2.projection_matrix()

    # Triangulate points (OpenCV expects points as (2, N))
    points_4d = cv2.triangulatePoints(
        P1,
        P2,
        np.ascontiguousarray(np.asarray(n1, dtype=np.float64).T),
        np.ascontiguousarray(np.asarray(n2, dtype=np.float64).T),
    )

    # Convert from homogeneous to inhomogeneous coordinates
    with np.errstate(divide="ignore", invalid="ignore"):
        points_3d = points_4d[:3] / points_4d[3]
    return points_3d.T


def triangulate_dlt(poses: Sequence[Pose], normalized: np.ndarray) -> np.ndarray:
    """
    Linear (DLT) triangulation of one point seen by several views.

    Args:
        poses: Poses of the K observing cameras.
        normalized: Normalized image coordinates (K, 2).

    Returns:
        3D point (3,); non-finite when the point is at infinity.
    """
    A = np.zeros((2 * len(poses), 4))
    for i, (pose, (x, y)) in enumerate(zip(poses, normalized)):
        P = pose.projection_matrix()
        A[2 * i] = x * P[2] - P[0]
        A[2 * i + 1] = y * P[2] - P[1]
    _, _, Vt = np.linalg.svd(A)
    X = Vt[-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        return X[:3] / X[3]


def pairwise_ray_angles(center_a: np.ndarray, center_b: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Ray angle (degrees) at each point (N, 3) between two camera centers."""
    ray_a = points - np.asarray(center_a).reshape(1, 3)
    ray_b = points - np.asarray(center_b).reshape(1, 3)
    denom = np.linalg.norm(ray_a, axis=1) * np.linalg.norm(ray_b, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        cosines = np.sum(ray_a * ray_b, axis=1) / denom
    cosines = np.where(denom > 0, np.clip(cosines, -1.0, 1.0), 1.0)
    return np.degrees(np.arccos(cosines))


@dataclass
class TriangulationResult:
    X: np.ndarray
    # Observations kept by the triangulation, aligned with the input order.
    inlier_mask: np.ndarray
    residuals: np.ndarray


def _residuals(
    X: np.ndarray,
    poses: Sequence[Pose],
    intrinsics: Sequence[PinholeIntrinsic],
    pixels: np.ndarray,
) -> np.ndarray:
    if not np.all(np.isfinite(X)):
        return np.full(len(poses), np.inf)
    return np.array(
        [
            reprojection_errors(intrinsic, pose, X.reshape(1, 3), pixel.reshape(1, 2))[0]
            for pose, intrinsic, pixel in zip(poses, intrinsics, pixels)
        ]
    )


def triangulate_track(
    poses: Sequence[Pose],
    intrinsics: Sequence[PinholeIntrinsic],
    pixels: np.ndarray,
    thresholds: np.ndarray,
    min_angle: float,
    min_track_length: int = 2,
    rng: Optional[np.random.Generator] = None,
    max_iterations: int = 128,
) -> Optional[TriangulationResult]:
    """
    Triangulate one track from its observations in reconstructed views.

    Two observations are triangulated directly. With more, pairs of
    observations are hypothesized (LO-RANSAC, per-view inlier thresholds)
    and the point is re-estimated by DLT over the best inlier set.

    Args:
        poses: Poses of the K observing views.
        intrinsics: Intrinsics of the K observing views.
        pixels: Observed (distorted) pixel positions (K, 2).
        thresholds: Per-view residual thresholds in pixels (K,).
        min_angle: Minimum largest pairwise ray angle in degrees.
        min_track_length: Minimum number of kept observations.
        rng: Generator used to sample observation pairs when there are
            too many to enumerate.
        max_iterations: Maximum number of pair hypotheses.

    Returns:
        TriangulationResult, or None when the track is rejected.
    """
    n_views = len(poses)
    if n_views < 2:
        return None
    pixels = np.asarray(pixels, dtype=np.float64).reshape(n_views, 2)
    thresholds = np.asarray(thresholds, dtype=np.float64).reshape(n_views)
    normalized = np.vstack(
        [intrinsic.to_normalized(pixel.reshape(1, 2)) for intrinsic, pixel in zip(intrinsics, pixels)]
    )

    if n_views == 2:
        X = triangulate_two_view(poses[0], poses[1], normalized[:1], normalized[1:])[0]
        residuals = _residuals(X, poses, intrinsics, pixels)
        inlier_mask = residuals <= thresholds
    else:
        pairs: List[tuple] = list(itertools.combinations(range(n_views), 2))
        if len(pairs) > max_iterations:
            rng = rng if rng is not None else np.random.default_rng(0)
            picked = rng.choice(len(pairs), size=max_iterations, replace=False)
            pairs = [pairs[i] for i in np.sort(picked)]

        best_mask = None
        best_cost = np.inf
        for i, j in pairs:
            X = triangulate_two_view(poses[i], poses[j], normalized[i : i + 1], normalized[j : j + 1])[0]
            residuals = _residuals(X, poses, intrinsics, pixels)
            mask = residuals <= thresholds
            cost = float(np.sum(np.minimum(residuals, thresholds)))
            if best_mask is None or mask.sum() > best_mask.sum() or (
                mask.sum() == best_mask.sum() and cost < best_cost
            ):
                best_mask, best_cost = mask, cost
        if best_mask is None or best_mask.sum() < 2:
            return None

        # Local optimization: DLT over the inliers until the set stops changing.
        inlier_mask = best_mask
        X = np.full(3, np.nan)
        residuals = np.full(n_views, np.inf)
        for _ in range(3):
            kept = np.flatnonzero(inlier_mask)
            X = triangulate_dlt([poses[k] for k in kept], normalized[kept])
            residuals = _residuals(X, poses, intrinsics, pixels)
            new_mask = residuals <= thresholds
            if np.array_equal(new_mask, inlier_mask) or new_mask.sum() < 2:
                inlier_mask = new_mask
                break
            inlier_mask = new_mask

    if inlier_mask.sum() < max(2, min_track_length):
        return None
    centers = np.array([poses[k].center for k in np.flatnonzero(inlier_mask)])
    if max_ray_angle_degrees(centers, X) < min_angle:
        return None
    return TriangulationResult(X=X, inlier_mask=inlier_mask, residuals=residuals)


__all__ = [
    "triangulate_two_view",
    "triangulate_dlt",
    "pairwise_ray_angles",
    "TriangulationResult",
    "triangulate_track",
]
