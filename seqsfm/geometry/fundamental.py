"""
Epipolar geometry of uncalibrated pairs.

The linear estimator works on Hartley-conditioned coordinates; the RANSAC
wrapper around OpenCV is what the matcher uses to reject putative matches
that disagree with the dominant epipolar geometry.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np


def normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Hartley conditioning of a point set of any dimension D.

    The points are moved to their centroid and scaled so that their mean
    distance to it is sqrt(D).

    Returns:
        (conditioned points (N, D), homogeneous similarity T of shape
        (D+1, D+1) with T @ [p, 1] = [conditioned p, 1]).
    """
    dim = pts.shape[1]
    centroid = pts.mean(axis=0)
    offsets = pts - centroid
    spread = np.linalg.norm(offsets, axis=1).mean()
    s = np.sqrt(dim) / spread if np.isfinite(spread) and spread > 0 else 1.0

    T = np.diag(np.append(np.full(dim, s), 1.0))
    T[:dim, -1] = -s * centroid
    return s * offsets, T


def _epipolar_design_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    # One row per correspondence: kron(b_h, a_h), so row @ vec(F) = b_h^T F a_h.
    a_h = np.column_stack([a, np.ones(len(a))])
    b_h = np.column_stack([b, np.ones(len(b))])
    return (b_h[:, :, None] * a_h[:, None, :]).reshape(len(a), 9)


def constrain_F(F: np.ndarray) -> np.ndarray:
    """Closest rank-2 matrix in the Frobenius sense."""
    U, sigma, Vt = np.linalg.svd(F)
    sigma[-1] = 0.0
    return (U * sigma) @ Vt


def eight_point(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Linear estimate of F such that x2^T F x1 = 0 for every correspondence.

    Args:
        pts1: (N, 2) points of the first image, N >= 8.
        pts2: (N, 2) matching points of the second image.

    Returns:
        Rank-2 (3, 3) matrix of unit Frobenius norm.

    Raises:
        ValueError: With fewer than 8 correspondences.
    """
    if len(pts1) < 8:
        raise ValueError(f"Need at least 8 point correspondences, got {len(pts1)}")

    cond1, T1 = normalize_points(pts1)
    cond2, T2 = normalize_points(pts2)
    null_vector = np.linalg.svd(_epipolar_design_matrix(cond1, cond2))[2][-1]
    F_cond = constrain_F(null_vector.reshape(3, 3))

    # Undo the conditioning on both sides.
    F = T2.T @ F_cond @ T1
    return F / np.linalg.norm(F)


def sampson_distance(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """First-order geometric distance (pixels) of correspondences to F."""
    x1 = np.hstack([pts1, np.ones((pts1.shape[0], 1))])
    x2 = np.hstack([pts2, np.ones((pts2.shape[0], 1))])
    Fx1 = x1 @ F.T
    Ftx2 = x2 @ F
    numerator = np.sum(x2 * Fx1, axis=1)
    denominator = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        distance = np.abs(numerator) / np.sqrt(denominator)
    return np.where(denominator > 0, distance, np.inf)


def fundamental_matrix_ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    reproj_threshold: float = 1.0,
    confidence: float = 0.999,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split putative matches into epipolar inliers and outliers.

    Args:
        pts1, pts2: (N, 2) matched pixel positions.
        reproj_threshold: Largest point-to-epipolar-line distance (pixels)
            of an inlier.
        confidence: Desired probability of drawing an all-inlier sample.

    Returns:
        (F, mask). When fewer than 8 matches are given or no model is found,
        F is the identity and the mask is all False.
    """
    rejected = (np.eye(3), np.zeros(len(pts1), dtype=bool))
    if len(pts1) < 8:
        return rejected

    F, mask = cv2.findFundamentalMat(
        np.ascontiguousarray(pts1, dtype=np.float32),
        np.ascontiguousarray(pts2, dtype=np.float32),
        cv2.FM_RANSAC,
        reproj_threshold,
        confidence,
    )
    if F is None or mask is None:
        return rejected
    # Several stacked solutions are possible; the first is kept.
    return F[:3], mask.ravel() != 0


__all__ = [
    "normalize_points",
    "eight_point",
    "constrain_F",
    "sampson_distance",
    "fundamental_matrix_ransac",
]
