"""
Perspective-n-Point (PnP) pose estimation.

Calibrated cameras use the P3P minimal solver; cameras without a known focal
length use a 6-point DLT whose projection matrix is decomposed into
intrinsics and pose.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
from scipy.linalg import rq

from seqsfm.geometry.fundamental import normalize_points
from seqsfm.geometry.robust import ErrorMetric, Kernel, RobustResult, Solver, robust_estimate
from seqsfm.sfm_inc.config import RobustEstimationConfig

logger = logging.getLogger(__name__)


def _project(P: np.ndarray, points_3d: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    homogeneous = np.hstack([points_3d, np.ones((points_3d.shape[0], 1))])
    projected = homogeneous @ P.T
    return projected[:, :2], projected[:, 2]


class ProjectionMetric(ErrorMetric):
    """Pixel distance between observed points and projected 3D points."""

    def residuals(self, model: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        xy, w = _project(model, x)
        errors = np.full(x.shape[0], np.inf)
        in_front = w > 1e-12
        errors[in_front] = np.linalg.norm(xy[in_front] / w[in_front, None] - y[in_front], axis=1)
        return errors


class P3PSolver(Solver):
    """Minimal calibrated resection; models are pixel projection matrices K [R | t]."""

    min_samples = 3
    max_models = 4

    def __init__(self, K: np.ndarray) -> None:
        self.K = K

    def solve(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        try:
            n_solutions, rvecs, tvecs = cv2.solveP3P(
                np.ascontiguousarray(x, dtype=np.float64),
                np.ascontiguousarray(y, dtype=np.float64),
                self.K,
                None,
                flags=cv2.SOLVEPNP_P3P,
            )
        except cv2.error:
            # Degenerate (e.g. collinear) sample.
            return []
        models = []
        for rvec, tvec in zip(rvecs[:n_solutions], tvecs[:n_solutions]):
            R, _ = cv2.Rodrigues(rvec)
            models.append(self.K @ np.hstack([R, tvec.reshape(3, 1)]))
        return models

    def solve_nonminimal(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        success, rvec, tvec = cv2.solvePnP(
            np.ascontiguousarray(x, dtype=np.float64),
            np.ascontiguousarray(y, dtype=np.float64),
            self.K,
            None,
            flags=cv2.SOLVEPNP_EPNP,
        )
        if not success:
            return []
        R, _ = cv2.Rodrigues(rvec)
        return [self.K @ np.hstack([R, tvec.reshape(3, 1)])]


class ResectionDLTSolver(Solver):
    """Normalized 6-point DLT for an uncalibrated 3x4 projection matrix."""

    min_samples = 6

    def solve(self, x: np.ndarray, y: np.ndarray) -> List[np.ndarray]:
        X_norm, T3 = normalize_points(x)
        x_norm, T2 = normalize_points(y)
        n = X_norm.shape[0]

        A = np.zeros((2 * n, 12))
        Xh = np.hstack([X_norm, np.ones((n, 1))])
        A[0::2, 0:4] = Xh
        A[0::2, 8:12] = -x_norm[:, 0:1] * Xh
        A[1::2, 4:8] = Xh
        A[1::2, 8:12] = -x_norm[:, 1:2] * Xh

        _, S, Vt = np.linalg.svd(A)
        if S[-2] < 1e-12 * max(S[0], 1e-300):
            return []
        P = np.linalg.inv(T2) @ Vt[-1].reshape(3, 4) @ T3

        # Make the majority of the sample lie in front of the camera.
        _, w = _project(P, x)
        if np.median(w) < 0:
            P = -P
        return [P]


def decompose_projection_matrix(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split P ~ K [R | t] into K (upper triangular, positive diagonal, K[2, 2] = 1),
    a proper rotation R and the translation t (3, 1).
    """
    P = np.asarray(P, dtype=np.float64)
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    K, R = rq(P[:, :3])
    signs = np.sign(np.diag(K))
    signs[signs == 0] = 1.0
    D = np.diag(signs)
    K = K @ D
    R = D @ R
    t = np.linalg.solve(K, P[:, 3]).reshape(3, 1)
    K = K / K[2, 2]
    return K, R, t


@dataclass
class PnPResult:
    R: np.ndarray
    t: np.ndarray
    K: np.ndarray
    inlier_mask: np.ndarray
    # Inlier threshold in pixels: estimated (a-contrario) or the fixed one.
    threshold: float


def refine_pose(
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Non-linear (Levenberg-Marquardt) refinement of a pose on its inliers."""
    if len(points_3d) < 4:
        return R, t
    rvec, _ = cv2.Rodrigues(R)
    success, rvec, tvec = cv2.solvePnP(
        np.ascontiguousarray(points_3d, dtype=np.float64),
        np.ascontiguousarray(points_2d, dtype=np.float64),
        K,
        None,
        rvec=rvec.copy(),
        tvec=np.asarray(t, dtype=np.float64).reshape(3, 1).copy(),
        useExtrinsicGuess=True,
        flags=cv2.SOLVEPNP_ITERATIVE,
    )
    if not success:
        return R, t
    R_refined, _ = cv2.Rodrigues(rvec)
    return R_refined, tvec.reshape(3, 1)


def estimate_camera_pose_pnp(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    image_size: Tuple[int, int],
    config: RobustEstimationConfig,
    rng: np.random.Generator,
    K: Optional[np.ndarray] = None,
) -> Optional[PnPResult]:
    """
    Robustly estimate a camera pose from 3D-2D correspondences.

    Args:
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding undistorted pixel positions (N, 2).
        image_size: (width, height) of the image, used by the a-contrario test.
        config: Robust estimation policy.
        rng: Random generator driving the sampling.
        K: Intrinsic matrix, or None when the focal length is unknown.

    Returns:
        PnPResult, or None when no model could be estimated. When K is None
        the returned K holds the estimated focal length with the principal
        point at the image center.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64)
    points_2d = np.asarray(points_2d, dtype=np.float64)

    solver = P3PSolver(K) if K is not None else ResectionDLTSolver()
    kernel = Kernel(solver, ProjectionMetric(), points_3d, points_2d, image_size)
    result: Optional[RobustResult] = robust_estimate(kernel, config, rng)
    if result is None:
        return None

    if K is not None:
        K_est = K
        R = np.linalg.solve(K, result.model[:, :3])
        t = np.linalg.solve(K, result.model[:, 3]).reshape(3, 1)
        # Orthonormalize the rotation recovered from a pixel projection matrix.
        U, _, Vt = np.linalg.svd(R)
        R = U @ Vt
    else:
        K_dlt, R, t = decompose_projection_matrix(result.model)
        focal = 0.5 * (K_dlt[0, 0] + K_dlt[1, 1])
        if not np.isfinite(focal) or focal <= 0:
            return None
        width, height = image_size
        K_est = np.array([[focal, 0.0, width / 2.0], [0.0, focal, height / 2.0], [0.0, 0.0, 1.0]])

    inliers = result.inliers
    R, t = refine_pose(K_est, points_3d[inliers], points_2d[inliers], R, t)

    inlier_mask = np.zeros(len(points_3d), dtype=bool)
    inlier_mask[inliers] = True

    C = (-R.T @ t).ravel()
    logger.debug(
        f"PnP pose: center {np.round(C, 3)}, {int(inlier_mask.sum())}/{len(points_3d)} inliers, "
        f"threshold {result.threshold:.3f}px"
    )
    return PnPResult(R=R, t=t, K=K_est, inlier_mask=inlier_mask, threshold=float(result.threshold))


__all__ = [
    "ProjectionMetric",
    "P3PSolver",
    "ResectionDLTSolver",
    "decompose_projection_matrix",
    "PnPResult",
    "refine_pose",
    "estimate_camera_pose_pnp",
]
