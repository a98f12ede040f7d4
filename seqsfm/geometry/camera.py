"""
Rigid poses and the pinhole camera model with radial distortion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass
class Pose:
    """
    World-to-camera rigid transform: X_cam = R @ X_world + t.

    `R` is (3, 3) and `t` is stored as a (3, 1) column, as in the rest of
    the pipeline.
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros((3, 1)))

    def __post_init__(self) -> None:
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3, 1)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros((3, 1)))

    @classmethod
    def from_center(cls, R: np.ndarray, center: np.ndarray) -> "Pose":
        """Build a pose from a rotation and a camera center in world coordinates."""
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        C = np.asarray(center, dtype=np.float64).reshape(3, 1)
        return cls(R, -R @ C)

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates, shape (3,)."""
        return (-self.R.T @ self.t).ravel()

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map world points (N, 3) or (3,) into this frame."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            return (self.R @ points.reshape(3, 1) + self.t).ravel()
        return (self.R @ points.T + self.t).T

    def depth(self, points: np.ndarray) -> np.ndarray:
        """Z coordinate of world points in this frame."""
        return np.atleast_2d(self.transform(points))[:, 2]

    def compose(self, other: "Pose") -> "Pose":
        """Return the transform that applies `other` first, then `self`."""
        return Pose(self.R @ other.R, self.R @ other.t + self.t)

    def inverse(self) -> "Pose":
        return Pose(self.R.T, -self.R.T @ self.t)

    def projection_matrix(self) -> np.ndarray:
        """Normalized 3x4 projection matrix [R | t]."""
        return np.hstack([self.R, self.t])

    def copy(self) -> "Pose":
        return Pose(self.R.copy(), self.t.copy())


@dataclass
class PinholeIntrinsic:
    """
    Pinhole camera with a two-coefficient radial distortion model.

    A focal length of None (or <= 0) marks an intrinsic whose calibration is
    not known yet; it is estimated during the first resection of a view
    that uses it.
    """

    width: int
    height: int
    focal: Optional[float] = None
    ppx: Optional[float] = None
    ppy: Optional[float] = None
    k1: float = 0.0
    k2: float = 0.0
    # Intrinsics flagged as locked are held constant by bundle adjustment.
    locked: bool = False

    def __post_init__(self) -> None:
        if self.ppx is None:
            self.ppx = self.width / 2.0
        if self.ppy is None:
            self.ppy = self.height / 2.0

    # Number of values returned by params().
    param_count = 5

    def is_valid(self) -> bool:
        return self.focal is not None and self.focal > 0

    @property
    def K(self) -> np.ndarray:
        if not self.is_valid():
            raise ValueError("intrinsic has no focal length yet")
        return np.array(
            [
                [self.focal, 0.0, self.ppx],
                [0.0, self.focal, self.ppy],
                [0.0, 0.0, 1.0],
            ]
        )

    @property
    def has_distortion(self) -> bool:
        return self.k1 != 0.0 or self.k2 != 0.0

    def params(self) -> np.ndarray:
        """Parameter vector [focal, ppx, ppy, k1, k2]."""
        focal = self.focal if self.is_valid() else 0.0
        return np.array([focal, self.ppx, self.ppy, self.k1, self.k2], dtype=np.float64)

    def update_from_params(self, params: np.ndarray) -> None:
        self.focal, self.ppx, self.ppy, self.k1, self.k2 = (float(v) for v in params)

    @staticmethod
    def project_with_params(params: np.ndarray, points_cam: np.ndarray) -> np.ndarray:
        """
        Vectorized projection of camera-frame points.

        Args:
            params: Either (5,) shared parameters or (N, 5) per-point parameters.
            points_cam: Points in camera coordinates (N, 3).

        Returns:
            Pixel coordinates (N, 2).
        """
        params = np.atleast_2d(params)
        z = points_cam[:, 2]
        xn = points_cam[:, 0] / z
        yn = points_cam[:, 1] / z
        r2 = xn * xn + yn * yn
        radial = 1.0 + params[:, 3] * r2 + params[:, 4] * r2 * r2
        u = params[:, 0] * xn * radial + params[:, 1]
        v = params[:, 0] * yn * radial + params[:, 2]
        return np.stack([u, v], axis=1)

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """Project points given in camera coordinates (N, 3) to pixels (N, 2)."""
        points_cam = np.atleast_2d(np.asarray(points_cam, dtype=np.float64))
        return self.project_with_params(self.params(), points_cam)

    def remove_distortion(self, pixels: np.ndarray, iterations: int = 10) -> np.ndarray:
        """Map distorted pixels (N, 2) to the pixels an undistorted camera would see."""
        pixels = np.atleast_2d(np.asarray(pixels, dtype=np.float64))
        if not self.has_distortion:
            return pixels.copy()
        normalized = self.to_normalized(pixels, iterations)
        return normalized * self.focal + np.array([self.ppx, self.ppy])

    def to_normalized(self, pixels: np.ndarray, iterations: int = 10) -> np.ndarray:
        """
        Undistorted normalized image coordinates (N, 2) for pixels (N, 2).

        The radial model has no closed-form inverse; a fixed-point iteration
        converges for the moderate distortions this model is meant for.
        """
        pixels = np.atleast_2d(np.asarray(pixels, dtype=np.float64))
        xd = (pixels[:, 0] - self.ppx) / self.focal
        yd = (pixels[:, 1] - self.ppy) / self.focal
        if not self.has_distortion:
            return np.stack([xd, yd], axis=1)
        x, y = xd.copy(), yd.copy()
        for _ in range(iterations):
            r2 = x * x + y * y
            radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
            x = xd / radial
            y = yd / radial
        return np.stack([x, y], axis=1)

    def copy(self) -> "PinholeIntrinsic":
        return PinholeIntrinsic(
            width=self.width,
            height=self.height,
            focal=self.focal,
            ppx=self.ppx,
            ppy=self.ppy,
            k1=self.k1,
            k2=self.k2,
            locked=self.locked,
        )


def reprojection_errors(
    intrinsic: PinholeIntrinsic,
    pose: Pose,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> np.ndarray:
    """
    Pixel reprojection error per point; points behind the camera get +inf.
    """
    points_cam = np.atleast_2d(pose.transform(points_3d))
    errors = np.full(points_cam.shape[0], np.inf)
    in_front = points_cam[:, 2] > 0
    if np.any(in_front):
        projected = intrinsic.project(points_cam[in_front])
        errors[in_front] = np.linalg.norm(
            projected - np.atleast_2d(points_2d)[in_front], axis=1
        )
    return errors


def ray_angle_degrees(center_a: np.ndarray, center_b: np.ndarray, point: np.ndarray) -> float:
    """Angle at `point` between the rays towards two camera centers."""
    ray_a = np.asarray(point) - np.asarray(center_a)
    ray_b = np.asarray(point) - np.asarray(center_b)
    denom = np.linalg.norm(ray_a) * np.linalg.norm(ray_b)
    if denom == 0:
        return 0.0
    cos_angle = np.clip(np.dot(ray_a, ray_b) / denom, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)))


def max_ray_angle_degrees(centers: np.ndarray, point: np.ndarray) -> float:
    """Largest pairwise ray angle at `point` among camera centers (K, 3)."""
    rays = np.asarray(point).reshape(1, 3) - np.asarray(centers).reshape(-1, 3)
    norms = np.linalg.norm(rays, axis=1)
    valid = norms > 0
    if np.count_nonzero(valid) < 2:
        return 0.0
    rays = rays[valid] / norms[valid, None]
    cosines = np.clip(rays @ rays.T, -1.0, 1.0)
    return float(np.degrees(np.arccos(cosines.min())))


__all__ = [
    "Pose",
    "PinholeIntrinsic",
    "reprojection_errors",
    "ray_angle_degrees",
    "max_ray_angle_degrees",
]
