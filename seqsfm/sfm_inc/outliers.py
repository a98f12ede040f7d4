"""
Removal of outlying observations and poorly conditioned landmarks.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

import numpy as np

from seqsfm.geometry.camera import max_ray_angle_degrees, reprojection_errors
from seqsfm.sfm_inc.data_structures import Scene

logger = logging.getLogger(__name__)


def remove_outliers_residual(scene: Scene, precision: float, min_track_length: int = 2) -> int:
    """
    Drop observations whose reprojection error exceeds `precision` pixels or
    whose landmark lies behind the camera.

    Landmarks left with fewer than `min_track_length` observations are
    deleted. Observations of views without a pose are left untouched.

    Returns:
        Number of removed observations.
    """
    # view id -> [(landmark id, X, x)]
    per_view: Dict[int, List[Tuple[int, np.ndarray, np.ndarray]]] = {}
    for landmark_id, landmark in scene.landmarks.items():
        for view_id, observation in landmark.observations.items():
            per_view.setdefault(view_id, []).append((landmark_id, landmark.X, observation.x))

    n_removed = 0
    for view_id in sorted(per_view):
        if not scene.is_pose_and_intrinsic_defined(view_id):
            continue
        view = scene.views[view_id]
        entries = per_view[view_id]
        points_3d = np.array([X for _, X, _ in entries])
        points_2d = np.array([x for _, _, x in entries])
        errors = reprojection_errors(scene.get_intrinsic(view), scene.get_pose(view), points_3d, points_2d)
        for (landmark_id, _, _), error in zip(entries, errors):
            if not error <= precision:
                scene.remove_observation(landmark_id, view_id)
                n_removed += 1

    n_deleted = 0
    for landmark_id in [lid for lid, lm in scene.landmarks.items() if len(lm.observations) < min_track_length]:
        scene.remove_landmark(landmark_id)
        n_deleted += 1

    logger.debug(
        f"Residual filter ({precision:.2f}px): removed {n_removed} observations, "
        f"deleted {n_deleted} landmarks"
    )
    return n_removed


def remove_outliers_angle(scene: Scene, min_angle: float) -> int:
    """
    Delete landmarks whose largest pairwise ray angle is below `min_angle`
    degrees.

    Returns:
        Number of deleted landmarks.
    """
    centers: Dict[int, np.ndarray] = {}
    to_delete = []
    for landmark_id, landmark in scene.landmarks.items():
        view_centers = []
        for view_id in landmark.observations:
            if view_id not in centers:
                if not scene.is_pose_and_intrinsic_defined(view_id):
                    continue
                centers[view_id] = scene.get_pose(scene.views[view_id]).center
            view_centers.append(centers[view_id])
        if len(view_centers) < 2 or max_ray_angle_degrees(np.array(view_centers), landmark.X) < min_angle:
            to_delete.append(landmark_id)

    for landmark_id in to_delete:
        scene.remove_landmark(landmark_id)

    logger.debug(f"Angle filter ({min_angle:.1f} deg): deleted {len(to_delete)} landmarks")
    return len(to_delete)


def remove_outliers(
    scene: Scene,
    precision: float,
    min_angle: float,
    min_track_length: int = 2,
) -> int:
    """
    Residual filter followed by the angle filter.

    Returns:
        Total number of removed observations and landmarks. Calling it again
        with the same thresholds removes nothing.
    """
    n_residual = remove_outliers_residual(scene, precision, min_track_length)
    n_angle = remove_outliers_angle(scene, min_angle)
    if n_residual or n_angle:
        logger.info(
            f"Outlier removal: {n_residual} observations (residual > {precision:.2f}px), "
            f"{n_angle} landmarks (angle < {min_angle:.1f} deg)"
        )
    return n_residual + n_angle


__all__ = ["remove_outliers_residual", "remove_outliers_angle", "remove_outliers"]
