"""
Localization of a new view against the triangulated structure (resection).

`compute_resection` never touches the scene, so several views can be
localized concurrently; `update_scene` commits one result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from seqsfm.errors import ResectionError, ResectionFailure
from seqsfm.geometry.camera import PinholeIntrinsic, Pose, reprojection_errors
from seqsfm.geometry.pnp import estimate_camera_pose_pnp
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import FeaturesPerView, Observation, Scene
from seqsfm.sfm_inc.pyramid_scoring import image_size
from seqsfm.sfm_inc.tracks import Tracks, TracksPerView

logger = logging.getLogger(__name__)


@dataclass
class ResectionData:
    view_id: int
    pose: Pose
    # Set when the view's intrinsic had no focal length and one was estimated.
    intrinsic: Optional[PinholeIntrinsic]
    track_ids: np.ndarray
    feature_ids: np.ndarray
    points_2d: np.ndarray
    points_3d: np.ndarray
    inlier_mask: np.ndarray
    # Residual threshold (pixels) of the view, clamped to the configured bounds.
    threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def estimated_intrinsic(self) -> bool:
        return self.intrinsic is not None


def compute_resection(
    scene: Scene,
    view_id: int,
    tracks: Tracks,
    tracks_per_view: TracksPerView,
    features: FeaturesPerView,
    config: SequentialSfMConfig,
    rng: np.random.Generator,
) -> ResectionData:
    """
    Estimate the pose (and, if unknown, the focal length) of one view from
    its 2D-3D correspondences.

    Args:
        scene: Current reconstruction; read only.
        view_id: View to localize.
        tracks: All tracks.
        tracks_per_view: Track ids seen by each view.
        features: Feature positions per view.
        config: Engine configuration.
        rng: Random generator driving the robust estimator.

    Returns:
        ResectionData ready to be committed with `update_scene`.

    Raises:
        ResectionError: When the view cannot be localized.
    """
    view = scene.views[view_id]
    intrinsic = scene.get_intrinsic(view)
    if intrinsic is None:
        raise ResectionError(view_id, ResectionFailure.MISSING_INTRINSIC)

    track_ids = np.array(
        [track_id for track_id in tracks_per_view.get(view_id, ()) if track_id in scene.landmarks],
        dtype=np.int64,
    )
    if len(track_ids) < config.min_points_per_pose:
        raise ResectionError(
            view_id,
            ResectionFailure.INSUFFICIENT,
            f"{len(track_ids)} correspondences, need {config.min_points_per_pose}",
        )

    feature_ids = np.array([tracks[track_id][view_id] for track_id in track_ids], dtype=np.int64)
    points_2d = features[view_id][feature_ids]
    points_3d = np.array([scene.landmarks[track_id].X for track_id in track_ids])
    size = image_size(scene, view_id)

    known_intrinsic = intrinsic.is_valid()
    if known_intrinsic:
        K = intrinsic.K
        pixels = intrinsic.remove_distortion(points_2d)
    else:
        K = None
        pixels = points_2d

    result = estimate_camera_pose_pnp(points_3d, pixels, size, config.localizer, rng, K=K)
    if result is None:
        raise ResectionError(view_id, ResectionFailure.DEGENERATE, "no pose model found")

    new_intrinsic = None
    if known_intrinsic:
        used_intrinsic = intrinsic
    else:
        new_intrinsic = PinholeIntrinsic(
            width=intrinsic.width,
            height=intrinsic.height,
            focal=float(result.K[0, 0]),
            ppx=float(result.K[0, 2]),
            ppy=float(result.K[1, 2]),
            k1=intrinsic.k1,
            k2=intrinsic.k2,
            locked=intrinsic.locked,
        )
        used_intrinsic = new_intrinsic

    pose = Pose(result.R, result.t)
    threshold = float(np.clip(result.threshold, config.min_residual_threshold, config.max_reprojection_error))
    errors = reprojection_errors(used_intrinsic, pose, points_3d, points_2d)
    inlier_mask = errors <= threshold
    n_inliers = int(inlier_mask.sum())

    if n_inliers < config.min_points_per_pose or n_inliers < config.min_inlier_ratio * len(track_ids):
        raise ResectionError(
            view_id,
            ResectionFailure.TOO_FEW_INLIERS,
            f"{n_inliers}/{len(track_ids)} inliers at {threshold:.2f}px",
        )

    logger.debug(
        f"Resected view {view_id}: {n_inliers}/{len(track_ids)} inliers, threshold {threshold:.2f}px"
        + ("" if known_intrinsic else f", estimated focal {new_intrinsic.focal:.1f}px")
    )
    return ResectionData(
        view_id=view_id,
        pose=pose,
        intrinsic=new_intrinsic,
        track_ids=track_ids,
        feature_ids=feature_ids,
        points_2d=points_2d,
        points_3d=points_3d,
        inlier_mask=inlier_mask,
        threshold=threshold,
    )


def update_scene(scene: Scene, data: ResectionData) -> int:
    """
    Commit a resection: set the view pose, store an estimated intrinsic and
    add the inlier observations to their landmarks.

    Returns:
        Number of observations added.
    """
    view = scene.views[data.view_id]
    scene.set_pose(view, data.pose)
    if data.intrinsic is not None:
        scene.intrinsics[view.intrinsic_id] = data.intrinsic

    n_added = 0
    for track_id, feature_id, x, inlier in zip(data.track_ids, data.feature_ids, data.points_2d, data.inlier_mask):
        if inlier and int(track_id) in scene.landmarks:
            scene.add_observation(int(track_id), data.view_id, Observation(x, int(feature_id)))
            n_added += 1
    return n_added


__all__ = ["ResectionData", "compute_resection", "update_scene"]
