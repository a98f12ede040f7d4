"""
Calibration and scene I/O utilities (.npz files).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple, Union

import numpy as np

from seqsfm.geometry.camera import PinholeIntrinsic, Pose
from seqsfm.sfm_inc.data_structures import (
    Landmark,
    Observation,
    Rig,
    RigSubPose,
    RigSubPoseStatus,
    Scene,
    View,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def save_calibration(
    output_path: PathLike,
    K: np.ndarray,
    dist_coeffs: np.ndarray,
) -> None:
    """
    Save camera intrinsics and distortion coefficients to a .npz file.

    Args:
        output_path: Path where the calibration data will be saved (.npz file).
        K: Intrinsic camera matrix (3x3).
        dist_coeffs: Distortion coefficients array (OpenCV order, k1 and k2 first).
    """
    np.savez(output_path, K=K, dist_coeffs=dist_coeffs)


def load_calibration(
    input_path: PathLike,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load camera intrinsics and distortion coefficients from a .npz file.

    Returns:
        Tuple of (K, dist_coeffs).
    """
    with np.load(input_path) as data:
        return data["K"], data["dist_coeffs"]


def intrinsic_from_calibration(
    K: np.ndarray,
    dist_coeffs: np.ndarray,
    width: int,
    height: int,
) -> PinholeIntrinsic:
    """
    Build a pinhole intrinsic from an OpenCV calibration. Only the two
    radial terms are kept; fx and fy are averaged.
    """
    dist = np.zeros(2)
    coeffs = np.asarray(dist_coeffs, dtype=np.float64).ravel()[:2]
    dist[: len(coeffs)] = coeffs
    return PinholeIntrinsic(
        width=width,
        height=height,
        focal=float(0.5 * (K[0, 0] + K[1, 1])),
        ppx=float(K[0, 2]),
        ppy=float(K[1, 2]),
        k1=float(dist[0]),
        k2=float(dist[1]),
    )


def save_scene_npz(output_path: PathLike, scene: Scene) -> None:
    """
    Serialize a Scene (views, intrinsics, poses, rigs and landmarks) to a .npz file.

    Args:
        output_path: Path where the scene data will be saved (.npz file).
        scene: Scene to save.
    """
    view_ids = sorted(scene.views)
    views = [scene.views[v] for v in view_ids]

    intrinsic_ids = sorted(scene.intrinsics)
    intrinsics = [scene.intrinsics[i] for i in intrinsic_ids]

    pose_ids = sorted(scene.poses)

    sub_poses = [
        (rig_id, sub_id, rig.sub_poses[sub_id])
        for rig_id, rig in sorted(scene.rigs.items())
        for sub_id in sorted(rig.sub_poses)
    ]

    landmark_ids = sorted(scene.landmarks)
    obs = [
        (landmark_id, view_id, o.feature_id, o.x)
        for landmark_id in landmark_ids
        for view_id, o in sorted(scene.landmarks[landmark_id].observations.items())
    ]

    np.savez(
        output_path,
        view_ids=np.array(view_ids, dtype=np.int64),
        view_intrinsic_ids=np.array([v.intrinsic_id for v in views], dtype=np.int64),
        view_pose_ids=np.array([v.pose_id for v in views], dtype=np.int64),
        view_sizes=np.array([(v.width, v.height) for v in views], dtype=np.int64).reshape(-1, 2),
        view_rig_ids=np.array([-1 if v.rig_id is None else v.rig_id for v in views], dtype=np.int64),
        view_sub_pose_ids=np.array([-1 if v.sub_pose_id is None else v.sub_pose_id for v in views], dtype=np.int64),
        view_image_paths=np.array([v.image_path for v in views], dtype=str),
        intrinsic_ids=np.array(intrinsic_ids, dtype=np.int64),
        intrinsic_sizes=np.array([(i.width, i.height) for i in intrinsics], dtype=np.int64).reshape(-1, 2),
        intrinsic_params=np.array([i.params() for i in intrinsics]).reshape(-1, PinholeIntrinsic.param_count),
        intrinsic_locked=np.array([i.locked for i in intrinsics], dtype=bool),
        pose_ids=np.array(pose_ids, dtype=np.int64),
        pose_Rs=np.array([scene.poses[p].R for p in pose_ids]).reshape(-1, 3, 3),
        pose_ts=np.array([scene.poses[p].t.ravel() for p in pose_ids]).reshape(-1, 3),
        sub_pose_rig_ids=np.array([r for r, _, _ in sub_poses], dtype=np.int64),
        sub_pose_ids=np.array([s for _, s, _ in sub_poses], dtype=np.int64),
        sub_pose_Rs=np.array([sp.pose.R for _, _, sp in sub_poses]).reshape(-1, 3, 3),
        sub_pose_ts=np.array([sp.pose.t.ravel() for _, _, sp in sub_poses]).reshape(-1, 3),
        sub_pose_status=np.array([sp.status.value for _, _, sp in sub_poses], dtype=str),
        landmark_ids=np.array(landmark_ids, dtype=np.int64),
        points_xyz=np.array([scene.landmarks[l].X for l in landmark_ids]).reshape(-1, 3),
        points_colors=np.array([scene.landmarks[l].color for l in landmark_ids], dtype=np.uint8).reshape(-1, 3),
        obs_landmark_ids=np.array([o[0] for o in obs], dtype=np.int64),
        obs_view_ids=np.array([o[1] for o in obs], dtype=np.int64),
        obs_feature_ids=np.array([o[2] for o in obs], dtype=np.int64),
        obs_uvs=np.array([o[3] for o in obs]).reshape(-1, 2),
    )
    logger.debug(f"Saved scene with {len(view_ids)} views and {len(landmark_ids)} landmarks to {output_path}")


def load_scene_npz(input_path: PathLike) -> Scene:
    """Load a Scene written by `save_scene_npz`."""
    scene = Scene()
    with np.load(input_path) as data:
        for i, view_id in enumerate(data["view_ids"]):
            rig_id = int(data["view_rig_ids"][i])
            sub_pose_id = int(data["view_sub_pose_ids"][i])
            width, height = (int(v) for v in data["view_sizes"][i])
            scene.views[int(view_id)] = View(
                view_id=int(view_id),
                intrinsic_id=int(data["view_intrinsic_ids"][i]),
                pose_id=int(data["view_pose_ids"][i]),
                width=width,
                height=height,
                image_path=str(data["view_image_paths"][i]),
                rig_id=None if rig_id < 0 else rig_id,
                sub_pose_id=None if sub_pose_id < 0 else sub_pose_id,
            )

        for i, intrinsic_id in enumerate(data["intrinsic_ids"]):
            width, height = (int(v) for v in data["intrinsic_sizes"][i])
            intrinsic = PinholeIntrinsic(width=width, height=height, locked=bool(data["intrinsic_locked"][i]))
            intrinsic.update_from_params(data["intrinsic_params"][i])
            if intrinsic.focal <= 0:
                intrinsic.focal = None
            scene.intrinsics[int(intrinsic_id)] = intrinsic

        for i, pose_id in enumerate(data["pose_ids"]):
            scene.poses[int(pose_id)] = Pose(data["pose_Rs"][i], data["pose_ts"][i])

        for i, rig_id in enumerate(data["sub_pose_rig_ids"]):
            rig = scene.rigs.setdefault(int(rig_id), Rig(int(rig_id)))
            rig.sub_poses[int(data["sub_pose_ids"][i])] = RigSubPose(
                pose=Pose(data["sub_pose_Rs"][i], data["sub_pose_ts"][i]),
                status=RigSubPoseStatus(str(data["sub_pose_status"][i])),
            )

        for i, landmark_id in enumerate(data["landmark_ids"]):
            scene.add_landmark(
                int(landmark_id),
                Landmark(X=data["points_xyz"][i], color=data["points_colors"][i].astype(np.uint8)),
            )
        for landmark_id, view_id, feature_id, uv in zip(
            data["obs_landmark_ids"], data["obs_view_ids"], data["obs_feature_ids"], data["obs_uvs"]
        ):
            scene.add_observation(int(landmark_id), int(view_id), Observation(uv, int(feature_id)))
    return scene


__all__ = [
    "save_calibration",
    "load_calibration",
    "intrinsic_from_calibration",
    "save_scene_npz",
    "load_scene_npz",
]
