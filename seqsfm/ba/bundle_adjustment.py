"""
Bundle adjustment for refining camera poses, intrinsics and 3D point positions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from seqsfm.errors import BundleAdjustmentError
from seqsfm.geometry.camera import PinholeIntrinsic, Pose
from seqsfm.sfm_inc.data_structures import RigPose, Scene

logger = logging.getLogger(__name__)

# Refined intrinsic parameters: focal, k1, k2. The principal point is held.
_INTRINSIC_SLOTS = np.array([0, 3, 4])


@dataclass
class BundleAdjustmentOptions:
    max_nfev: int = 50
    loss: str = "soft_l1"
    # Residual scale (pixels) of the robust loss.
    f_scale: float = 1.0
    verbose: int = 0


@dataclass
class BundleAdjustmentPartition:
    """
    Which parameters an adjustment refines and which it holds.

    Poses are keyed by pose id (the scene pose table). Only observations of
    refined landmarks by views whose pose and intrinsic appear in the
    partition enter the problem.
    """

    refined_poses: Set[int] = field(default_factory=set)
    constant_poses: Set[int] = field(default_factory=set)
    refined_intrinsics: Set[int] = field(default_factory=set)
    constant_intrinsics: Set[int] = field(default_factory=set)
    refined_landmarks: Set[int] = field(default_factory=set)

    @classmethod
    def global_partition(cls, scene: Scene, refine_intrinsics: bool = True) -> "BundleAdjustmentPartition":
        """Everything refined; intrinsics refined unless locked or disabled."""
        valid = scene.valid_views()
        pose_ids = {scene.views[view_id].pose_id for view_id in valid}
        intrinsic_ids = {scene.views[view_id].intrinsic_id for view_id in valid}
        refined_intrinsics = {
            intrinsic_id
            for intrinsic_id in intrinsic_ids
            if refine_intrinsics and not scene.intrinsics[intrinsic_id].locked
        }
        return cls(
            refined_poses=pose_ids,
            constant_poses=set(),
            refined_intrinsics=refined_intrinsics,
            constant_intrinsics=intrinsic_ids - refined_intrinsics,
            refined_landmarks=set(scene.landmarks),
        )


@dataclass
class BundleAdjustmentStatistics:
    n_poses: int = 0
    n_intrinsics: int = 0
    n_landmarks: int = 0
    n_observations: int = 0
    initial_rmse: float = 0.0
    final_rmse: float = 0.0
    nfev: int = 0
    status: int = 0
    time_seconds: float = 0.0


@dataclass
class _Problem:
    pose_ids: List[int]
    intrinsic_ids: List[int]
    landmark_ids: List[int]
    # Per observation.
    obs_pose: np.ndarray
    obs_pose_refined: np.ndarray
    obs_intrinsic: np.ndarray
    obs_intrinsic_refined: np.ndarray
    obs_landmark: np.ndarray
    obs_sub_R: np.ndarray
    obs_sub_t: np.ndarray
    obs_xy: np.ndarray
    # Constant parameter tables.
    pose_table: np.ndarray
    intrinsic_table: np.ndarray
    n_refined_poses: int
    n_refined_intrinsics: int

    @property
    def n_observations(self) -> int:
        return len(self.obs_xy)


def _pose_to_params(pose: Pose) -> np.ndarray:
    return np.concatenate([Rotation.from_matrix(pose.R).as_rotvec(), pose.t.ravel()])


def _build_problem(scene: Scene, partition: BundleAdjustmentPartition) -> _Problem:
    refined_pose_ids = sorted(partition.refined_poses)
    constant_pose_ids = sorted(partition.constant_poses - partition.refined_poses)
    pose_ids = refined_pose_ids + constant_pose_ids
    pose_index = {pose_id: i for i, pose_id in enumerate(pose_ids)}

    refined_intrinsic_ids = sorted(partition.refined_intrinsics)
    constant_intrinsic_ids = sorted(partition.constant_intrinsics - partition.refined_intrinsics)
    intrinsic_ids = refined_intrinsic_ids + constant_intrinsic_ids
    intrinsic_index = {intrinsic_id: i for i, intrinsic_id in enumerate(intrinsic_ids)}

    landmark_ids = sorted(lid for lid in partition.refined_landmarks if lid in scene.landmarks)
    landmark_index = {lid: i for i, lid in enumerate(landmark_ids)}

    obs_pose, obs_intrinsic, obs_landmark = [], [], []
    obs_sub_R, obs_sub_t, obs_xy = [], [], []
    for landmark_id in landmark_ids:
        for view_id, observation in sorted(scene.landmarks[landmark_id].observations.items()):
            view = scene.views.get(view_id)
            if view is None or view.pose_id not in pose_index or view.intrinsic_id not in intrinsic_index:
                continue
            if not scene.is_pose_and_intrinsic_defined(view_id):
                continue
            ref = view.pose_ref
            if isinstance(ref, RigPose):
                sub_pose = scene.rigs[ref.rig_id].sub_poses[ref.sub_pose_id].pose
            else:
                sub_pose = Pose.identity()
            obs_pose.append(pose_index[view.pose_id])
            obs_intrinsic.append(intrinsic_index[view.intrinsic_id])
            obs_landmark.append(landmark_index[landmark_id])
            obs_sub_R.append(sub_pose.R)
            obs_sub_t.append(sub_pose.t.ravel())
            obs_xy.append(observation.x)

    obs_pose_arr = np.array(obs_pose, dtype=np.int64)
    obs_intrinsic_arr = np.array(obs_intrinsic, dtype=np.int64)
    return _Problem(
        pose_ids=pose_ids,
        intrinsic_ids=intrinsic_ids,
        landmark_ids=landmark_ids,
        obs_pose=obs_pose_arr,
        obs_pose_refined=obs_pose_arr < len(refined_pose_ids),
        obs_intrinsic=obs_intrinsic_arr,
        obs_intrinsic_refined=obs_intrinsic_arr < len(refined_intrinsic_ids),
        obs_landmark=np.array(obs_landmark, dtype=np.int64),
        obs_sub_R=np.array(obs_sub_R).reshape(-1, 3, 3),
        obs_sub_t=np.array(obs_sub_t).reshape(-1, 3),
        obs_xy=np.array(obs_xy).reshape(-1, 2),
        pose_table=np.array([_pose_to_params(scene.poses[pid]) for pid in pose_ids]).reshape(-1, 6),
        intrinsic_table=np.array([scene.intrinsics[iid].params() for iid in intrinsic_ids]).reshape(
            -1, PinholeIntrinsic.param_count
        ),
        n_refined_poses=len(refined_pose_ids),
        n_refined_intrinsics=len(refined_intrinsic_ids),
    )


def pack_parameters(problem: _Problem, scene: Scene) -> np.ndarray:
    """
    Pack refined poses (rotation vector + translation), refined intrinsics
    (focal, k1, k2) and landmarks into a 1D parameter vector.
    """
    poses = problem.pose_table[: problem.n_refined_poses].ravel()
    intrinsics = problem.intrinsic_table[: problem.n_refined_intrinsics][:, _INTRINSIC_SLOTS].ravel()
    points = np.array([scene.landmarks[lid].X for lid in problem.landmark_ids]).ravel()
    return np.concatenate([poses, intrinsics, points])


def _split(params: np.ndarray, problem: _Problem) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    n_pose = 6 * problem.n_refined_poses
    n_intr = len(_INTRINSIC_SLOTS) * problem.n_refined_intrinsics
    pose_table = problem.pose_table.copy()
    pose_table[: problem.n_refined_poses] = params[:n_pose].reshape(-1, 6)
    intrinsic_table = problem.intrinsic_table.copy()
    intrinsic_table[: problem.n_refined_intrinsics, _INTRINSIC_SLOTS] = params[n_pose : n_pose + n_intr].reshape(
        -1, len(_INTRINSIC_SLOTS)
    )
    points = params[n_pose + n_intr :].reshape(-1, 3)
    return pose_table, intrinsic_table, points


def reprojection_residuals(params: np.ndarray, problem: _Problem) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Returns:
        1D array of residuals (2 per observation: [du, dv]).
    """
    pose_table, intrinsic_table, points = _split(params, problem)
    poses = pose_table[problem.obs_pose]
    X = points[problem.obs_landmark]

    # Rig (or view) pose first, then the constant camera sub-pose.
    points_cam = Rotation.from_rotvec(poses[:, :3]).apply(X) + poses[:, 3:]
    points_cam = np.einsum("nij,nj->ni", problem.obs_sub_R, points_cam) + problem.obs_sub_t
    z = points_cam[:, 2]
    points_cam[:, 2] = np.where(np.abs(z) < 1e-12, 1e-12, z)

    projected = PinholeIntrinsic.project_with_params(intrinsic_table[problem.obs_intrinsic], points_cam)
    return (projected - problem.obs_xy).ravel()


def _jacobian_sparsity(problem: _Problem, n_params: int) -> lil_matrix:
    n_obs = problem.n_observations
    n_pose = 6 * problem.n_refined_poses
    n_slots = len(_INTRINSIC_SLOTS)
    n_intr = n_slots * problem.n_refined_intrinsics
    A = lil_matrix((2 * n_obs, n_params), dtype=int)
    rows = np.arange(n_obs)

    r = rows[problem.obs_pose_refined]
    if r.size:
        for s in range(6):
            cols = 6 * problem.obs_pose[r] + s
            A[2 * r, cols] = 1
            A[2 * r + 1, cols] = 1
    r = rows[problem.obs_intrinsic_refined]
    if r.size:
        for s in range(n_slots):
            cols = n_pose + n_slots * problem.obs_intrinsic[r] + s
            A[2 * r, cols] = 1
            A[2 * r + 1, cols] = 1
    for s in range(3):
        cols = n_pose + n_intr + 3 * problem.obs_landmark + s
        A[2 * rows, cols] = 1
        A[2 * rows + 1, cols] = 1
    return A


def _rmse(residuals: np.ndarray) -> float:
    if residuals.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(residuals.reshape(-1, 2) ** 2) * 2.0))


def unpack_parameters(params: np.ndarray, problem: _Problem, scene: Scene) -> None:
    """Write optimized parameters back into the scene in place."""
    pose_table, intrinsic_table, points = _split(params, problem)
    for i, pose_id in enumerate(problem.pose_ids[: problem.n_refined_poses]):
        R = Rotation.from_rotvec(pose_table[i, :3]).as_matrix()
        scene.poses[pose_id] = Pose(R, pose_table[i, 3:].reshape(3, 1))
    for i, intrinsic_id in enumerate(problem.intrinsic_ids[: problem.n_refined_intrinsics]):
        scene.intrinsics[intrinsic_id].update_from_params(intrinsic_table[i])
    for i, landmark_id in enumerate(problem.landmark_ids):
        scene.landmarks[landmark_id].X = points[i].copy()


class BundleAdjuster:
    """Sparse non-linear least squares over a partition of the scene."""

    def __init__(self, options: Optional[BundleAdjustmentOptions] = None) -> None:
        self.options = options or BundleAdjustmentOptions()

    def adjust(self, scene: Scene, partition: BundleAdjustmentPartition) -> BundleAdjustmentStatistics:
        """
        Run bundle adjustment in place on `scene`.

        Args:
            scene: Scene to optimize. Callers that need to revert on failure
                pass a snapshot.
            partition: Refined and constant parameter blocks.

        Returns:
            BundleAdjustmentStatistics of the run.

        Raises:
            BundleAdjustmentError: If the optimizer fails or produces a
                non-finite solution.
        """
        start = time.perf_counter()
        problem = _build_problem(scene, partition)
        stats = BundleAdjustmentStatistics(
            n_poses=problem.n_refined_poses,
            n_intrinsics=problem.n_refined_intrinsics,
            n_landmarks=len(problem.landmark_ids),
            n_observations=problem.n_observations,
        )
        if problem.n_observations == 0:
            return stats

        params = pack_parameters(problem, scene)
        if not np.all(np.isfinite(params)):
            raise BundleAdjustmentError("non-finite initial parameters")
        initial = reprojection_residuals(params, problem)
        if not np.all(np.isfinite(initial)):
            raise BundleAdjustmentError("non-finite initial residuals")
        stats.initial_rmse = _rmse(initial)

        logger.debug(
            f"BA: {problem.n_refined_poses} poses, {problem.n_refined_intrinsics} intrinsics, "
            f"{len(problem.landmark_ids)} points, {problem.n_observations} observations, "
            f"{params.size} parameters"
        )

        try:
            result = least_squares(
                reprojection_residuals,
                params,
                jac_sparsity=_jacobian_sparsity(problem, params.size),
                args=(problem,),
                method="trf",
                loss=self.options.loss,
                f_scale=self.options.f_scale,
                x_scale="jac",
                verbose=self.options.verbose,
                max_nfev=self.options.max_nfev,
            )
        except (ValueError, np.linalg.LinAlgError) as err:
            raise BundleAdjustmentError(f"optimizer failed: {err}") from err

        if result.status < 0 or not np.all(np.isfinite(result.x)):
            raise BundleAdjustmentError(f"optimizer returned status {result.status}: {result.message}")
        final = reprojection_residuals(result.x, problem)
        if not np.all(np.isfinite(final)):
            raise BundleAdjustmentError("non-finite residuals after optimization")

        unpack_parameters(result.x, problem, scene)
        stats.final_rmse = _rmse(final)
        stats.nfev = int(result.nfev)
        stats.status = int(result.status)
        stats.time_seconds = time.perf_counter() - start
        logger.info(
            f"BA done: RMSE {stats.initial_rmse:.3f} -> {stats.final_rmse:.3f}px "
            f"({stats.nfev} evaluations, {stats.time_seconds:.2f}s)"
        )
        return stats


__all__ = [
    "BundleAdjustmentOptions",
    "BundleAdjustmentPartition",
    "BundleAdjustmentStatistics",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "BundleAdjuster",
]
