"""
Choice and two-view reconstruction of the seed pair.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from seqsfm.ba.bundle_adjustment import BundleAdjuster, BundleAdjustmentOptions, BundleAdjustmentPartition
from seqsfm.errors import BootstrapError, BundleAdjustmentError
from seqsfm.geometry.camera import Pose, reprojection_errors
from seqsfm.geometry.essential import RelativePoseResult, estimate_relative_pose
from seqsfm.geometry.triangulation import pairwise_ray_angles, triangulate_two_view
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import FeaturesPerView, Landmark, Observation, Scene
from seqsfm.sfm_inc.outliers import remove_outliers
from seqsfm.sfm_inc.pyramid_scoring import image_size
from seqsfm.sfm_inc.tracks import Tracks, TracksPerView, get_common_tracks

logger = logging.getLogger(__name__)

# Purpose tag of the random generators derived for seed pair estimation.
RNG_INITIAL_PAIR = 1


@dataclass
class InitialPairCandidate:
    view_a: int
    view_b: int
    # 2/3 quantile of the triangulation angles (degrees) of the inliers.
    score: float
    n_inliers: int

    @property
    def pair(self) -> Tuple[int, int]:
        return self.view_a, self.view_b


@dataclass
class _TwoViewGeometry:
    track_ids: np.ndarray
    relative_pose: RelativePoseResult
    points_3d: np.ndarray
    angles: np.ndarray
    threshold: float


class InitialPairSelector:
    """
    Ranks view pairs by baseline quality and builds the seed reconstruction.

    Args:
        scene: Scene holding views and intrinsics, with no poses yet.
        features: Feature positions per view.
        tracks: All tracks.
        tracks_per_view: Track ids seen by each view.
        config: Engine configuration.
    """

    def __init__(
        self,
        scene: Scene,
        features: FeaturesPerView,
        tracks: Tracks,
        tracks_per_view: TracksPerView,
        config: SequentialSfMConfig,
    ) -> None:
        self.scene = scene
        self.features = features
        self.tracks = tracks
        self.tracks_per_view = tracks_per_view
        self.config = config
        # Residual thresholds of the seed views, set by make_initial_pair.
        self.residual_thresholds: Dict[int, float] = {}

    def _rng(self, view_a: int, view_b: int) -> np.random.Generator:
        return np.random.default_rng([self.config.seed, RNG_INITIAL_PAIR, view_a, view_b])

    def _two_view_geometry(self, view_a: int, view_b: int) -> Optional[_TwoViewGeometry]:
        scene = self.scene
        intrinsic_a = scene.get_intrinsic(scene.views[view_a])
        intrinsic_b = scene.get_intrinsic(scene.views[view_b])
        if intrinsic_a is None or intrinsic_b is None or not (intrinsic_a.is_valid() and intrinsic_b.is_valid()):
            return None

        track_ids = np.array(get_common_tracks(self.tracks_per_view, (view_a, view_b)), dtype=np.int64)
        if len(track_ids) < max(self.config.initial_pair_min_tracks, 8):
            return None
        x_a = self.features[view_a][[self.tracks[t][view_a] for t in track_ids]]
        x_b = self.features[view_b][[self.tracks[t][view_b] for t in track_ids]]

        relative_pose = estimate_relative_pose(
            intrinsic_a.remove_distortion(x_a),
            intrinsic_b.remove_distortion(x_b),
            intrinsic_a.K,
            intrinsic_b.K,
            image_size(scene, view_b),
            self.config.relative_pose,
            self._rng(view_a, view_b),
        )
        if relative_pose is None:
            return None

        inliers = relative_pose.inlier_mask
        pose_a = Pose.identity()
        pose_b = Pose(relative_pose.R, relative_pose.t)
        points_3d = triangulate_two_view(
            pose_a, pose_b, intrinsic_a.to_normalized(x_a[inliers]), intrinsic_b.to_normalized(x_b[inliers])
        )
        angles = pairwise_ray_angles(pose_a.center, pose_b.center, points_3d)
        threshold = float(
            np.clip(relative_pose.threshold, self.config.min_residual_threshold, self.config.max_reprojection_error)
        )
        return _TwoViewGeometry(
            track_ids=track_ids[inliers],
            relative_pose=relative_pose,
            points_3d=points_3d,
            angles=angles,
            threshold=threshold,
        )

    def candidates(self) -> List[InitialPairCandidate]:
        """
        Every view pair with enough shared tracks and a wide enough
        baseline, best first.
        """
        view_ids = []
        for view_id, view in sorted(self.scene.views.items()):
            intrinsic = self.scene.get_intrinsic(view)
            if intrinsic is not None and intrinsic.is_valid():
                view_ids.append(view_id)
        result = []
        for idx, view_a in enumerate(view_ids):
            for view_b in view_ids[idx + 1 :]:
                if len(get_common_tracks(self.tracks_per_view, (view_a, view_b))) < self.config.initial_pair_min_tracks:
                    continue
                geometry = self._two_view_geometry(view_a, view_b)
                if geometry is None or len(geometry.angles) == 0:
                    continue
                finite = geometry.angles[np.isfinite(geometry.angles)]
                if len(finite) == 0:
                    continue
                score = float(np.quantile(finite, 2.0 / 3.0))
                logger.debug(
                    f"Seed pair candidate ({view_a}, {view_b}): {len(finite)} inliers, angle score {score:.2f} deg"
                )
                if score > self.config.initial_pair_min_angle:
                    result.append(InitialPairCandidate(view_a, view_b, score, len(finite)))
        result.sort(key=lambda c: (-c.score, c.view_a, c.view_b))
        return result

    def make_initial_pair(self, pair: Tuple[int, int]) -> Scene:
        """
        Reconstruct a pair of views: the first at the origin, the second at
        the estimated relative pose, plus the triangulated inlier tracks.

        Returns:
            A new scene; the selector's own scene is left untouched.

        Raises:
            BootstrapError: When the pair does not yield a valid,
                sufficiently supported reconstruction.
        """
        view_a, view_b = sorted(pair)
        if view_a not in self.scene.views or view_b not in self.scene.views:
            raise BootstrapError(f"unknown views in seed pair {pair}")
        config = self.config

        geometry = self._two_view_geometry(view_a, view_b)
        if geometry is None:
            raise BootstrapError(f"no relative pose for pair ({view_a}, {view_b})")

        scene = self.scene.copy()
        pose_a = Pose.identity()
        pose_b = Pose(geometry.relative_pose.R, geometry.relative_pose.t)
        scene.set_pose(scene.views[view_a], pose_a)
        scene.set_pose(scene.views[view_b], pose_b)
        intrinsic_a = scene.get_intrinsic(scene.views[view_a])
        intrinsic_b = scene.get_intrinsic(scene.views[view_b])

        n_added = 0
        for track_id, X, angle in zip(geometry.track_ids, geometry.points_3d, geometry.angles):
            if not np.all(np.isfinite(X)) or angle < config.min_angle_for_triangulation:
                continue
            track = self.tracks[int(track_id)]
            x_a = self.features[view_a][track[view_a]]
            x_b = self.features[view_b][track[view_b]]
            err_a = reprojection_errors(intrinsic_a, pose_a, X.reshape(1, 3), x_a.reshape(1, 2))[0]
            err_b = reprojection_errors(intrinsic_b, pose_b, X.reshape(1, 3), x_b.reshape(1, 2))[0]
            if not (err_a <= geometry.threshold and err_b <= geometry.threshold):
                continue
            scene.add_landmark(
                int(track_id),
                Landmark(
                    X=X,
                    observations={
                        view_a: Observation(x_a, track[view_a]),
                        view_b: Observation(x_b, track[view_b]),
                    },
                ),
            )
            n_added += 1

        if n_added < config.min_points_per_pose:
            raise BootstrapError(
                f"pair ({view_a}, {view_b}) triangulated {n_added} points, need {config.min_points_per_pose}"
            )

        # The first view stays at the origin; intrinsics are held.
        adjusted = scene.copy()
        partition = BundleAdjustmentPartition.global_partition(adjusted, refine_intrinsics=False)
        pose_id_a = adjusted.views[view_a].pose_id
        partition.refined_poses.discard(pose_id_a)
        partition.constant_poses.add(pose_id_a)
        options = BundleAdjustmentOptions(max_nfev=config.ba_max_nfev, loss=config.ba_loss)
        try:
            BundleAdjuster(options).adjust(adjusted, partition)
            scene = adjusted
        except BundleAdjustmentError as err:
            logger.warning(f"Seed pair BA failed, keeping the two-view estimate: {err}")
        remove_outliers(scene, geometry.threshold, config.min_angle_for_landmark, config.min_track_length)

        if len(scene.landmarks) < config.min_points_per_pose:
            raise BootstrapError(
                f"pair ({view_a}, {view_b}) kept {len(scene.landmarks)} points after refinement, "
                f"need {config.min_points_per_pose}"
            )

        self.residual_thresholds = {view_a: geometry.threshold, view_b: geometry.threshold}
        logger.info(
            f"Seed pair ({view_a}, {view_b}): {len(scene.landmarks)} landmarks, "
            f"threshold {geometry.threshold:.2f}px"
        )
        return scene

    def select(self) -> Tuple[Scene, Tuple[int, int]]:
        """
        Try the configured pair first, then the ranked candidates.

        Raises:
            BootstrapError: When every candidate fails.
        """
        tried = set()
        if self.config.initial_pair is not None:
            pair = tuple(sorted(self.config.initial_pair))
            tried.add(pair)
            try:
                return self.make_initial_pair(pair), pair
            except BootstrapError as err:
                logger.warning(f"Requested seed pair {pair} failed ({err}); falling back to automatic choice")

        candidates = self.candidates()
        logger.info(f"{len(candidates)} seed pair candidates")
        for candidate in candidates:
            if candidate.pair in tried:
                continue
            tried.add(candidate.pair)
            try:
                return self.make_initial_pair(candidate.pair), candidate.pair
            except BootstrapError as err:
                logger.warning(f"Seed pair {candidate.pair} rejected: {err}")

        logger.error("No view pair yields a valid seed reconstruction")
        raise BootstrapError("no view pair yields a valid seed reconstruction")


__all__ = ["InitialPairCandidate", "InitialPairSelector"]
