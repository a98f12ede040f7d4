"""
Incremental Structure-from-Motion pipeline.

`SequentialReconstructionEngine` grows a reconstruction from a seed pair:
it repeatedly localizes the views best connected to the current structure,
triangulates the tracks they make visible and refines the result with
bundle adjustment, until no remaining view is connected.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar, Union

import numpy as np

from seqsfm.ba.bundle_adjustment import BundleAdjuster, BundleAdjustmentOptions, BundleAdjustmentPartition
from seqsfm.ba.local_ba import LocalBundleAdjustmentData
from seqsfm.errors import BundleAdjustmentError, ResectionError
from seqsfm.features.keypoints import extract_features
from seqsfm.features.matching import DescriptorMatcher, match_image_collection
from seqsfm.geometry.camera import PinholeIntrinsic, reprojection_errors
from seqsfm.geometry.triangulation import TriangulationResult, triangulate_track
from seqsfm.io.scene_io import save_scene_npz
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import FeaturesPerView, Landmark, Observation, PairwiseMatches, Scene, View
from seqsfm.sfm_inc.initial_pair import InitialPairSelector
from seqsfm.sfm_inc.outliers import remove_outliers
from seqsfm.sfm_inc.pyramid_scoring import PyramidScorer
from seqsfm.sfm_inc.resection import ResectionData, compute_resection, update_scene
from seqsfm.sfm_inc.statistics import GroupStatistics, ReconstructionReport, finalize_report, save_report_json
from seqsfm.sfm_inc.tracks import build_tracks, compute_tracks_per_view

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Purpose tags of the per-item random generators.
RNG_RESECTION = 2
RNG_TRIANGULATION = 3


class EngineState(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    GROWING = "growing"
    REFINING = "refining"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass(frozen=True)
class ViewConnectionScore:
    view_id: int
    n_correspondences: int
    score: float
    intrinsic_known: bool


class SequentialReconstructionEngine:
    """
    Sequential (incremental) reconstruction of a scene.

    Args:
        scene: Views and intrinsics to reconstruct. A scene that already
            holds at least two reconstructed views is continued.
        features: (N, 2) feature positions per view.
        pairwise_matches: Geometrically filtered matches per view pair.
        config: Engine configuration.
        bundle_adjuster: Optimizer; built from the configuration by default.
    """

    def __init__(
        self,
        scene: Scene,
        features: FeaturesPerView,
        pairwise_matches: PairwiseMatches,
        config: Optional[SequentialSfMConfig] = None,
        bundle_adjuster: Optional[BundleAdjuster] = None,
    ) -> None:
        self.config = config or SequentialSfMConfig()
        self.config.validate()
        self.scene = scene
        self.features = features
        self.tracks = build_tracks(pairwise_matches, self.config.min_input_track_length)
        self.tracks_per_view = compute_tracks_per_view(self.tracks)

        self.scorer = PyramidScorer(self.config.pyramid_base, self.config.pyramid_depth, self.config.pyramid_weights)
        self.scorer.build_cache(scene, features, self.tracks)

        self.bundle_adjuster = bundle_adjuster or BundleAdjuster(
            BundleAdjustmentOptions(max_nfev=self.config.ba_max_nfev, loss=self.config.ba_loss)
        )
        self.local_ba: Optional[LocalBundleAdjustmentData] = None
        if self.config.use_local_ba:
            self.local_ba = LocalBundleAdjustmentData(
                self.config.local_ba_graph_distance,
                self.config.local_ba_focal_window,
                self.config.local_ba_focal_std_percentage,
            )

        self.state = EngineState.BOOTSTRAPPING
        self.report = ReconstructionReport()
        self.remaining: Set[int] = set(scene.views)
        # view id -> residual threshold (pixels) used when triangulating
        self.residual_thresholds: Dict[int, float] = {}
        # view id -> number of correspondences when its resection last failed
        self.failed_resections: Dict[int, int] = {}
        # view id -> number of correspondences when the current group was chosen
        self._group_connections: Dict[int, int] = {}
        self._group = 0
        self._ba_failures = 0
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Ask the run to stop at the next resection group boundary."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _map(self, fn: Callable[[T], R], items: Sequence[T]) -> List[R]:
        if len(items) <= 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=self.config.num_workers) as pool:
            return list(pool.map(fn, items))

    def process(self) -> Scene:
        """
        Run the reconstruction to completion (or cancellation).

        Returns:
            The reconstructed scene; also available as `self.scene`.

        Raises:
            BootstrapError: If no seed reconstruction can be built.
        """
        start = time.perf_counter()
        new_view_ids: List[int] = []
        group_start = start

        while self.state != EngineState.DONE:
            if self.state == EngineState.BOOTSTRAPPING:
                self._bootstrap()
                self.state = EngineState.GROWING

            elif self.state == EngineState.GROWING:
                if self._ba_failures >= self.config.max_ba_failures:
                    logger.error(
                        f"Bundle adjustment failed {self._ba_failures} times in a row; "
                        "stopping growth with the last committed scene"
                    )
                    self.report.stopped_on_ba_failures = True
                    self.state = EngineState.FINALIZING
                    continue
                if self.cancelled:
                    logger.warning("Reconstruction cancelled; returning the last committed scene")
                    self.report.cancelled = True
                    break
                group_start = time.perf_counter()
                group = self.find_next_best_views(self.remaining)
                if not group:
                    self.state = EngineState.FINALIZING
                    continue
                new_view_ids = self._resect_group(group)
                if new_view_ids:
                    self._triangulate(new_view_ids)
                    self.state = EngineState.REFINING

            elif self.state == EngineState.REFINING:
                n_outliers = self._refine(new_view_ids)
                self.report.groups.append(
                    GroupStatistics(
                        group=self._group,
                        view_ids=list(new_view_ids),
                        n_reconstructed_views=len(self.scene.valid_views()),
                        n_landmarks=len(self.scene.landmarks),
                        n_outliers_removed=n_outliers,
                        time_seconds=time.perf_counter() - group_start,
                    )
                )
                self._save_intermediate()
                self._group += 1
                self.state = EngineState.GROWING

            elif self.state == EngineState.FINALIZING:
                self._finalize()
                self.state = EngineState.DONE

        finalize_report(self.report, self.scene)
        self.report.time_seconds = time.perf_counter() - start
        if self.remaining:
            logger.info(f"Views left unreconstructed: {sorted(self.remaining)}")
        logger.info(f"Reconstruction finished: {self.report.summary()}")
        if self.config.output_dir is not None:
            save_report_json(Path(self.config.output_dir) / "statistics.json", self.report)
        return self.scene

    # ------------------------------------------------------------------
    # Bootstrapping
    # ------------------------------------------------------------------

    def _bootstrap(self) -> None:
        valid = self.scene.valid_views()
        if len(valid) >= 2:
            logger.info(f"Continuing a reconstruction with {len(valid)} views")
            self.remap_landmark_ids_to_track_ids()
            for view_id in valid:
                self.residual_thresholds.setdefault(view_id, self.config.max_reprojection_error)
        else:
            selector = InitialPairSelector(self.scene, self.features, self.tracks, self.tracks_per_view, self.config)
            self.scene, pair = selector.select()
            self.residual_thresholds.update(selector.residual_thresholds)
            self.report.initial_pair = list(pair)

        self.remaining = set(self.scene.views) - self.scene.valid_views()
        if self.local_ba is not None:
            self.local_ba.record_intrinsics(self.scene)
        logger.info(
            f"Bootstrapped {len(self.scene.valid_views())} views with {len(self.scene.landmarks)} landmarks; "
            f"{len(self.remaining)} views remaining"
        )

    def remap_landmark_ids_to_track_ids(self) -> int:
        """
        Re-key the landmarks of a loaded scene by the id of the track their
        observations belong to.

        A landmark takes the track most of its observations vote for (the
        smallest id on ties) and keeps only the observations consistent
        with it. Landmarks without a track, with a track already taken, or
        left with too few observations are dropped.

        Returns:
            Number of landmarks kept.
        """
        lookup: Dict[Tuple[int, int], int] = {}
        for track_id, track in self.tracks.items():
            for view_id, feature_id in track.items():
                lookup[(view_id, feature_id)] = track_id

        remapped: Dict[int, Landmark] = {}
        n_dropped = 0
        for landmark_id in sorted(self.scene.landmarks):
            landmark = self.scene.landmarks[landmark_id]
            votes: Dict[int, int] = {}
            for view_id, observation in landmark.observations.items():
                track_id = lookup.get((view_id, observation.feature_id))
                if track_id is not None:
                    votes[track_id] = votes.get(track_id, 0) + 1
            if not votes:
                n_dropped += 1
                continue
            track_id = min(votes, key=lambda t: (-votes[t], t))
            track = self.tracks[track_id]
            landmark.observations = {
                view_id: observation
                for view_id, observation in landmark.observations.items()
                if track.get(view_id) == observation.feature_id
            }
            if track_id in remapped or len(landmark.observations) < self.config.min_track_length:
                n_dropped += 1
                continue
            remapped[track_id] = landmark

        self.scene.landmarks = remapped
        logger.info(f"Remapped {len(remapped)} landmarks to track ids ({n_dropped} dropped)")
        return len(remapped)

    # ------------------------------------------------------------------
    # Next best views
    # ------------------------------------------------------------------

    def find_connected_views(self, remaining: Iterable[int]) -> List[ViewConnectionScore]:
        """Connection score of every remaining view seeing at least one landmark."""
        landmark_ids = set(self.scene.landmarks)

        def score(view_id: int) -> Optional[ViewConnectionScore]:
            track_ids = [t for t in self.tracks_per_view.get(view_id, ()) if t in landmark_ids]
            if not track_ids:
                return None
            intrinsic = self.scene.intrinsics.get(self.scene.views[view_id].intrinsic_id)
            return ViewConnectionScore(
                view_id=view_id,
                n_correspondences=len(track_ids),
                score=self.scorer.score(view_id, track_ids),
                intrinsic_known=intrinsic is not None and intrinsic.is_valid(),
            )

        return [s for s in self._map(score, sorted(remaining)) if s is not None]

    def find_next_best_views(self, remaining: Iterable[int]) -> List[int]:
        """
        Choose the next resection group.

        The best scoring view always starts the group; views with enough
        correspondences scoring close to the best follow. A view with an
        unknown intrinsic ends the group, so that views sharing it are
        localized against its estimate. Views whose last resection failed
        are skipped until they gain correspondences.
        """
        config = self.config
        candidates = [
            s
            for s in self.find_connected_views(remaining)
            if s.n_correspondences > self.failed_resections.get(s.view_id, -1)
        ]
        if not candidates:
            return []
        candidates.sort(key=lambda s: (-s.score, s.view_id))
        best = candidates[0]
        group = [best.view_id]
        if best.intrinsic_known:
            for candidate in candidates[1:]:
                if len(group) >= config.max_images_per_group:
                    break
                if (
                    candidate.n_correspondences > config.min_points_per_pose
                    and candidate.score > config.next_best_view_group_ratio * best.score
                ):
                    group.append(candidate.view_id)
                    if not candidate.intrinsic_known:
                        break
        self._group_connections = {s.view_id: s.n_correspondences for s in candidates}
        logger.info(
            f"Resection group {self._group}: views {sorted(group)} "
            f"(best score {best.score:.1f} of {self.scorer.max_score():.1f})"
        )
        return sorted(group)

    # ------------------------------------------------------------------
    # Growing
    # ------------------------------------------------------------------

    def _resect_group(self, group: List[int]) -> List[int]:
        """
        Localize a group of views in parallel and commit the results in view
        id order.

        Returns:
            Ids of the views that became reconstructed.
        """
        scene, config = self.scene, self.config

        def resect(view_id: int) -> Union[ResectionData, ResectionError]:
            rng = np.random.default_rng([config.seed, RNG_RESECTION, view_id])
            try:
                return compute_resection(
                    scene, view_id, self.tracks, self.tracks_per_view, self.features, config, rng
                )
            except ResectionError as err:
                return err

        results = dict(zip(group, self._map(resect, group)))
        valid_before = scene.valid_views()
        estimated_intrinsics: Set[int] = set()

        for view_id in sorted(results):
            result = results[view_id]
            if isinstance(result, ResectionError):
                logger.warning(f"Resection failed: {result}")
                self.failed_resections[view_id] = self._group_connections.get(view_id, 0)
                self.report.failed_resections[view_id] = result.reason.value
                continue
            intrinsic_id = scene.views[view_id].intrinsic_id
            if result.estimated_intrinsic and intrinsic_id in estimated_intrinsics:
                # Another view of the group already fixed this intrinsic; retry
                # this one against that estimate.
                logger.info(f"View {view_id}: intrinsic {intrinsic_id} estimated earlier in the group")
                continue
            n_added = update_scene(scene, result)
            if result.estimated_intrinsic:
                estimated_intrinsics.add(intrinsic_id)
            self.residual_thresholds[view_id] = result.threshold
            self.failed_resections.pop(view_id, None)
            self.report.failed_resections.pop(view_id, None)
            logger.debug(f"Committed view {view_id} with {n_added} observations")

        new_view_ids = sorted(scene.valid_views() - valid_before)
        for view_id in new_view_ids:
            self.residual_thresholds.setdefault(view_id, config.max_reprojection_error)
        self.remaining -= set(new_view_ids)
        logger.info(
            f"Added {len(new_view_ids)} views; {len(scene.valid_views())}/{len(scene.views)} reconstructed"
        )
        return new_view_ids

    def get_tracks_to_triangulate(self, new_view_ids: Iterable[int]) -> List[int]:
        """Ids of the unreconstructed tracks seen by a new view and enough reconstructed views."""
        valid = self.scene.valid_views()
        track_ids: Set[int] = set()
        for view_id in new_view_ids:
            track_ids.update(self.tracks_per_view.get(view_id, ()))
        return sorted(
            track_id
            for track_id in track_ids
            if track_id not in self.scene.landmarks
            and sum(view_id in valid for view_id in self.tracks[track_id])
            >= self.config.min_nb_observations_for_triangulation
        )

    def _extend_landmarks(self, new_view_ids: List[int]) -> int:
        """Add observations of new views to existing landmarks whose residual passes."""
        scene = self.scene
        n_added = 0
        for view_id in new_view_ids:
            view = scene.views[view_id]
            intrinsic, pose = scene.get_intrinsic(view), scene.get_pose(view)
            threshold = self.residual_thresholds[view_id]
            track_ids = [
                t
                for t in self.tracks_per_view.get(view_id, ())
                if t in scene.landmarks and view_id not in scene.landmarks[t].observations
            ]
            if not track_ids:
                continue
            feature_ids = [self.tracks[t][view_id] for t in track_ids]
            points_2d = self.features[view_id][feature_ids]
            points_3d = np.array([scene.landmarks[t].X for t in track_ids])
            errors = reprojection_errors(intrinsic, pose, points_3d, points_2d)
            for track_id, feature_id, x, error in zip(track_ids, feature_ids, points_2d, errors):
                if error <= threshold:
                    scene.add_observation(track_id, view_id, Observation(x, feature_id))
                    n_added += 1
        return n_added

    def _triangulate(self, new_view_ids: List[int]) -> int:
        """
        Extend existing landmarks and triangulate new ones from the tracks
        the new views make visible.

        Returns:
            Number of new landmarks.
        """
        scene, config = self.scene, self.config
        n_extended = self._extend_landmarks(new_view_ids)

        valid = scene.valid_views()
        poses = {v: scene.get_pose(scene.views[v]) for v in valid}
        intrinsics = {v: scene.get_intrinsic(scene.views[v]) for v in valid}
        track_ids = self.get_tracks_to_triangulate(new_view_ids)

        def triangulate(track_id: int) -> Tuple[int, List[int], Optional[TriangulationResult]]:
            track = self.tracks[track_id]
            view_ids = sorted(v for v in track if v in valid)
            pixels = np.array([self.features[v][track[v]] for v in view_ids])
            thresholds = np.array([self.residual_thresholds.get(v, config.max_reprojection_error) for v in view_ids])
            result = triangulate_track(
                [poses[v] for v in view_ids],
                [intrinsics[v] for v in view_ids],
                pixels,
                thresholds,
                config.min_angle_for_triangulation,
                config.min_track_length,
                rng=np.random.default_rng([config.seed, RNG_TRIANGULATION, track_id]),
            )
            return track_id, view_ids, result

        n_new = 0
        n_rejected = 0
        for track_id, view_ids, result in self._map(triangulate, track_ids):
            if result is None:
                n_rejected += 1
                continue
            track = self.tracks[track_id]
            observations = {
                view_id: Observation(self.features[view_id][track[view_id]], track[view_id])
                for view_id, inlier in zip(view_ids, result.inlier_mask)
                if inlier
            }
            scene.add_landmark(track_id, Landmark(X=result.X, observations=observations))
            n_new += 1

        self.report.n_rejected_tracks += n_rejected
        logger.info(
            f"Triangulation: {n_new} new landmarks, {n_rejected} tracks rejected, "
            f"{n_extended} observations added to existing landmarks"
        )
        return n_new

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def _bundle_adjust(self, partition: BundleAdjustmentPartition) -> bool:
        """
        Adjust a snapshot of the scene and swap it in on success. On failure
        the committed scene is kept and the consecutive failure count grows.
        """
        snapshot = self.scene.copy()
        try:
            self.bundle_adjuster.adjust(snapshot, partition)
        except BundleAdjustmentError as err:
            self._ba_failures += 1
            self.report.n_ba_failures += 1
            logger.warning(f"Bundle adjustment failed, keeping the previous scene: {err}")
            return False
        self.scene = snapshot
        self._ba_failures = 0
        if self.local_ba is not None:
            self.local_ba.record_intrinsics(self.scene)
        return True

    def _partition(self, new_view_ids: List[int]) -> BundleAdjustmentPartition:
        config = self.config
        periodic_global = config.global_ba_interval > 0 and (self._group + 1) % config.global_ba_interval == 0
        if self.local_ba is not None and not periodic_global:
            return self.local_ba.compute_partition(self.scene, new_view_ids, config.refine_intrinsics)
        return BundleAdjustmentPartition.global_partition(self.scene, config.refine_intrinsics)

    def _remove_outliers(self) -> int:
        config = self.config
        return remove_outliers(
            self.scene, config.max_reprojection_error, config.min_angle_for_landmark, config.min_track_length
        )

    def _refine(self, new_view_ids: List[int]) -> int:
        """Adjust and filter until a round removes few outliers. Returns the outlier count."""
        n_total = 0
        for _ in range(self.config.max_refinement_iterations):
            self._bundle_adjust(self._partition(new_view_ids))
            n_outliers = self._remove_outliers()
            n_total += n_outliers
            if n_outliers <= self.config.refinement_outlier_stop:
                break
        return n_total

    def _finalize(self) -> None:
        logger.info("Final global bundle adjustment")
        self._bundle_adjust(BundleAdjustmentPartition.global_partition(self.scene, self.config.refine_intrinsics))
        self._remove_outliers()

    def _save_intermediate(self) -> None:
        if not self.config.save_intermediate or self.config.output_dir is None:
            return
        output_dir = Path(self.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        save_scene_npz(output_dir / f"sfm_{self._group:04d}.npz", self.scene)


def run_sfm_from_frames(
    frames: Sequence[np.ndarray],
    intrinsic: PinholeIntrinsic,
    config: Optional[SequentialSfMConfig] = None,
    use_sift: bool = True,
    ratio: float = 0.75,
    max_features: int = 0,
    image_paths: Optional[Sequence[str]] = None,
    initial_scene: Optional[Scene] = None,
) -> Tuple[Scene, ReconstructionReport]:
    """
    Run incremental SfM on a sequence of frames taken by one camera.

    Args:
        frames: RGB images; view ids are their indices.
        intrinsic: Shared camera intrinsic (its focal length may be unknown).
        config: Engine configuration.
        use_sift: Use SIFT features, otherwise ORB.
        ratio: Lowe ratio of the descriptor matching.
        max_features: Maximum number of features per image (0 = detector default).
        image_paths: Optional source paths stored in the views.
        initial_scene: A previously saved reconstruction of the same frames
            to continue; its views and intrinsics are used as they are.

    Returns:
        Tuple of (scene, report).
    """
    scene = initial_scene if initial_scene is not None else Scene()
    scene.intrinsics.setdefault(0, intrinsic)
    for view_id, frame in enumerate(frames):
        if view_id in scene.views:
            continue
        height, width = frame.shape[:2]
        scene.views[view_id] = View(
            view_id=view_id,
            intrinsic_id=0,
            width=width,
            height=height,
            image_path=image_paths[view_id] if image_paths is not None else "",
        )

    positions, descriptors = extract_features(frames, use_sift=use_sift, max_features=max_features)
    matcher = DescriptorMatcher(positions, descriptors, ratio=ratio)
    pairwise_matches = match_image_collection(matcher, sorted(positions))

    engine = SequentialReconstructionEngine(scene, positions, pairwise_matches, config)
    return engine.process(), engine.report


__all__ = [
    "EngineState",
    "ViewConnectionScore",
    "SequentialReconstructionEngine",
    "run_sfm_from_frames",
]
