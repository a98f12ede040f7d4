"""
Bookkeeping for local bundle adjustment.

After a resection group only the neighborhood of the new views is refined:
views within a distance of the new ones in the co-visibility graph have
their poses refined, the landmarks they see are refined, and every other
view observing those landmarks is held constant. Intrinsics whose focal
length has stopped moving are held constant as well.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from typing import Dict, Iterable, List, Set

import numpy as np

from seqsfm.ba.bundle_adjustment import BundleAdjustmentPartition
from seqsfm.sfm_inc.data_structures import Scene

logger = logging.getLogger(__name__)


class LocalBundleAdjustmentData:
    def __init__(
        self,
        graph_distance: int = 1,
        focal_window: int = 25,
        focal_std_percentage: float = 1.0,
    ) -> None:
        self.graph_distance = graph_distance
        self.focal_window = focal_window
        self.focal_std_percentage = focal_std_percentage
        # intrinsic id -> focal length after each adjustment
        self.focal_history: Dict[int, List[float]] = {}

    # ------------------------------------------------------------------
    # Intrinsics
    # ------------------------------------------------------------------

    def record_intrinsics(self, scene: Scene) -> None:
        """Append the current focal length of every reconstructed intrinsic."""
        for intrinsic_id in sorted(scene.reconstructed_intrinsics()):
            focal = scene.intrinsics[intrinsic_id].focal
            self.focal_history.setdefault(intrinsic_id, []).append(float(focal))

    def is_focal_stable(self, intrinsic_id: int) -> bool:
        history = self.focal_history.get(intrinsic_id, [])
        if len(history) < self.focal_window:
            return False
        window = np.asarray(history[-self.focal_window :])
        mean = float(np.mean(window))
        if mean <= 0:
            return False
        return float(np.std(window)) < self.focal_std_percentage / 100.0 * mean

    # ------------------------------------------------------------------
    # View graph
    # ------------------------------------------------------------------

    @staticmethod
    def view_graph(scene: Scene) -> Dict[int, Set[int]]:
        """Co-visibility graph: reconstructed views sharing at least one landmark."""
        valid = scene.valid_views()
        graph: Dict[int, Set[int]] = {view_id: set() for view_id in valid}
        for landmark in scene.landmarks.values():
            view_ids = sorted(v for v in landmark.observations if v in valid)
            for a, b in itertools.combinations(view_ids, 2):
                graph[a].add(b)
                graph[b].add(a)
        return graph

    def view_distances(self, scene: Scene, new_view_ids: Iterable[int]) -> Dict[int, int]:
        """Breadth-first distances from the new views, up to `graph_distance`."""
        graph = self.view_graph(scene)
        distances: Dict[int, int] = {}
        queue = deque()
        for view_id in sorted(new_view_ids):
            if view_id in graph:
                distances[view_id] = 0
                queue.append(view_id)
        while queue:
            view_id = queue.popleft()
            if distances[view_id] >= self.graph_distance:
                continue
            for neighbor in sorted(graph[view_id]):
                if neighbor not in distances:
                    distances[neighbor] = distances[view_id] + 1
                    queue.append(neighbor)
        return distances

    def compute_partition(
        self,
        scene: Scene,
        new_view_ids: Iterable[int],
        refine_intrinsics: bool = True,
    ) -> BundleAdjustmentPartition:
        distances = self.view_distances(scene, new_view_ids)
        refined_views = set(distances)

        refined_landmarks = {
            landmark_id
            for landmark_id, landmark in scene.landmarks.items()
            if refined_views.intersection(landmark.observations)
        }
        valid = scene.valid_views()
        constant_views = set()
        for landmark_id in refined_landmarks:
            constant_views.update(v for v in scene.landmarks[landmark_id].observations if v in valid)
        constant_views -= refined_views

        refined_poses = {scene.views[v].pose_id for v in refined_views}
        constant_poses = {scene.views[v].pose_id for v in constant_views} - refined_poses

        intrinsic_ids = {scene.views[v].intrinsic_id for v in refined_views | constant_views}
        refined_intrinsics = {
            intrinsic_id
            for intrinsic_id in intrinsic_ids
            if refine_intrinsics
            and not scene.intrinsics[intrinsic_id].locked
            and not self.is_focal_stable(intrinsic_id)
        }

        logger.debug(
            f"Local BA partition: {len(refined_poses)} refined / {len(constant_poses)} constant poses, "
            f"{len(refined_intrinsics)} refined intrinsics, {len(refined_landmarks)} landmarks"
        )
        return BundleAdjustmentPartition(
            refined_poses=refined_poses,
            constant_poses=constant_poses,
            refined_intrinsics=refined_intrinsics,
            constant_intrinsics=intrinsic_ids - refined_intrinsics,
            refined_landmarks=refined_landmarks,
        )


__all__ = ["LocalBundleAdjustmentData"]
