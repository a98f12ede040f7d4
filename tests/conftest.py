"""Synthetic multi-view scenes shared by the tests."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pytest

from seqsfm.geometry.camera import PinholeIntrinsic, Pose
from seqsfm.sfm_inc.data_structures import Landmark, Observation, Scene, View
from seqsfm.sfm_inc.tracks import build_tracks

FOCAL = 800.0
WIDTH = 1280
HEIGHT = 960


def arc_pose(angle_deg: float, radius: float = 8.0) -> Pose:
    """Camera on a circle around the origin, looking at the origin."""
    theta = np.radians(angle_deg)
    R = np.array(
        [
            [np.cos(theta), 0.0, np.sin(theta)],
            [0.0, 1.0, 0.0],
            [-np.sin(theta), 0.0, np.cos(theta)],
        ]
    )
    center = np.array([radius * np.sin(theta), 0.0, -radius * np.cos(theta)])
    return Pose.from_center(R, center)


@dataclass
class SyntheticData:
    scene: Scene
    features: Dict[int, np.ndarray]
    matches: Dict[tuple, np.ndarray]
    poses: Dict[int, Pose]
    points: np.ndarray
    # view id -> feature id of each point (-1 when unseen)
    feature_of: Dict[int, np.ndarray]

    @property
    def intrinsic(self) -> PinholeIntrinsic:
        return self.scene.intrinsics[0]

    def track_to_point(self, tracks) -> Dict[int, int]:
        """Point index of every track."""
        point_of = {}
        for view_id, feature_ids in self.feature_of.items():
            for point, feature in enumerate(feature_ids):
                if feature >= 0:
                    point_of[(view_id, int(feature))] = point
        return {track_id: point_of[next(iter(track.items()))] for track_id, track in tracks.items()}

    def reconstructed(self, view_ids: List[int]) -> tuple:
        """
        Copy of the scene with the true poses of `view_ids` and a landmark
        (keyed by track id) for every track seen by at least two of them.
        """
        scene = self.scene.copy()
        for view_id in view_ids:
            scene.set_pose(scene.views[view_id], self.poses[view_id].copy())
        tracks = build_tracks(self.matches)
        track_points = self.track_to_point(tracks)
        for track_id, track in tracks.items():
            observed = [v for v in view_ids if v in track]
            if len(observed) < 2:
                continue
            scene.add_landmark(
                track_id,
                Landmark(
                    X=self.points[track_points[track_id]].copy(),
                    observations={v: Observation(self.features[v][track[v]], track[v]) for v in observed},
                ),
            )
        return scene, tracks


def make_synthetic(
    n_views: int = 5,
    n_points: int = 300,
    step_deg: float = 12.0,
    noise: float = 0.2,
    seed: int = 0,
    sparse_view_points: Optional[int] = None,
) -> SyntheticData:
    """
    Points in a cube at the origin seen by cameras on an arc.

    Feature ids are shuffled per view and every view pair is matched. With
    `sparse_view_points`, one extra view is added that matches only that
    many points (with view 0).
    """
    rng = np.random.default_rng(seed)
    points = rng.uniform(-2.0, 2.0, size=(n_points, 3))
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)

    scene = Scene()
    scene.intrinsics[0] = intrinsic
    features: Dict[int, np.ndarray] = {}
    feature_of: Dict[int, np.ndarray] = {}
    poses: Dict[int, Pose] = {}

    angles = [(i - (n_views - 1) / 2.0) * step_deg for i in range(n_views)]
    if sparse_view_points is not None:
        angles.append(angles[-1] + step_deg)

    for view_id, angle in enumerate(angles):
        pose = arc_pose(angle)
        poses[view_id] = pose
        scene.views[view_id] = View(view_id=view_id, intrinsic_id=0, width=WIDTH, height=HEIGHT)
        pixels = intrinsic.project(pose.transform(points)) + rng.normal(0.0, noise, size=(n_points, 2))
        perm = rng.permutation(n_points)
        positions = np.empty((n_points, 2))
        positions[perm] = pixels
        features[view_id] = positions
        feature_of[view_id] = perm

    matches: Dict[tuple, np.ndarray] = {}
    for view_a, view_b in itertools.combinations(range(n_views), 2):
        matches[(view_a, view_b)] = np.stack([feature_of[view_a], feature_of[view_b]], axis=1)

    if sparse_view_points is not None:
        sparse = n_views
        seen = np.full(n_points, -1)
        seen[:sparse_view_points] = feature_of[sparse][:sparse_view_points]
        feature_of[sparse] = seen
        matches[(0, sparse)] = np.stack(
            [feature_of[0][:sparse_view_points], feature_of[sparse][:sparse_view_points]], axis=1
        )

    return SyntheticData(scene, features, matches, poses, points, feature_of)


@pytest.fixture(scope="session")
def synthetic() -> SyntheticData:
    return make_synthetic()


@pytest.fixture()
def synthetic_copy(synthetic) -> SyntheticData:
    return SyntheticData(
        scene=synthetic.scene.copy(),
        features=synthetic.features,
        matches=synthetic.matches,
        poses=synthetic.poses,
        points=synthetic.points,
        feature_of=synthetic.feature_of,
    )
