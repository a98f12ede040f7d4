"""
Shared core data structures for the sequential SfM pipeline.

The `Scene` aggregate is the single mutable source of truth of a
reconstruction. Components receive it as an explicit parameter and mutate it
only through the operations defined here.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Set, Tuple, Union

import numpy as np

from seqsfm.geometry.camera import PinholeIntrinsic, Pose

# (N, 2) pixel positions of the features of each view, indexed by feature id.
FeaturesPerView = Dict[int, np.ndarray]
# (M, 2) int arrays of (feature id in view_a, feature id in view_b), keyed by
# (view_a, view_b) with view_a < view_b.
PairwiseMatches = Dict[Tuple[int, int], np.ndarray]


@dataclass(frozen=True)
class DirectPose:
    """The view owns its pose, stored under `pose_id`."""

    pose_id: int


@dataclass(frozen=True)
class RigPose:
    """The view's pose is its rig's pose composed with a sub-pose."""

    rig_id: int
    sub_pose_id: int
    pose_id: int


PoseRef = Union[DirectPose, RigPose]


class RigSubPoseStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    ESTIMATED = "estimated"
    CONSTANT = "constant"


@dataclass
class RigSubPose:
    """Pose of one camera relative to its rig."""

    pose: Pose = field(default_factory=Pose.identity)
    status: RigSubPoseStatus = RigSubPoseStatus.UNINITIALIZED


@dataclass
class Rig:
    rig_id: int
    sub_poses: Dict[int, RigSubPose] = field(default_factory=dict)


@dataclass
class View:
    """One input image."""

    view_id: int
    intrinsic_id: int
    # Defaults to the view id; rig views of one shot share a pose id.
    pose_id: Optional[int] = None
    width: int = 0
    height: int = 0
    image_path: str = ""
    rig_id: Optional[int] = None
    sub_pose_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.pose_id is None:
            self.pose_id = self.view_id

    def is_part_of_rig(self) -> bool:
        return self.rig_id is not None and self.sub_pose_id is not None

    @property
    def pose_ref(self) -> PoseRef:
        if self.is_part_of_rig():
            return RigPose(self.rig_id, self.sub_pose_id, self.pose_id)
        return DirectPose(self.pose_id)


@dataclass
class Observation:
    """A 2D measurement of a landmark: pixel position and feature index."""

    x: np.ndarray
    feature_id: int

    def __post_init__(self) -> None:
        self.x = np.array(self.x, dtype=np.float64).reshape(2)


@dataclass
class Landmark:
    """A triangulated 3D point and its confirmed observations."""

    X: np.ndarray
    observations: Dict[int, Observation] = field(default_factory=dict)
    color: np.ndarray = field(default_factory=lambda: np.array([128, 128, 128], dtype=np.uint8))

    def __post_init__(self) -> None:
        self.X = np.array(self.X, dtype=np.float64).reshape(3)


@dataclass
class Scene:
    """
    Global container for views, intrinsics, poses, rigs and landmarks.

    Landmarks are keyed by the id of the track they were triangulated from.
    """

    views: Dict[int, View] = field(default_factory=dict)
    intrinsics: Dict[int, PinholeIntrinsic] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    rigs: Dict[int, Rig] = field(default_factory=dict)
    landmarks: Dict[int, Landmark] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Poses
    # ------------------------------------------------------------------

    def _sub_pose(self, view: View) -> RigSubPose:
        rig = self.rigs.get(view.rig_id)
        if rig is None or view.sub_pose_id not in rig.sub_poses:
            return RigSubPose()
        return rig.sub_poses[view.sub_pose_id]

    def _sub_pose_for_update(self, view: View) -> RigSubPose:
        rig = self.rigs.setdefault(view.rig_id, Rig(view.rig_id))
        return rig.sub_poses.setdefault(view.sub_pose_id, RigSubPose())

    def has_pose(self, view: View) -> bool:
        ref = view.pose_ref
        if ref.pose_id not in self.poses:
            return False
        if isinstance(ref, RigPose):
            return self._sub_pose(view).status != RigSubPoseStatus.UNINITIALIZED
        return True

    def get_pose(self, view: View) -> Pose:
        """
        Effective world-to-camera pose of a view.

        For rig views this is the rig pose followed by the camera sub-pose.
        """
        ref = view.pose_ref
        if isinstance(ref, RigPose):
            sub_pose = self._sub_pose(view)
            if sub_pose.status == RigSubPoseStatus.UNINITIALIZED:
                raise KeyError(f"sub-pose {ref.sub_pose_id} of rig {ref.rig_id} is not initialized")
            return sub_pose.pose.compose(self.poses[ref.pose_id])
        return self.poses[ref.pose_id]

    def set_pose(self, view: View, pose: Pose) -> None:
        """
        Set the effective pose of a view.

        For a rig view the rig pose and/or the sub-pose are updated so that
        `get_pose(view)` returns `pose`. The first camera localized in an
        uninitialized rig defines the rig frame.
        """
        ref = view.pose_ref
        if isinstance(ref, DirectPose):
            self.poses[ref.pose_id] = pose
            return

        sub_pose = self._sub_pose_for_update(view)
        known_rig_pose = ref.pose_id in self.poses
        known_sub_pose = sub_pose.status != RigSubPoseStatus.UNINITIALIZED

        if not known_sub_pose and not known_rig_pose:
            self.poses[ref.pose_id] = pose
            sub_pose.pose = Pose.identity()
            sub_pose.status = RigSubPoseStatus.ESTIMATED
        elif not known_sub_pose:
            sub_pose.pose = pose.compose(self.poses[ref.pose_id].inverse())
            sub_pose.status = RigSubPoseStatus.ESTIMATED
        else:
            self.poses[ref.pose_id] = sub_pose.pose.inverse().compose(pose)

    # ------------------------------------------------------------------
    # Reconstruction state
    # ------------------------------------------------------------------

    def get_intrinsic(self, view: View) -> Optional[PinholeIntrinsic]:
        return self.intrinsics.get(view.intrinsic_id)

    def is_pose_and_intrinsic_defined(self, view_id: int) -> bool:
        view = self.views.get(view_id)
        if view is None:
            return False
        intrinsic = self.intrinsics.get(view.intrinsic_id)
        return intrinsic is not None and intrinsic.is_valid() and self.has_pose(view)

    def valid_views(self) -> Set[int]:
        """Ids of the views whose pose and intrinsic both resolve."""
        return {view_id for view_id in self.views if self.is_pose_and_intrinsic_defined(view_id)}

    def reconstructed_intrinsics(self) -> Set[int]:
        return {self.views[view_id].intrinsic_id for view_id in self.valid_views()}

    def num_observations(self) -> int:
        return sum(len(lm.observations) for lm in self.landmarks.values())

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def add_landmark(self, landmark_id: int, landmark: Landmark) -> None:
        self.landmarks[landmark_id] = landmark

    def add_observation(self, landmark_id: int, view_id: int, observation: Observation) -> None:
        self.landmarks[landmark_id].observations[view_id] = observation

    def remove_observation(self, landmark_id: int, view_id: int) -> bool:
        landmark = self.landmarks.get(landmark_id)
        if landmark is None or view_id not in landmark.observations:
            return False
        del landmark.observations[view_id]
        return True

    def remove_landmark(self, landmark_id: int) -> bool:
        return self.landmarks.pop(landmark_id, None) is not None

    def copy(self) -> "Scene":
        """Deep snapshot of the scene."""
        return copy.deepcopy(self)


__all__ = [
    "FeaturesPerView",
    "PairwiseMatches",
    "DirectPose",
    "RigPose",
    "PoseRef",
    "RigSubPoseStatus",
    "RigSubPose",
    "Rig",
    "View",
    "Observation",
    "Landmark",
    "Scene",
]
