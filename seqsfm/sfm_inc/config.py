"""Configuration for the sequential Structure-from-Motion engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class RobustEstimatorType(str, Enum):
    RANSAC = "ransac"
    ACRANSAC = "acransac"


@dataclass
class RobustEstimationConfig:
    """Policy of one robust (RANSAC-family) estimation."""

    estimator: RobustEstimatorType = RobustEstimatorType.ACRANSAC
    """'ransac' uses `threshold`; 'acransac' estimates the threshold from the data"""

    max_iterations: int = 1024
    """Maximum number of random minimal samples"""

    confidence: float = 0.999
    """Probability of drawing at least one outlier-free sample (fixed-threshold RANSAC)"""

    threshold: float = 4.0
    """Inlier threshold in pixels (fixed-threshold RANSAC)"""

    max_threshold: float = math.inf
    """Upper bound of the a-contrario threshold in pixels"""


@dataclass
class SequentialSfMConfig:
    """Configuration of the sequential reconstruction engine.

    Defaults follow the usual settings of incremental SfM; the CLI exposes
    the most useful ones as flags.
    """

    # Bootstrap
    initial_pair: Optional[Tuple[int, int]] = None
    """Pair of view ids to try first as the seed pair"""

    initial_pair_min_tracks: int = 30
    """Minimum number of shared tracks for a seed pair candidate"""

    initial_pair_min_angle: float = 5.0
    """Minimum triangulation angle quantile (degrees) for a seed pair candidate"""

    relative_pose: RobustEstimationConfig = field(default_factory=RobustEstimationConfig)
    """Robust estimation policy for the seed pair relative pose"""

    # Tracks
    min_input_track_length: int = 2
    """Tracks shorter than this are discarded when fusing matches"""

    min_track_length: int = 2
    """Minimum number of observations of a landmark"""

    # Resection
    min_points_per_pose: int = 30
    """Minimum number of 2D-3D inliers to accept a resection"""

    min_inlier_ratio: float = 0.1
    """Minimum inlier ratio to accept a resection"""

    localizer: RobustEstimationConfig = field(default_factory=RobustEstimationConfig)
    """Robust estimation policy for resection"""

    # Triangulation
    min_nb_observations_for_triangulation: int = 2
    """Minimum number of reconstructed views observing a track before it is triangulated"""

    min_angle_for_triangulation: float = 3.0
    """Minimum ray angle (degrees) of a newly triangulated point"""

    min_angle_for_landmark: float = 2.0
    """Minimum ray angle (degrees) a landmark must keep after refinement"""

    min_residual_threshold: float = 1.0
    """Lower bound (pixels) of the per-view a-contrario threshold"""

    max_reprojection_error: float = 4.0
    """Upper bound (pixels) of the per-view threshold and outlier precision"""

    # Next best views
    pyramid_base: int = 2
    """Number of cells per axis at the first pyramid level"""

    pyramid_depth: int = 5
    """Number of pyramid levels"""

    pyramid_weights: Optional[List[float]] = None
    """Per-level weights, coarsest first; default 2^(depth - 1 - level)"""

    next_best_view_group_ratio: float = 0.75
    """Views scoring above this fraction of the best score join the resection group"""

    max_images_per_group: int = 30
    """Maximum size of one resection group"""

    # Bundle adjustment
    use_local_ba: bool = False
    """Refine only the neighborhood of newly added views after each group"""

    local_ba_graph_distance: int = 1
    """Distance limit in the view graph for local bundle adjustment"""

    local_ba_focal_window: int = 25
    """Number of past adjustments inspected to decide whether a focal length is stable"""

    local_ba_focal_std_percentage: float = 1.0
    """Focal lengths whose std stays under this percentage of their mean are held constant"""

    global_ba_interval: int = 0
    """In local mode, run a global adjustment every N groups (0: only when finalizing)"""

    refine_intrinsics: bool = True
    """Refine focal length and distortion of reconstructed intrinsics"""

    ba_max_nfev: int = 50
    """Maximum number of function evaluations per adjustment"""

    ba_loss: str = "soft_l1"
    """Robust loss passed to scipy.optimize.least_squares"""

    max_refinement_iterations: int = 3
    """Maximum number of adjust/filter rounds per resection group"""

    refinement_outlier_stop: int = 50
    """Stop adjust/filter rounds once a round removes at most this many outliers"""

    max_ba_failures: int = 3
    """Consecutive optimizer failures after which growth stops and the last committed scene is finalized"""

    # Execution
    num_workers: Optional[int] = None
    """Worker threads for the parallel phases (None: executor default)"""

    seed: int = 0
    """Seed of the robust estimators' random generators"""

    output_dir: Optional[Path] = None
    """Directory for intermediate snapshots and statistics"""

    save_intermediate: bool = False
    """Write a scene snapshot after each resection group"""

    def validate(self) -> None:
        if self.min_track_length < 2:
            raise ValueError("min_track_length must be >= 2")
        if self.min_input_track_length < 2:
            raise ValueError("min_input_track_length must be >= 2")
        if self.min_nb_observations_for_triangulation < 2:
            raise ValueError("min_nb_observations_for_triangulation must be >= 2")
        if self.min_points_per_pose < 6:
            raise ValueError("min_points_per_pose must be >= 6")
        if not 0.0 <= self.min_inlier_ratio <= 1.0:
            raise ValueError("min_inlier_ratio must be in [0, 1]")
        if self.min_residual_threshold > self.max_reprojection_error:
            raise ValueError("min_residual_threshold must not exceed max_reprojection_error")
        if self.pyramid_base < 2 or self.pyramid_depth < 1:
            raise ValueError("pyramid_base must be >= 2 and pyramid_depth >= 1")
        if self.pyramid_weights is not None and len(self.pyramid_weights) != self.pyramid_depth:
            raise ValueError("pyramid_weights must have one weight per pyramid level")
        if self.initial_pair is not None and self.initial_pair[0] == self.initial_pair[1]:
            raise ValueError("initial_pair must name two different views")
        if self.local_ba_graph_distance < 0:
            raise ValueError("local_ba_graph_distance must be >= 0")
        if self.max_images_per_group < 1:
            raise ValueError("max_images_per_group must be >= 1")


__all__ = ["RobustEstimatorType", "RobustEstimationConfig", "SequentialSfMConfig"]
