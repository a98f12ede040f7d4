"""
Reconstruction report: per-group progress, residual and track statistics.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Union

import numpy as np

from seqsfm.geometry.camera import reprojection_errors
from seqsfm.sfm_inc.data_structures import Scene

logger = logging.getLogger(__name__)


@dataclass
class GroupStatistics:
    group: int
    view_ids: List[int]
    n_reconstructed_views: int
    n_landmarks: int
    n_outliers_removed: int = 0
    time_seconds: float = 0.0


@dataclass
class ReconstructionReport:
    n_views: int = 0
    n_reconstructed_views: int = 0
    n_landmarks: int = 0
    n_observations: int = 0
    initial_pair: List[int] = field(default_factory=list)
    rmse: float = 0.0
    cancelled: bool = False
    groups: List[GroupStatistics] = field(default_factory=list)
    # view id -> reason of the last failed resection
    failed_resections: Dict[int, str] = field(default_factory=dict)
    n_rejected_tracks: int = 0
    n_ba_failures: int = 0
    # Growth stopped early after too many consecutive optimizer failures.
    stopped_on_ba_failures: bool = False
    residual_histogram: Dict[str, List[float]] = field(default_factory=dict)
    track_length_histogram: Dict[int, int] = field(default_factory=dict)
    time_seconds: float = 0.0

    def summary(self) -> str:
        return (
            f"{self.n_reconstructed_views}/{self.n_views} views reconstructed, "
            f"{self.n_landmarks} landmarks, RMSE {self.rmse:.3f}px"
        )

    def to_dict(self) -> dict:
        return asdict(self)


def scene_residuals(scene: Scene) -> np.ndarray:
    """Reprojection error of every observation of a reconstructed view."""
    residuals = []
    per_view: Dict[int, list] = {}
    for landmark in scene.landmarks.values():
        for view_id, observation in landmark.observations.items():
            per_view.setdefault(view_id, []).append((landmark.X, observation.x))
    for view_id, entries in sorted(per_view.items()):
        if not scene.is_pose_and_intrinsic_defined(view_id):
            continue
        view = scene.views[view_id]
        points_3d = np.array([X for X, _ in entries])
        points_2d = np.array([x for _, x in entries])
        residuals.append(reprojection_errors(scene.get_intrinsic(view), scene.get_pose(view), points_3d, points_2d))
    return np.concatenate(residuals) if residuals else np.zeros(0)


def residual_histogram(residuals: np.ndarray, n_bins: int = 10) -> Dict[str, List[float]]:
    finite = residuals[np.isfinite(residuals)]
    if finite.size == 0:
        return {"counts": [], "edges": []}
    counts, edges = np.histogram(finite, bins=n_bins)
    return {"counts": counts.astype(float).tolist(), "edges": edges.tolist()}


def track_length_histogram(scene: Scene) -> Dict[int, int]:
    lengths = np.array([len(lm.observations) for lm in scene.landmarks.values()], dtype=int)
    values, counts = np.unique(lengths, return_counts=True)
    return {int(v): int(c) for v, c in zip(values, counts)}


def finalize_report(report: ReconstructionReport, scene: Scene) -> ReconstructionReport:
    """Fill the scene-level fields of a report from the final scene."""
    residuals = scene_residuals(scene)
    finite = residuals[np.isfinite(residuals)]
    report.n_views = len(scene.views)
    report.n_reconstructed_views = len(scene.valid_views())
    report.n_landmarks = len(scene.landmarks)
    report.n_observations = scene.num_observations()
    report.rmse = float(np.sqrt(np.mean(finite**2))) if finite.size else 0.0
    report.residual_histogram = residual_histogram(residuals)
    report.track_length_histogram = track_length_histogram(scene)
    return report


def save_report_json(path: Union[str, Path], report: ReconstructionReport) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    logger.info(f"Saved statistics to {path}")


__all__ = [
    "GroupStatistics",
    "ReconstructionReport",
    "scene_residuals",
    "residual_histogram",
    "track_length_histogram",
    "finalize_report",
    "save_report_json",
]
