"""
Spatial-pyramid scoring of candidate views for the next-best-view choice.

The image is split into base x base cells, then recursively into finer grids.
Every occupied cell counts once per level, weighted by the level, so a view
whose correspondences cover the image scores higher than one with the same
number of clustered correspondences. Coarser levels weigh more.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

from seqsfm.sfm_inc.data_structures import FeaturesPerView, Scene
from seqsfm.sfm_inc.tracks import Tracks


class PyramidScorer:
    def __init__(self, base: int = 2, depth: int = 5, weights: Optional[Sequence[float]] = None) -> None:
        if weights is None:
            weights = [2.0 ** (depth - 1 - level) for level in range(depth)]
        if len(weights) != depth:
            raise ValueError(f"expected {depth} pyramid weights, got {len(weights)}")
        self.base = base
        self.depth = depth
        self.weights = np.asarray(weights, dtype=np.float64)
        # Cells per axis at each level.
        self.widths = np.array([base ** (level + 1) for level in range(depth)], dtype=np.int64)
        # view id -> {track id -> (depth,) cell indices}
        self._cache: Dict[int, Dict[int, np.ndarray]] = {}

    def cell_indices(self, points: np.ndarray, width: int, height: int) -> np.ndarray:
        """
        Cell index of each point (N, 2) at every level, shape (N, depth).
        """
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        rel_x = np.clip(points[:, 0] / float(width), 0.0, 1.0)
        rel_y = np.clip(points[:, 1] / float(height), 0.0, 1.0)
        indices = np.empty((points.shape[0], self.depth), dtype=np.int64)
        for level, cells in enumerate(self.widths):
            cx = np.minimum((rel_x * cells).astype(np.int64), cells - 1)
            cy = np.minimum((rel_y * cells).astype(np.int64), cells - 1)
            indices[:, level] = cy * cells + cx
        return indices

    def build_cache(self, scene: Scene, features: FeaturesPerView, tracks: Tracks) -> None:
        """Precompute the cell indices of every (view, track) observation."""
        per_view: Dict[int, list] = {}
        for track_id, track in tracks.items():
            for view_id, feature_id in track.items():
                per_view.setdefault(view_id, []).append((track_id, feature_id))

        self._cache.clear()
        for view_id, entries in per_view.items():
            view = scene.views.get(view_id)
            if view is None or view_id not in features:
                continue
            width, height = image_size(scene, view_id)
            track_ids = [track_id for track_id, _ in entries]
            points = features[view_id][[feature_id for _, feature_id in entries]]
            indices = self.cell_indices(points, width, height)
            self._cache[view_id] = dict(zip(track_ids, indices))

    def score(self, view_id: int, track_ids: Iterable[int]) -> float:
        cache = self._cache.get(view_id)
        if not cache:
            return 0.0
        rows = [cache[track_id] for track_id in track_ids if track_id in cache]
        if not rows:
            return 0.0
        indices = np.vstack(rows)
        occupied = np.array([np.unique(indices[:, level]).size for level in range(self.depth)])
        return float(np.dot(occupied, self.weights))

    def max_score(self) -> float:
        """Score of a view whose correspondences occupy every cell."""
        return float(np.dot(self.widths ** 2, self.weights))


def image_size(scene: Scene, view_id: int) -> Tuple[int, int]:
    """(width, height) of a view, falling back to its intrinsic."""
    view = scene.views[view_id]
    intrinsic = scene.intrinsics.get(view.intrinsic_id)
    width = view.width or (intrinsic.width if intrinsic is not None else 0)
    height = view.height or (intrinsic.height if intrinsic is not None else 0)
    if width <= 0 or height <= 0:
        raise ValueError(f"view {view_id} has no image size")
    return width, height


__all__ = ["PyramidScorer", "image_size"]
