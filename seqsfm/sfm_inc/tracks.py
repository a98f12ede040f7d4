"""
Fusion of pairwise feature matches into multi-view tracks.

A track is one physical point seen in several views: a connected component
of the match graph whose nodes are (view id, feature id) pairs.
"""

from __future__ import annotations

import logging
from typing import Dict, Hashable, Iterable, List

import numpy as np

from seqsfm.sfm_inc.data_structures import PairwiseMatches

logger = logging.getLogger(__name__)

# track id -> {view id -> feature id}
Tracks = Dict[int, Dict[int, int]]
# view id -> sorted track ids
TracksPerView = Dict[int, List[int]]


class UnionFind:
    """Disjoint sets with path compression and union by rank."""

    def __init__(self) -> None:
        self._parent: Dict[Hashable, Hashable] = {}
        self._rank: Dict[Hashable, int] = {}

    def add(self, item: Hashable) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._rank[item] = 0

    def find(self, item: Hashable) -> Hashable:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: Hashable, b: Hashable) -> None:
        self.add(a)
        self.add(b)
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1

    def groups(self) -> Dict[Hashable, List[Hashable]]:
        components: Dict[Hashable, List[Hashable]] = {}
        for item in self._parent:
            components.setdefault(self.find(item), []).append(item)
        return components


def build_tracks(pairwise_matches: PairwiseMatches, min_track_length: int = 2) -> Tracks:
    """
    Fuse pairwise matches into tracks.

    Components that contain two different features of the same view are
    ambiguous and dropped entirely; components with fewer than
    `min_track_length` views are dropped too. Track ids follow the order of
    each component's smallest (view id, feature id) node.

    Args:
        pairwise_matches: {(view_a, view_b): (M, 2) feature id pairs}.
        min_track_length: Minimum number of views in a track.

    Returns:
        {track_id: {view_id: feature_id}}.
    """
    uf = UnionFind()
    for (view_a, view_b), matches in sorted(pairwise_matches.items()):
        matches = np.asarray(matches, dtype=np.int64).reshape(-1, 2)
        for feat_a, feat_b in matches:
            uf.union((int(view_a), int(feat_a)), (int(view_b), int(feat_b)))

    components = sorted((sorted(nodes) for nodes in uf.groups().values()), key=lambda nodes: nodes[0])

    tracks: Tracks = {}
    n_conflicts = 0
    n_short = 0
    for nodes in components:
        track: Dict[int, int] = {}
        conflict = False
        for view_id, feature_id in nodes:
            if view_id in track:
                conflict = True
                break
            track[view_id] = feature_id
        if conflict:
            n_conflicts += 1
            continue
        if len(track) < min_track_length:
            n_short += 1
            continue
        tracks[len(tracks)] = track

    logger.info(
        f"Fused {len(pairwise_matches)} image pairs into {len(tracks)} tracks "
        f"({n_conflicts} ambiguous and {n_short} short components dropped)"
    )
    return tracks


def compute_tracks_per_view(tracks: Tracks) -> TracksPerView:
    tracks_per_view: TracksPerView = {}
    for track_id in sorted(tracks):
        for view_id in tracks[track_id]:
            tracks_per_view.setdefault(view_id, []).append(track_id)
    return tracks_per_view


def get_common_tracks(tracks_per_view: TracksPerView, view_ids: Iterable[int]) -> List[int]:
    """Sorted ids of the tracks visible in every view of `view_ids`."""
    common = None
    for view_id in view_ids:
        ids = set(tracks_per_view.get(view_id, ()))
        common = ids if common is None else common & ids
    return sorted(common) if common else []


def track_lengths(tracks: Tracks) -> np.ndarray:
    return np.array([len(track) for track in tracks.values()], dtype=int)


__all__ = [
    "Tracks",
    "TracksPerView",
    "UnionFind",
    "build_tracks",
    "compute_tracks_per_view",
    "get_common_tracks",
    "track_lengths",
]
