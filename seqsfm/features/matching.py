"""
Pairwise descriptor matching: k-NN search, Lowe's ratio test and an
epipolar RANSAC check.
"""

from __future__ import annotations

import itertools
import logging
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from seqsfm.geometry.fundamental import fundamental_matrix_ransac
from seqsfm.sfm_inc.data_structures import PairwiseMatches

logger = logging.getLogger(__name__)

FLANN_INDEX_KDTREE = 1


def _knn_matcher(float_descriptors: bool, use_flann: bool) -> cv2.DescriptorMatcher:
    if float_descriptors and use_flann:
        return cv2.FlannBasedMatcher({"algorithm": FLANN_INDEX_KDTREE, "trees": 5}, {"checks": 50})
    return cv2.BFMatcher(cv2.NORM_L2 if float_descriptors else cv2.NORM_HAMMING, crossCheck=False)


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    use_flann: bool = True,
) -> List[List[cv2.DMatch]]:
    """
    Two nearest neighbors in `descriptors2` of every row of `descriptors1`.

    Float (SIFT) descriptors go through FLANN unless `use_flann` is off;
    binary (ORB) descriptors always use brute force with the Hamming norm.
    """
    if min(len(descriptors1), len(descriptors2)) < 2:
        return []
    matcher = _knn_matcher(descriptors1.dtype == np.float32, use_flann)
    return matcher.knnMatch(descriptors1, descriptors2, k=2)


def filter_matches_ratio_test(
    knn_matches: List[List[cv2.DMatch]],
    ratio: float = 0.75,
) -> np.ndarray:
    """
    Lowe's ratio test, then one-to-one on the second image: a feature of the
    second image claimed by several features keeps its closest match.

    Returns:
        (M, 2) int array of (feature id in image 1, feature id in image 2),
        sorted by the first column.
    """
    best: Dict[int, cv2.DMatch] = {}
    for candidates in knn_matches:
        if len(candidates) < 2:
            continue
        nearest, second = candidates[0], candidates[1]
        if nearest.distance >= ratio * second.distance:
            continue
        kept = best.get(nearest.trainIdx)
        if kept is None or nearest.distance < kept.distance:
            best[nearest.trainIdx] = nearest

    pairs = sorted((m.queryIdx, m.trainIdx) for m in best.values())
    return np.array(pairs, dtype=np.int64).reshape(-1, 2)


class DescriptorMatcher:
    """
    Putative matching of two views followed by a fundamental matrix check.

    Args:
        positions: {view_id: (N, 2) keypoint positions}.
        descriptors: {view_id: (N, D) descriptors}.
        ratio: Lowe ratio.
        use_flann: Use FLANN for float descriptors.
        geometric_threshold: Epipolar distance (pixels) of the RANSAC filter.
        min_matches: Pairs with fewer geometric inliers return no matches.
    """

    def __init__(
        self,
        positions: Dict[int, np.ndarray],
        descriptors: Dict[int, np.ndarray],
        ratio: float = 0.75,
        use_flann: bool = True,
        geometric_threshold: float = 2.0,
        min_matches: int = 16,
    ) -> None:
        self.positions = positions
        self.descriptors = descriptors
        self.ratio = ratio
        self.use_flann = use_flann
        self.geometric_threshold = geometric_threshold
        self.min_matches = min_matches

    def match(self, view_a: int, view_b: int) -> np.ndarray:
        knn_matches = match_keypoints(self.descriptors[view_a], self.descriptors[view_b], self.use_flann)
        matches = filter_matches_ratio_test(knn_matches, self.ratio)
        if len(matches) < max(8, self.min_matches):
            return np.zeros((0, 2), dtype=np.int64)

        pts_a = self.positions[view_a][matches[:, 0]]
        pts_b = self.positions[view_b][matches[:, 1]]
        _, inlier_mask = fundamental_matrix_ransac(pts_a, pts_b, self.geometric_threshold)
        matches = matches[inlier_mask]
        logger.debug(f"Pair ({view_a}, {view_b}): {len(knn_matches)} knn, {len(matches)} geometric inliers")
        if len(matches) < self.min_matches:
            return np.zeros((0, 2), dtype=np.int64)
        return matches


def match_image_collection(
    matcher: DescriptorMatcher,
    view_ids: Sequence[int],
    pairs: Optional[Sequence[tuple]] = None,
) -> PairwiseMatches:
    """
    Match every pair of views (or the given pairs).

    Returns:
        {(view_a, view_b): (M, 2) matches} with view_a < view_b; pairs without
        matches are left out.
    """
    if pairs is None:
        pairs = list(itertools.combinations(sorted(view_ids), 2))
    result: PairwiseMatches = {}
    for view_a, view_b in pairs:
        if view_a > view_b:
            view_a, view_b = view_b, view_a
        matches = matcher.match(view_a, view_b)
        if len(matches):
            result[(view_a, view_b)] = matches
    logger.info(f"Matched {len(pairs)} image pairs, {len(result)} kept")
    return result


__all__ = [
    "match_keypoints",
    "filter_matches_ratio_test",
    "DescriptorMatcher",
    "match_image_collection",
]
