import cv2
import numpy as np

from seqsfm.features.keypoints import extract_features
from seqsfm.features.matching import DescriptorMatcher, filter_matches_ratio_test, match_image_collection
from seqsfm.sfm_inc.config import SequentialSfMConfig


def test_ratio_test_keeps_distinctive_unique_matches():
    knn = [
        [cv2.DMatch(0, 4, 10.0), cv2.DMatch(0, 5, 40.0)],
        # Ambiguous: second neighbor nearly as close.
        [cv2.DMatch(1, 6, 10.0), cv2.DMatch(1, 7, 11.0)],
        # Same train feature as query 0 but farther: dropped.
        [cv2.DMatch(2, 4, 12.0), cv2.DMatch(2, 8, 50.0)],
        [cv2.DMatch(3, 9, 1.0)],
    ]
    matches = filter_matches_ratio_test(knn, ratio=0.75)
    assert matches.tolist() == [[0, 4]]


def test_ratio_test_without_matches():
    assert filter_matches_ratio_test([], 0.75).shape == (0, 2)


def test_config_validation():
    SequentialSfMConfig().validate()
    for kwargs in (
        {"min_track_length": 1},
        {"min_points_per_pose": 3},
        {"initial_pair": (2, 2)},
        {"pyramid_depth": 3, "pyramid_weights": [1.0]},
        {"min_residual_threshold": 5.0, "max_reprojection_error": 4.0},
    ):
        try:
            SequentialSfMConfig(**kwargs).validate()
        except ValueError:
            continue
        raise AssertionError(f"{kwargs} should be rejected")


def textured_views():
    rng = np.random.default_rng(3)
    texture = cv2.GaussianBlur(rng.uniform(0, 255, size=(480, 640)).astype(np.float32), (0, 0), 2.0)
    texture = cv2.normalize(texture, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    warps = [
        np.eye(3),
        np.array([[1.0, 0.03, 12.0], [-0.02, 1.0, 8.0], [2e-5, 1e-5, 1.0]]),
        np.array([[0.98, -0.02, -10.0], [0.01, 1.02, 5.0], [-1e-5, 2e-5, 1.0]]),
    ]
    images = [cv2.warpPerspective(texture, H, (640, 480)) for H in warps]
    return images, warps


def test_matcher_follows_the_image_motion():
    images, warps = textured_views()
    positions, descriptors = extract_features(images)
    matcher = DescriptorMatcher(positions, descriptors)
    matches = match_image_collection(matcher, sorted(positions))
    assert set(matches) == {(0, 1), (0, 2), (1, 2)}

    pairs = matches[(0, 1)]
    assert len(pairs) > 50
    assert len(np.unique(pairs[:, 1])) == len(pairs)
    expected = cv2.perspectiveTransform(positions[0][pairs[:, 0]].reshape(-1, 1, 2), warps[1]).reshape(-1, 2)
    errors = np.linalg.norm(expected - positions[1][pairs[:, 1]], axis=1)
    assert np.mean(errors < 3.0) > 0.9


def test_matcher_drops_weak_pairs():
    images, _ = textured_views()
    blank = np.full_like(images[0], 128)
    positions, descriptors = extract_features([images[0], blank])
    matcher = DescriptorMatcher(positions, descriptors)
    assert matcher.match(0, 1).shape == (0, 2)
    assert match_image_collection(matcher, [0, 1]) == {}
