import numpy as np
import pytest

from conftest import FOCAL, HEIGHT, WIDTH, arc_pose
from seqsfm.geometry.camera import PinholeIntrinsic, Pose, max_ray_angle_degrees, reprojection_errors
from seqsfm.geometry.essential import compute_essential_matrix, constrain_E, estimate_relative_pose
from seqsfm.geometry.fundamental import eight_point, sampson_distance
from seqsfm.geometry.pnp import decompose_projection_matrix, estimate_camera_pose_pnp
from seqsfm.geometry.robust import _ransac_iterations
from seqsfm.geometry.triangulation import triangulate_dlt, triangulate_track, triangulate_two_view
from seqsfm.sfm_inc.config import RobustEstimationConfig, RobustEstimatorType


def rotation_angle_deg(R_a, R_b):
    cos = (np.trace(R_a.T @ R_b) - 1.0) / 2.0
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


def ordered_pixels(synthetic, view_id):
    """Pixel of every synthetic point in view `view_id`, in point order."""
    return synthetic.features[view_id][synthetic.feature_of[view_id]]


# ----------------------------------------------------------------------
# Camera model
# ----------------------------------------------------------------------


def test_pose_compose_and_inverse():
    pose = arc_pose(30.0)
    identity = pose.compose(pose.inverse())
    np.testing.assert_allclose(identity.R, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(identity.t, np.zeros((3, 1)), atol=1e-12)
    np.testing.assert_allclose(pose.transform(pose.center), np.zeros(3), atol=1e-12)


def test_distortion_round_trip():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL, k1=-0.1, k2=0.02)
    normalized = np.array([[0.1, -0.2], [0.3, 0.25], [0.0, 0.0]])
    points_cam = np.hstack([normalized, np.ones((3, 1))])
    pixels = intrinsic.project(points_cam)
    np.testing.assert_allclose(intrinsic.to_normalized(pixels), normalized, atol=1e-6)


def test_reprojection_error_is_infinite_behind_camera():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)
    errors = reprojection_errors(
        intrinsic, Pose.identity(), np.array([[0.0, 0.0, 5.0], [0.0, 0.0, -5.0]]), np.full((2, 2), 640.0)
    )
    assert errors[0] == pytest.approx(np.hypot(0.0, 160.0))
    assert np.isinf(errors[1])


# ----------------------------------------------------------------------
# Epipolar geometry
# ----------------------------------------------------------------------


def test_eight_point_satisfies_epipolar_constraint(synthetic):
    x1 = ordered_pixels(synthetic, 0)
    x2 = ordered_pixels(synthetic, 2)
    F = eight_point(x1, x2)
    assert np.linalg.matrix_rank(F, tol=1e-8 * np.abs(F).max()) == 2
    assert np.median(sampson_distance(F, x1, x2)) < 1.0


def test_constrain_E_singular_values():
    E = constrain_E(np.random.default_rng(3).normal(size=(3, 3)))
    s = np.linalg.svd(E, compute_uv=False)
    np.testing.assert_allclose(s / s[0], [1.0, 1.0, 0.0], atol=1e-9)


def test_essential_from_fundamental():
    K = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL).K
    F = np.linalg.inv(K).T @ np.array([[0.0, -1.0, 0.2], [1.0, 0.0, -0.3], [-0.2, 0.3, 0.0]]) @ np.linalg.inv(K)
    E = compute_essential_matrix(K, K, F)
    s = np.linalg.svd(E, compute_uv=False)
    assert s[2] == pytest.approx(0.0, abs=1e-9 * s[0])


@pytest.mark.parametrize("estimator", [RobustEstimatorType.ACRANSAC, RobustEstimatorType.RANSAC])
def test_relative_pose_with_outliers(synthetic, estimator):
    rng = np.random.default_rng(1)
    x1 = ordered_pixels(synthetic, 0).copy()
    x2 = ordered_pixels(synthetic, 2).copy()
    outliers = rng.choice(len(x1), size=40, replace=False)
    x2[outliers] = rng.uniform([0, 0], [WIDTH, HEIGHT], size=(40, 2))

    K = synthetic.intrinsic.K
    config = RobustEstimationConfig(estimator=estimator, threshold=2.0)
    result = estimate_relative_pose(x1, x2, K, K, (WIDTH, HEIGHT), config, np.random.default_rng(0))
    assert result is not None

    relative = synthetic.poses[2].compose(synthetic.poses[0].inverse())
    assert rotation_angle_deg(result.R, relative.R) < 0.5
    t_true = relative.t.ravel() / np.linalg.norm(relative.t)
    assert float(np.dot(result.t.ravel(), t_true)) > 0.99
    # Most planted outliers are rejected.
    assert result.inlier_mask[outliers].sum() < 5
    assert result.inlier_mask.sum() > 230


# ----------------------------------------------------------------------
# Resection
# ----------------------------------------------------------------------


def test_p3p_with_outliers(synthetic):
    rng = np.random.default_rng(2)
    points_3d = synthetic.points.copy()
    points_2d = ordered_pixels(synthetic, 1).copy()
    outliers = rng.choice(len(points_3d), size=60, replace=False)
    points_2d[outliers] = rng.uniform([0, 0], [WIDTH, HEIGHT], size=(60, 2))

    result = estimate_camera_pose_pnp(
        points_3d,
        points_2d,
        (WIDTH, HEIGHT),
        RobustEstimationConfig(),
        np.random.default_rng(0),
        K=synthetic.intrinsic.K,
    )
    assert result is not None
    center = (-result.R.T @ result.t).ravel()
    np.testing.assert_allclose(center, synthetic.poses[1].center, atol=0.05)
    assert rotation_angle_deg(result.R, synthetic.poses[1].R) < 0.2
    assert result.inlier_mask[outliers].sum() < 5
    assert 0.0 < result.threshold < 10.0


def test_fixed_threshold_ransac_pose(synthetic):
    config = RobustEstimationConfig(estimator=RobustEstimatorType.RANSAC, threshold=2.0)
    result = estimate_camera_pose_pnp(
        synthetic.points,
        ordered_pixels(synthetic, 3),
        (WIDTH, HEIGHT),
        config,
        np.random.default_rng(0),
        K=synthetic.intrinsic.K,
    )
    assert result is not None
    assert result.threshold == 2.0
    np.testing.assert_allclose((-result.R.T @ result.t).ravel(), synthetic.poses[3].center, atol=0.05)


def test_dlt_resection_estimates_focal(synthetic):
    result = estimate_camera_pose_pnp(
        synthetic.points,
        ordered_pixels(synthetic, 4),
        (WIDTH, HEIGHT),
        RobustEstimationConfig(),
        np.random.default_rng(0),
        K=None,
    )
    assert result is not None
    assert result.K[0, 0] == pytest.approx(FOCAL, rel=0.03)
    assert result.K[0, 2] == WIDTH / 2.0
    np.testing.assert_allclose((-result.R.T @ result.t).ravel(), synthetic.poses[4].center, atol=0.2)


@pytest.mark.parametrize("scale", [3.7, -3.7])
def test_projection_matrix_decomposition(scale):
    pose = arc_pose(20.0)
    K = np.array([[800.0, 0.0, 640.0], [0.0, 800.0, 480.0], [0.0, 0.0, 1.0]])
    K_est, R, t = decompose_projection_matrix(scale * K @ pose.projection_matrix())
    np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(R) == pytest.approx(1.0)
    np.testing.assert_allclose(K_est, K, atol=1e-6)
    np.testing.assert_allclose(R, pose.R, atol=1e-9)
    np.testing.assert_allclose(t, pose.t, atol=1e-9)


def test_ransac_iterations_with_vanishing_inlier_ratio():
    assert _ransac_iterations(1.0 / 300.0, 8, 0.999, 1024) == 1024
    assert _ransac_iterations(0.0, 8, 0.999, 1024) == 1024
    assert _ransac_iterations(1.0, 8, 0.999, 1024) == 1
    assert 1 < _ransac_iterations(0.5, 3, 0.99, 1024) < 1024


def test_pnp_rejects_too_few_points(synthetic):
    result = estimate_camera_pose_pnp(
        synthetic.points[:3],
        ordered_pixels(synthetic, 1)[:3],
        (WIDTH, HEIGHT),
        RobustEstimationConfig(),
        np.random.default_rng(0),
        K=synthetic.intrinsic.K,
    )
    assert result is None


# ----------------------------------------------------------------------
# Triangulation
# ----------------------------------------------------------------------


def project(intrinsic, pose, X):
    return intrinsic.project(pose.transform(np.atleast_2d(X)))


def test_two_view_triangulation_is_exact():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)
    pose_a, pose_b = arc_pose(-10.0), arc_pose(10.0)
    X = np.array([[0.5, -0.3, 1.0], [-1.0, 0.7, -0.5]])
    n_a = intrinsic.to_normalized(project(intrinsic, pose_a, X))
    n_b = intrinsic.to_normalized(project(intrinsic, pose_b, X))
    np.testing.assert_allclose(triangulate_two_view(pose_a, pose_b, n_a, n_b), X, atol=1e-8)
    np.testing.assert_allclose(triangulate_dlt([pose_a, pose_b], np.vstack([n_a[0], n_b[0]])), X[0], atol=1e-8)


def test_track_triangulation_excludes_outlier_view():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)
    poses = [arc_pose(angle) for angle in (-18.0, -6.0, 6.0, 18.0)]
    X = np.array([0.3, 0.2, -0.4])
    pixels = np.vstack([project(intrinsic, pose, X) for pose in poses])
    pixels[2] += [25.0, -30.0]

    result = triangulate_track(poses, [intrinsic] * 4, pixels, np.full(4, 2.0), min_angle=2.0)
    assert result is not None
    assert result.inlier_mask.tolist() == [True, True, False, True]
    np.testing.assert_allclose(result.X, X, atol=1e-6)
    assert result.residuals[2] > 2.0


def test_track_triangulation_rejects_small_angle():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)
    poses = [arc_pose(0.0), arc_pose(0.5)]
    X = np.array([0.1, 0.1, 0.0])
    pixels = np.vstack([project(intrinsic, pose, X) for pose in poses])
    assert max_ray_angle_degrees(np.array([p.center for p in poses]), X) < 2.0
    assert triangulate_track(poses, [intrinsic] * 2, pixels, np.full(2, 2.0), min_angle=2.0) is None


def test_track_triangulation_rejects_point_behind_cameras():
    intrinsic = PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL)
    poses = [arc_pose(-6.0), arc_pose(6.0)]
    X = np.array([0.2, 0.1, -20.0])
    assert np.all(np.array([pose.depth(X)[0] for pose in poses]) < 0)
    pixels = np.vstack([project(intrinsic, pose, X) for pose in poses])
    assert triangulate_track(poses, [intrinsic] * 2, pixels, np.full(2, 4.0), min_angle=0.0) is None
