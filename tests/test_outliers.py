import numpy as np

from seqsfm.sfm_inc.outliers import remove_outliers, remove_outliers_angle, remove_outliers_residual


def test_residual_filter_removes_perturbed_observations(synthetic):
    scene, _ = synthetic.reconstructed([0, 1, 2])
    perturbed = sorted(scene.landmarks)[:10]
    for landmark_id in perturbed:
        scene.landmarks[landmark_id].observations[1].x += [15.0, 0.0]

    n_removed = remove_outliers_residual(scene, precision=4.0)
    assert n_removed == 10
    for landmark_id in perturbed:
        assert 1 not in scene.landmarks[landmark_id].observations
    assert len(scene.landmarks) == len(synthetic.points)


def test_short_landmarks_are_deleted(synthetic):
    scene, _ = synthetic.reconstructed([0, 1])
    landmark_id = sorted(scene.landmarks)[0]
    scene.landmarks[landmark_id].observations[0].x += [0.0, 20.0]
    remove_outliers_residual(scene, precision=4.0, min_track_length=2)
    assert landmark_id not in scene.landmarks


def test_landmark_behind_camera_is_removed(synthetic):
    scene, _ = synthetic.reconstructed([0, 1, 2])
    landmark_id = sorted(scene.landmarks)[0]
    scene.landmarks[landmark_id].X = np.array([0.0, 0.0, -30.0])
    remove_outliers_residual(scene, precision=1e6)
    assert landmark_id not in scene.landmarks


def test_angle_filter(synthetic):
    scene, _ = synthetic.reconstructed([0, 1])
    # Views 0 and 1 are 12 degrees apart as seen from the origin.
    assert remove_outliers_angle(scene, min_angle=2.0) == 0
    far = sorted(scene.landmarks)[0]
    scene.landmarks[far].X = np.array([0.0, 0.0, 1e4])
    assert remove_outliers_angle(scene, min_angle=2.0) == 1
    assert far not in scene.landmarks


def test_observations_of_unposed_views_are_ignored(synthetic):
    scene, _ = synthetic.reconstructed([0, 1, 2])
    del scene.poses[2]
    for landmark in scene.landmarks.values():
        landmark.observations[2].x += [50.0, 50.0]
    assert remove_outliers_residual(scene, precision=4.0) == 0
    # Only the views with a pose count towards the ray angle.
    assert remove_outliers_angle(scene, min_angle=2.0) == 0


def test_remove_outliers_is_idempotent(synthetic):
    scene, _ = synthetic.reconstructed([0, 1, 2, 3])
    rng = np.random.default_rng(0)
    for landmark_id in rng.choice(sorted(scene.landmarks), size=25, replace=False):
        scene.landmarks[int(landmark_id)].observations[3].x += rng.normal(0.0, 30.0, size=2) + 10.0

    assert remove_outliers(scene, precision=4.0, min_angle=2.0) > 0
    assert remove_outliers(scene, precision=4.0, min_angle=2.0) == 0
