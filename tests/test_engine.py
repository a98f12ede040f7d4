import json

import numpy as np
import pytest

from conftest import FOCAL, HEIGHT, WIDTH, make_synthetic
from seqsfm.ba.bundle_adjustment import BundleAdjuster
from seqsfm.errors import BootstrapError, BundleAdjustmentError
from seqsfm.geometry.camera import PinholeIntrinsic, max_ray_angle_degrees
from seqsfm.io.scene_io import load_scene_npz, save_scene_npz
from seqsfm.sfm_inc import incremental_sfm
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import Rig, RigSubPose, RigSubPoseStatus, View
from seqsfm.sfm_inc.incremental_sfm import EngineState, SequentialReconstructionEngine, run_sfm_from_frames
from seqsfm.sfm_inc.statistics import scene_residuals


def make_engine(data, **config_kwargs):
    return SequentialReconstructionEngine(
        data.scene.copy(), data.features, data.matches, SequentialSfMConfig(**config_kwargs)
    )


@pytest.fixture(scope="module")
def sparse_data():
    return make_synthetic(sparse_view_points=5)


@pytest.fixture(scope="module")
def finished_engine(sparse_data):
    engine = make_engine(sparse_data)
    engine.process()
    return engine


def test_reconstructs_connected_views(finished_engine):
    engine = finished_engine
    assert engine.state == EngineState.DONE
    assert engine.scene.valid_views() == {0, 1, 2, 3, 4}
    # The sparsely matched view cannot be localized and is reported.
    assert engine.remaining == {5}
    assert engine.report.failed_resections == {5: "insufficient_correspondences"}
    assert engine.report.n_reconstructed_views == 5
    assert engine.report.n_views == 6
    assert not engine.report.cancelled


def test_group_progress_is_monotonic(finished_engine):
    groups = finished_engine.report.groups
    assert groups
    counts = [g.n_reconstructed_views for g in groups]
    assert counts == sorted(counts)
    assert counts[-1] == 5
    assert [g.group for g in groups] == list(range(len(groups)))


def test_landmarks_are_well_conditioned(finished_engine):
    engine = finished_engine
    scene = engine.scene
    assert len(scene.landmarks) > 250
    for track_id, landmark in scene.landmarks.items():
        assert track_id in engine.tracks
        assert len(landmark.observations) >= 2
        centers = []
        for view_id, observation in landmark.observations.items():
            assert engine.tracks[track_id][view_id] == observation.feature_id
            pose = scene.get_pose(scene.views[view_id])
            assert pose.depth(landmark.X)[0] > 0
            centers.append(pose.center)
        assert max_ray_angle_degrees(np.array(centers), landmark.X) >= 2.0
    assert engine.report.rmse < 1.0
    assert np.all(scene_residuals(scene) <= 4.0)


def test_recovered_geometry_matches_ground_truth(finished_engine, sparse_data):
    scene = finished_engine.scene
    centers = np.array([scene.get_pose(scene.views[v]).center for v in range(5)])
    truth = np.array([sparse_data.poses[v].center for v in range(5)])
    # Compare up to a similarity: normalized distances between camera centers.
    def normalized_distances(c):
        d = np.linalg.norm(c[:, None] - c[None, :], axis=2)
        return d / d.max()

    np.testing.assert_allclose(normalized_distances(centers), normalized_distances(truth), atol=0.01)


def test_runs_are_deterministic(finished_engine, sparse_data):
    other = make_engine(sparse_data, num_workers=2)
    other.process()
    assert sorted(other.scene.landmarks) == sorted(finished_engine.scene.landmarks)
    for view_id in range(5):
        np.testing.assert_allclose(
            other.scene.get_pose(other.scene.views[view_id]).t,
            finished_engine.scene.get_pose(finished_engine.scene.views[view_id]).t,
            atol=1e-9,
        )


def test_local_bundle_adjustment(sparse_data):
    engine = make_engine(sparse_data, use_local_ba=True, max_images_per_group=1)
    engine.process()
    assert engine.scene.valid_views() == {0, 1, 2, 3, 4}
    assert engine.report.rmse < 1.0
    assert engine.local_ba.focal_history[0]


def test_cancel_before_processing(sparse_data):
    engine = make_engine(sparse_data)
    engine.cancel()
    scene = engine.process()
    assert engine.report.cancelled
    # The seed pair is committed; growing stops at the first group boundary.
    assert len(scene.valid_views()) == 2
    assert engine.report.groups == []


def test_bootstrap_failure_raises(sparse_data):
    engine = make_engine(sparse_data, initial_pair_min_tracks=1000)
    with pytest.raises(BootstrapError):
        engine.process()


def test_outputs_are_written(sparse_data, tmp_path):
    engine = make_engine(sparse_data, output_dir=tmp_path, save_intermediate=True)
    engine.process()
    report = json.loads((tmp_path / "statistics.json").read_text())
    assert report["n_reconstructed_views"] == 5
    snapshots = sorted(tmp_path.glob("sfm_*.npz"))
    assert len(snapshots) == len(engine.report.groups)
    last = load_scene_npz(snapshots[-1])
    assert len(last.valid_views()) == engine.report.groups[-1].n_reconstructed_views


def test_resume_from_saved_scene(finished_engine, sparse_data, tmp_path):
    scene = finished_engine.scene.copy()
    # Forget view 4, then continue from the saved scene.
    del scene.poses[4]
    for landmark_id in list(scene.landmarks):
        scene.landmarks[landmark_id].observations.pop(4, None)
        if len(scene.landmarks[landmark_id].observations) < 2:
            scene.remove_landmark(landmark_id)
    path = tmp_path / "partial.npz"
    save_scene_npz(path, scene)

    engine = SequentialReconstructionEngine(
        load_scene_npz(path), sparse_data.features, sparse_data.matches, SequentialSfMConfig()
    )
    engine.process()
    assert engine.report.initial_pair == []
    assert engine.scene.valid_views() == {0, 1, 2, 3, 4}


def test_remap_landmark_ids(finished_engine, sparse_data):
    scene = finished_engine.scene.copy()
    # Shuffle the landmark keys as an external tool would.
    scene.landmarks = {10_000 + i: lm for i, (_, lm) in enumerate(sorted(scene.landmarks.items()))}
    engine = SequentialReconstructionEngine(scene, sparse_data.features, sparse_data.matches)
    assert engine.remap_landmark_ids_to_track_ids() == len(finished_engine.scene.landmarks)
    assert set(engine.scene.landmarks) == set(finished_engine.scene.landmarks)


class FlakyAdjuster(BundleAdjuster):
    """Fails the first `n_failures` calls, then adjusts normally."""

    def __init__(self, n_failures):
        super().__init__()
        self.n_failures = n_failures
        self.n_calls = 0

    def adjust(self, scene, partition):
        self.n_calls += 1
        if self.n_failures > 0:
            self.n_failures -= 1
            raise BundleAdjustmentError("did not converge")
        return super().adjust(scene, partition)


def test_failed_adjustment_keeps_committed_scene(sparse_data):
    adjuster = FlakyAdjuster(n_failures=1)
    engine = SequentialReconstructionEngine(
        sparse_data.scene.copy(), sparse_data.features, sparse_data.matches, SequentialSfMConfig(), adjuster
    )
    engine.process()
    assert engine.report.n_ba_failures == 1
    assert not engine.report.stopped_on_ba_failures
    assert engine.scene.valid_views() == {0, 1, 2, 3, 4}
    assert engine.report.rmse < 1.0


def test_repeated_adjustment_failures_stop_growth(sparse_data):
    adjuster = FlakyAdjuster(n_failures=10**6)
    engine = SequentialReconstructionEngine(
        sparse_data.scene.copy(),
        sparse_data.features,
        sparse_data.matches,
        SequentialSfMConfig(max_ba_failures=1),
        adjuster,
    )
    scene = engine.process()
    assert engine.state == EngineState.DONE
    assert engine.report.stopped_on_ba_failures
    assert len(engine.report.groups) == 1
    assert len(scene.valid_views()) > 2
    assert np.all(np.isfinite(scene_residuals(scene)))


def resumed_scene(data, view_ids=(0, 1, 2)):
    """Ground-truth reconstruction of `view_ids` to continue from."""
    scene, _ = data.reconstructed(list(view_ids))
    return scene


def test_unknown_focal_is_estimated_during_growth(synthetic):
    scene = resumed_scene(synthetic)
    scene.intrinsics[1] = PinholeIntrinsic(WIDTH, HEIGHT)
    scene.views[4].intrinsic_id = 1
    engine = SequentialReconstructionEngine(
        scene, synthetic.features, synthetic.matches, SequentialSfMConfig(refine_intrinsics=False)
    )
    engine.process()
    assert engine.report.failed_resections == {}
    assert engine.scene.valid_views() == {0, 1, 2, 3, 4}
    assert engine.scene.intrinsics[1].focal == pytest.approx(FOCAL, rel=0.05)
    np.testing.assert_allclose(
        engine.scene.get_pose(engine.scene.views[4]).center, synthetic.poses[4].center, atol=0.2
    )


def test_rig_views_share_one_pose(synthetic):
    scene = resumed_scene(synthetic)
    # Views 3 and 4 are two cameras of one rig with a calibrated relative pose.
    sub_pose = synthetic.poses[4].compose(synthetic.poses[3].inverse())
    scene.rigs[0] = Rig(
        0,
        {
            0: RigSubPose(status=RigSubPoseStatus.CONSTANT),
            1: RigSubPose(pose=sub_pose, status=RigSubPoseStatus.CONSTANT),
        },
    )
    for sub_pose_id, view_id in enumerate((3, 4)):
        scene.views[view_id] = View(
            view_id=view_id, intrinsic_id=0, pose_id=3, width=WIDTH, height=HEIGHT, rig_id=0, sub_pose_id=sub_pose_id
        )

    engine = SequentialReconstructionEngine(
        scene, synthetic.features, synthetic.matches, SequentialSfMConfig(max_images_per_group=1)
    )
    engine.process()
    result = engine.scene
    assert result.valid_views() == {0, 1, 2, 3, 4}
    # One resection localized both cameras.
    assert sum(3 in g.view_ids or 4 in g.view_ids for g in engine.report.groups) == 1
    # Sub-poses are held by the adjustment.
    np.testing.assert_allclose(result.rigs[0].sub_poses[1].pose.R, sub_pose.R, atol=1e-12)
    np.testing.assert_allclose(result.rigs[0].sub_poses[1].pose.t, sub_pose.t, atol=1e-12)
    np.testing.assert_allclose(result.get_pose(result.views[4]).center, synthetic.poses[4].center, atol=0.1)
    assert engine.report.rmse < 1.0


def test_run_from_frames(synthetic, monkeypatch):
    monkeypatch.setattr(
        incremental_sfm,
        "extract_features",
        lambda frames, **kwargs: (synthetic.features, {v: np.zeros((0, 128), np.float32) for v in synthetic.features}),
    )
    monkeypatch.setattr(incremental_sfm, "match_image_collection", lambda matcher, view_ids: synthetic.matches)
    frames = [np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)] * 5
    paths = [f"frame_{i}.png" for i in range(5)]

    scene, report = run_sfm_from_frames(
        frames, PinholeIntrinsic(WIDTH, HEIGHT, focal=FOCAL), image_paths=paths
    )
    assert report.n_reconstructed_views == 5
    assert scene.views[3].image_path == "frame_3.png"
    assert (scene.views[0].width, scene.views[0].height) == (WIDTH, HEIGHT)
