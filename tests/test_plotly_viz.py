import numpy as np

from seqsfm.viz.plotly_viz import colorize_landmarks, plot_sfm_reconstruct


def test_colorize_uses_first_observing_view(synthetic):
    scene, _ = synthetic.reconstructed([0, 1])
    images = [np.full((960, 1280, 3), 10 * (v + 1), dtype=np.uint8) for v in range(5)]
    colorize_landmarks(scene, images)
    for landmark in scene.landmarks.values():
        np.testing.assert_array_equal(landmark.color, [10, 10, 10])


def test_figure_has_points_cameras_and_axes(synthetic):
    scene, _ = synthetic.reconstructed([0, 1, 2])
    fig = plot_sfm_reconstruct(scene)
    assert len(fig.data) == 3
    assert len(fig.data[0].x) == len(scene.landmarks)
    assert len(fig.data[1].x) == 3
    # Three segments, each closed by a gap.
    assert len(fig.data[2].x) == 9


def test_empty_scene_gives_empty_figure(synthetic):
    fig = plot_sfm_reconstruct(synthetic.scene.copy())
    assert len(fig.data) == 0
