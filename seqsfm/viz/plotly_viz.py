"""
Plotly rendering of a reconstructed scene.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import plotly.graph_objs as go

from seqsfm.sfm_inc.data_structures import Scene


def colorize_landmarks(scene: Scene, images: Sequence[np.ndarray]) -> None:
    """Set each landmark's color from the image of its first observation (view id = image index)."""
    for landmark in scene.landmarks.values():
        if not landmark.observations:
            continue
        view_id = min(landmark.observations)
        if view_id >= len(images):
            continue
        image = images[view_id]
        u, v = np.round(landmark.observations[view_id].x).astype(int)
        if 0 <= v < image.shape[0] and 0 <= u < image.shape[1]:
            pixel = image[v, u]
            landmark.color = np.asarray(pixel if np.ndim(pixel) else [pixel] * 3, dtype=np.uint8)[:3]


def _landmark_trace(scene: Scene) -> go.Scatter3d:
    ids = sorted(scene.landmarks)
    xyz = np.array([scene.landmarks[i].X for i in ids]).reshape(-1, 3)
    colors = ["rgb({},{},{})".format(*scene.landmarks[i].color) for i in ids]
    return go.Scatter3d(
        x=xyz[:, 0],
        y=xyz[:, 1],
        z=xyz[:, 2],
        mode="markers",
        marker=dict(size=2, color=colors, opacity=0.8),
        name=f"Landmarks ({len(ids)})",
        hovertext=[f"landmark {i}, track length {len(scene.landmarks[i].observations)}" for i in ids],
    )


def _camera_traces(scene: Scene, axis_length: float) -> List[go.Scatter3d]:
    view_ids = sorted(scene.valid_views())
    poses = [scene.get_pose(scene.views[v]) for v in view_ids]
    centers = np.array([pose.center for pose in poses]).reshape(-1, 3)

    # Optical axes as disjoint segments separated by None.
    axis_x, axis_y, axis_z = [], [], []
    for pose, center in zip(poses, centers):
        tip = center + axis_length * pose.R[2]
        axis_x += [center[0], tip[0], None]
        axis_y += [center[1], tip[1], None]
        axis_z += [center[2], tip[2], None]

    return [
        go.Scatter3d(
            x=centers[:, 0],
            y=centers[:, 1],
            z=centers[:, 2],
            mode="markers",
            marker=dict(size=6, color="red", symbol="diamond"),
            name=f"Cameras ({len(view_ids)})",
            hovertext=[f"view {v}" for v in view_ids],
        ),
        go.Scatter3d(
            x=axis_x,
            y=axis_y,
            z=axis_z,
            mode="lines",
            line=dict(color="red", width=3),
            name="Viewing directions",
            hoverinfo="skip",
        ),
    ]


def plot_sfm_reconstruct(scene: Scene, axis_length: Optional[float] = None) -> go.Figure:
    """
    Interactive 3D view of the landmarks and the posed cameras.

    Args:
        scene: Reconstructed scene.
        axis_length: Length of the drawn optical axes. Defaults to a tenth
            of the landmark cloud's extent.

    Returns:
        A Plotly figure, ready for `write_html`.
    """
    if axis_length is None:
        cloud = np.array([landmark.X for landmark in scene.landmarks.values()]).reshape(-1, 3)
        extent = float(np.ptp(cloud, axis=0).max()) if len(cloud) else 0.0
        axis_length = 0.1 * extent if extent > 0 else 1.0

    fig = go.Figure()
    if scene.landmarks:
        fig.add_trace(_landmark_trace(scene))
    if scene.valid_views():
        fig.add_traces(_camera_traces(scene, axis_length))
    fig.update_layout(
        title=f"Sequential SfM: {len(scene.valid_views())}/{len(scene.views)} views posed",
        scene=dict(aspectmode="data", xaxis_title="X", yaxis_title="Y", zaxis_title="Z"),
        legend=dict(itemsizing="constant"),
        margin=dict(l=0, r=0, t=40, b=0),
    )
    return fig


__all__ = ["colorize_landmarks", "plot_sfm_reconstruct"]
