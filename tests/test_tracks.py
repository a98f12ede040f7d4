import numpy as np

from seqsfm.sfm_inc.tracks import (
    UnionFind,
    build_tracks,
    compute_tracks_per_view,
    get_common_tracks,
    track_lengths,
)


def test_union_find_groups():
    uf = UnionFind()
    uf.union("a", "b")
    uf.union("c", "d")
    uf.union("b", "d")
    uf.add("e")
    groups = sorted(sorted(g) for g in uf.groups().values())
    assert groups == [["a", "b", "c", "d"], ["e"]]


def test_build_tracks_transitive_closure():
    matches = {
        (0, 1): np.array([[0, 5], [1, 6]]),
        (1, 2): np.array([[5, 9]]),
    }
    tracks = build_tracks(matches)
    assert tracks == {0: {0: 0, 1: 5, 2: 9}, 1: {0: 1, 1: 6}}


def test_conflicting_component_is_dropped():
    # Feature 0 of view 0 reaches two different features of view 2.
    matches = {
        (0, 1): np.array([[0, 0], [3, 3]]),
        (1, 2): np.array([[0, 0], [3, 3]]),
        (0, 2): np.array([[0, 1]]),
    }
    tracks = build_tracks(matches)
    assert list(tracks.values()) == [{0: 3, 1: 3, 2: 3}]


def test_min_track_length_filter():
    matches = {
        (0, 1): np.array([[0, 0], [1, 1]]),
        (1, 2): np.array([[0, 0]]),
    }
    tracks = build_tracks(matches, min_track_length=3)
    assert list(tracks.values()) == [{0: 0, 1: 0, 2: 0}]


def test_track_ids_are_deterministic():
    matches = {
        (1, 2): np.array([[4, 4], [2, 2]]),
        (0, 1): np.array([[7, 4], [1, 2]]),
    }
    reordered = {key: matches[key][::-1] for key in reversed(list(matches))}
    assert build_tracks(matches) == build_tracks(reordered)
    # Ordered by smallest (view, feature) node.
    assert build_tracks(matches)[0][0] == 1


def test_tracks_per_view_and_common_tracks():
    tracks = {0: {0: 1, 1: 2}, 1: {1: 3, 2: 4}, 2: {0: 5, 1: 6, 2: 7}}
    per_view = compute_tracks_per_view(tracks)
    assert per_view == {0: [0, 2], 1: [0, 1, 2], 2: [1, 2]}
    assert get_common_tracks(per_view, [0, 1]) == [0, 2]
    assert get_common_tracks(per_view, [0, 2]) == [2]
    assert get_common_tracks(per_view, [0, 3]) == []
    assert track_lengths(tracks).tolist() == [2, 2, 3]


def test_synthetic_tracks_cover_every_point(synthetic):
    tracks = build_tracks(synthetic.matches)
    assert len(tracks) == len(synthetic.points)
    assert all(len(track) == len(synthetic.poses) for track in tracks.values())
