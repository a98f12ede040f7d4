import cv2
import numpy as np
import pytest

from seqsfm.features.keypoints import create_detector, detect_keypoints
from seqsfm.io.image_io import iter_video_frames, load_images_from_folder, select_keyframes


def test_select_keyframes_spans_sequence():
    frames = [None] * 50
    indices = select_keyframes(frames, max_num=5)
    assert indices[0] == 0 and indices[-1] == 49
    assert len(indices) == 5
    assert indices == sorted(set(indices))
    assert select_keyframes(frames[:3], max_num=5) == [0, 1, 2]


def test_load_images_sorted_and_rgb(tmp_path):
    bgr = np.zeros((8, 8, 3), dtype=np.uint8)
    bgr[..., 0] = 255
    cv2.imwrite(str(tmp_path / "b.png"), bgr)
    cv2.imwrite(str(tmp_path / "a.png"), bgr)
    (tmp_path / "notes.txt").write_text("not an image")

    images, paths = load_images_from_folder(tmp_path)
    assert [p.rsplit("/", 1)[-1] for p in paths] == ["a.png", "b.png"]
    # Blue in BGR is the last channel in RGB.
    assert images[0][0, 0].tolist() == [0, 0, 255]


def test_load_images_rejects_missing_folder(tmp_path):
    with pytest.raises(ValueError):
        load_images_from_folder(tmp_path / "missing")


def test_video_frames_reject_bad_stride(tmp_path):
    with pytest.raises(ValueError):
        next(iter_video_frames(tmp_path / "clip.mp4", every_n=0))


def test_blank_image_gives_empty_descriptors():
    keypoints, descriptors = detect_keypoints(np.zeros((64, 64), dtype=np.uint8), create_detector(use_sift=False))
    assert keypoints == []
    assert descriptors.shape[0] == 0
