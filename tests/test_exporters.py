from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import metrics as M
from exporters import labeled_volume, region_table, regions_to_rois, to_detection_set
from hkmeans import DetectedRegion, segment
from io_bridge import IOConfig, load_regions, load_volume, save_regions
from volume import ConfigurationError


def _square(t, c, y0, x0, n, peak, z=0):
    coords = [(z, y, x) for y in range(y0, y0 + n) for x in range(x0, x0 + n)]
    return DetectedRegion(t, c, np.array(coords), peak, level=1, threshold=50.0)


def _regions():
    return [
        _square(0, 0, 0, 0, 2, 90.0),
        _square(0, 0, 4, 4, 3, 40.0),
        _square(1, 0, 1, 1, 2, 70.0),
    ]


def test_labeled_volume_orders():
    shape = (2, 1, 1, 8, 8)
    lab = labeled_volume(_regions(), shape)
    assert lab.dtype == np.uint32
    assert lab[0, 0, 0, 0, 0] == 1 and lab[0, 0, 0, 5, 5] == 2
    # labels restart in every (t, c)
    assert lab[1, 0, 0, 1, 1] == 1

    by_size = labeled_volume(_regions(), shape, order="size", descending=True)
    assert by_size[0, 0, 0, 5, 5] == 1 and by_size[0, 0, 0, 0, 0] == 2

    by_peak = labeled_volume(_regions(), shape, order="intensity")
    assert by_peak[0, 0, 0, 5, 5] == 1

    with pytest.raises(ConfigurationError):
        labeled_volume(_regions(), shape, order="color")


def test_labeled_volume_depth_order():
    deep = _square(0, 0, 0, 0, 2, 90.0, z=3)
    shallow = _square(0, 0, 4, 4, 2, 40.0, z=1)
    shape = (1, 1, 4, 8, 8)
    lab = labeled_volume([deep, shallow], shape, order="depth")
    assert lab[0, 0, 1, 4, 4] == 1 and lab[0, 0, 3, 0, 0] == 2
    lab = labeled_volume([deep, shallow], shape, order="depth", descending=True)
    assert lab[0, 0, 3, 0, 0] == 1 and lab[0, 0, 1, 4, 4] == 2


def test_rois_are_planar_point_lists():
    rois = regions_to_rois(_regions())
    assert [r["name"] for r in rois] == ["HK-Means detection #1", "HK-Means detection #2",
                                         "HK-Means detection #3"]
    assert rois[2]["t"] == 1
    assert rois[1]["points"].shape == (9, 2)
    np.testing.assert_array_equal(rois[0]["points"], [[0, 0], [1, 0], [0, 1], [1, 1]])


def test_rois_keep_depth_in_volumes():
    r = _square(0, 0, 0, 0, 2, 10.0, z=3)
    assert regions_to_rois([r])[0]["points"].shape == (4, 3)


def test_detection_set_groups_by_frame():
    spots = to_detection_set(_regions())
    assert list(spots) == [0, 1]
    assert len(spots[0]) == 2
    s = spots[0][1]
    assert (s.x, s.y, s.z) == (5.0, 5.0, 0.0)
    assert s.size == 9 and s.max_intensity == 40.0

    s = to_detection_set(_regions(), spacing=(0.5, 0.5, 2.0))[0][1]
    assert (s.x, s.y, s.z) == (2.5, 2.5, 0.0)


def test_region_table_columns():
    tab = region_table(_regions())
    np.testing.assert_array_equal(tab["size"], [4, 9, 4])
    np.testing.assert_array_equal(tab["bbox"][1], [4, 7, 4, 7, 0, 1])
    assert region_table([])["centroid"].shape == (0, 3)


def test_region_table_measured_per_slice():
    regions = _regions()
    tab = region_table(regions, spacing=(0.5, 0.5, 2.0))
    np.testing.assert_allclose(tab["centroid"][1], [2.5, 2.5, 0.0])
    np.testing.assert_array_equal(tab["bbox"], [r.bbox for r in regions])

    lab = labeled_volume(regions[:2], (1, 1, 1, 8, 8))[0, 0].astype(np.int64)
    np.testing.assert_array_equal(M.num_cells(lab), tab["size"][:2])
    np.testing.assert_allclose(M.centroids(lab), [r.centroid for r in regions[:2]])


def test_save_and_load_regions(tmp_path):
    regions = _regions()
    path = str(tmp_path / "out" / "regions.npz")
    save_regions(path, regions, (2, 1, 1, 8, 8))
    back = load_regions(path)
    assert len(back) == 3
    for a, b in zip(regions, back):
        assert (a.t, a.c, a.level, a.max_intensity) == (b.t, b.c, b.level, b.max_intensity)
        assert a.voxel_set() == b.voxel_set()

    save_regions(str(tmp_path / "empty.npz"), [], (1, 1, 1, 4, 4))
    assert load_regions(str(tmp_path / "empty.npz")) == []


def test_load_volume(tmp_path):
    img = np.random.default_rng(0).integers(0, 255, size=(3, 16, 16)).astype(np.uint8)
    np.save(tmp_path / "img.npy", img)
    stack = load_volume(IOConfig(str(tmp_path / "img.npy"), axes="TYX"))
    assert stack.shape == (3, 1, 1, 16, 16)

    np.savez(tmp_path / "two.npz", a=img, b=img)
    with pytest.raises(KeyError):
        load_volume(IOConfig(str(tmp_path / "two.npz"), axes="ZYX"))
    stack = load_volume(IOConfig(str(tmp_path / "two.npz"), array_key="b", axes="ZYX"))
    assert stack.shape == (1, 1, 3, 16, 16)

    with pytest.raises(FileNotFoundError):
        load_volume(IOConfig(str(tmp_path / "missing.npy")))


def test_segment_then_label_roundtrip():
    img = np.zeros((1, 1, 1, 10, 10))
    img[..., 1:4, 1:4] = 100.0
    img[..., 6:9, 5:9] = 150.0
    regions = segment(img, num_classes=2, min_size=2, max_size=50)
    lab = labeled_volume(regions, img.shape, order="size", descending=True)
    assert lab.max() == 2
    assert (lab[0, 0, 0, 6:9, 5:9] == 1).all()
    assert (lab[0, 0, 0, 1:4, 1:4] == 2).all()
