from __future__ import annotations

import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from hkmeans import CancellationToken, DetectedRegion, HierarchicalSegmenter, segment
from volume import ConfigurationError


def _key(r: DetectedRegion):
    return (r.t, r.c, r.voxel_set())


def _blobs(shape=(2, 2, 1, 40, 40), n=6, seed=0) -> np.ndarray:
    """Gaussian bumps over a noisy floor, independently per (t, c)."""
    rng = np.random.default_rng(seed)
    nt, nc, _nz, ny, nx = shape
    yy, xx = np.mgrid[0:ny, 0:nx]
    out = rng.normal(10.0, 2.0, size=shape)
    for t in range(nt):
        for c in range(nc):
            for _ in range(n):
                cy, cx = rng.uniform(4, ny - 4), rng.uniform(4, nx - 4)
                amp = rng.uniform(80.0, 200.0)
                out[t, c, 0] += amp * np.exp(-((yy - cy) ** 2 + (xx - cx) ** 2) / (2 * 2.0 ** 2))
    return out


def _bridged_pair() -> np.ndarray:
    """Two 3x3 blobs (peaks 200 and 250) joined by a 2-pixel bridge of 100."""
    img = np.zeros((12, 12))
    img[2:5, 2:5] = 200.0
    img[3, 5:7] = 100.0
    img[2:5, 7:10] = 250.0
    return img[np.newaxis, np.newaxis, np.newaxis]


class CountdownToken(CancellationToken):
    """Reports cancellation after `n` checks."""

    def __init__(self, n: int):
        super().__init__()
        self.n = n

    @property
    def cancelled(self) -> bool:
        self.n -= 1
        return self.n < 0


def test_uniform_volume_below_intensity_floor():
    stack = np.full((1, 1, 3, 4, 5), 100.0)
    regions = segment(stack, num_classes=2, min_size=1, max_size=1000, min_intensity=150)
    assert regions == []


def test_uniform_volume_single_region():
    stack = np.full((1, 1, 3, 4, 5), 100.0)
    regions = segment(stack, num_classes=2, min_size=1, max_size=60, min_intensity=50)
    assert len(regions) == 1
    r = regions[0]
    assert r.size == 60
    assert (r.t, r.c, r.level) == (0, 0, 1)
    assert r.max_intensity == 100.0
    assert r.mask((3, 4, 5)).all()


def test_non_finite_voxels_never_form_regions():
    img = np.full((1, 1, 1, 4, 4), np.nan)
    img[..., 1, 1] = np.inf
    assert segment(img, num_classes=3, min_size=1, max_size=100) == []

    img = np.zeros((1, 1, 1, 10, 10))
    img[..., 1:4, 1:4] = 100.0
    img[..., 8, 8] = np.inf
    regions = segment(img, num_classes=2, min_size=1, max_size=100)
    assert len(regions) == 1
    assert regions[0].size == 9 and regions[0].max_intensity == 100.0


def test_oversized_blob_splits_at_stricter_level():
    regions = segment(_bridged_pair(), num_classes=3, min_size=5, max_size=15)
    assert [r.size for r in regions] == [9, 9]
    assert [r.max_intensity for r in regions] == [200.0, 250.0]
    assert all(r.level == 2 for r in regions)
    assert regions[0].threshold == pytest.approx(162.5)
    assert regions[0].voxel_set() == {(0, y, x) for y in range(2, 5) for x in range(2, 5)}
    assert regions[1].voxel_set() == {(0, y, x) for y in range(2, 5) for x in range(7, 10)}


def test_valid_blob_locked_at_first_level():
    regions = segment(_bridged_pair(), num_classes=3, min_size=5, max_size=20)
    assert len(regions) == 1
    assert regions[0].size == 20
    assert regions[0].level == 1
    assert regions[0].max_intensity == 250.0


def test_size_bounds_and_disjointness():
    stack = _blobs()
    regions = segment(stack, num_classes=5, min_size=4, max_size=80)
    assert len(regions) > 0
    for r in regions:
        assert 4 <= r.size <= 80
    for t in range(2):
        for c in range(2):
            seen = set()
            for r in (r for r in regions if (r.t, r.c) == (t, c)):
                vox = r.voxel_set()
                assert not (seen & vox)
                seen |= vox


def test_results_ordered_by_frame_and_channel():
    regions = segment(_blobs(), num_classes=5, min_size=4, max_size=80)
    tc = [(r.t, r.c) for r in regions]
    assert tc == sorted(tc)


def test_idempotent():
    stack = _blobs(seed=5)
    a = segment(stack, pre_filter_sigma=1.0, num_classes=4, min_size=3, max_size=100)
    b = segment(stack, pre_filter_sigma=1.0, num_classes=4, min_size=3, max_size=100)
    assert sorted(map(_key, a), key=repr) == sorted(map(_key, b), key=repr)


def test_input_not_modified():
    stack = _blobs(seed=2)
    before = stack.copy()
    segment(stack, pre_filter_sigma=1.5, num_classes=4, min_size=3, max_size=100)
    np.testing.assert_array_equal(stack, before)


def test_peak_uses_raw_intensities():
    stack = _blobs(shape=(1, 1, 1, 40, 40), seed=7)
    for r in segment(stack, pre_filter_sigma=1.0, num_classes=4, min_size=3, max_size=200):
        raw = stack[0, 0][r.coords[:, 0], r.coords[:, 1], r.coords[:, 2]]
        assert r.max_intensity == raw.max()


def test_cancellation_returns_subset():
    stack = _blobs()
    full = {_key(r) for r in segment(stack, num_classes=5, min_size=4, max_size=80)}
    for n in (0, 2, 5, 9):
        partial = segment(stack, num_classes=5, min_size=4, max_size=80, cancel=CountdownToken(n))
        keys = {_key(r) for r in partial}
        assert keys <= full
    assert segment(stack, num_classes=5, min_size=4, max_size=80, cancel=CountdownToken(0)) == []


def test_cancelled_token_short_circuits():
    token = CancellationToken()
    token.cancel()
    assert token.cancelled
    assert segment(_bridged_pair(), num_classes=3, min_size=5, max_size=15, cancel=token) == []


def test_threads_match_serial():
    stack = _blobs(seed=9)
    serial = segment(stack, num_classes=5, min_size=4, max_size=80)
    threaded = segment(stack, num_classes=5, min_size=4, max_size=80, workers=3)
    assert [_key(r) for r in serial] == [_key(r) for r in threaded]


def test_progress_reports_each_slice():
    seen = []
    segment(_blobs(), num_classes=3, min_size=4, max_size=80, progress=seen.append, workers=2)
    assert sorted(seen) == [0.25, 0.5, 0.75, 1.0]


def test_frame_and_channel_selection():
    stack = _blobs()
    regions = segment(stack, frames=1, channels=[0], num_classes=5, min_size=4, max_size=80)
    assert regions
    assert {(r.t, r.c) for r in regions} == {(1, 0)}
    with pytest.raises(ConfigurationError):
        segment(stack, frames=[2])


def test_lenient_filter_falls_back_to_raw():
    img = np.zeros((1, 1, 1, 5, 5))
    img[..., 1:4, 1:4] = 100.0
    ref = segment(img, num_classes=2, min_size=1, max_size=25)
    lenient = segment(img, pre_filter_sigma=2.0, num_classes=2, min_size=1, max_size=25)
    assert [_key(r) for r in lenient] == [_key(r) for r in ref]
    assert ref[0].size == 9
    with pytest.raises(ConfigurationError):
        segment(img, pre_filter_sigma=2.0, num_classes=2, min_size=1, max_size=25, strict_filter=True)


@pytest.mark.parametrize("kwargs", [
    dict(num_classes=1),
    dict(min_size=0),
    dict(min_size=10, max_size=5),
    dict(connectivity=5),
    dict(pre_filter_sigma=-1.0),
    dict(n_bins=0),
])
def test_invalid_parameters(kwargs):
    with pytest.raises(ConfigurationError):
        HierarchicalSegmenter(**kwargs)


def test_requires_hyperstack():
    with pytest.raises(ConfigurationError):
        segment(np.zeros((10, 10)))


def test_region_is_immutable():
    r = segment(_bridged_pair(), num_classes=3, min_size=5, max_size=15)[0]
    with pytest.raises(AttributeError):
        r.t = 3
    with pytest.raises(ValueError):
        r.coords[0, 0] = 1
