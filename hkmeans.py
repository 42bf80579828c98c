"""
hkmeans.py

Hierarchical K-means object detection on (t, c, z, y, x) hyperstacks.

For every (frame, channel) the slice is optionally smoothed, its histogram is
split into N intensity classes by 1-D K-means, and the classes are swept from
the loosest to the strictest cutoff. At each level the voxels at or above the
cutoff that no accepted object owns yet are labeled into connected
components; components within [min_size, max_size] (and above the optional
peak-intensity floor) are accepted and their voxels locked. Oversized blobs
are left unassigned and revisited at the next, stricter level, where they may
split into valid objects.

Primary API
-----------

    from hkmeans import segment

    regions = segment(stack, num_classes=10, min_size=100, max_size=1600)
    for r in regions:
        print(r.t, r.c, r.size, r.max_intensity)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

import metrics as M
from kmeans_hist import classify, kmeans_thresholds
from local_label import PLANAR_CONNECTIVITY, VOLUME_CONNECTIVITY, default_connectivity, extract_components
from prefilter import gaussian_prefilter
from volume import ConfigurationError, Spacing, VolumeBuffer

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True, eq=False)
class DetectedRegion:
    """An accepted object: voxel coordinates plus its (t, c) tags.

    `coords` is a read-only [n,3] int64 array of (z, y, x) in scan order.
    `level` and `threshold` record the hierarchy level (and its intensity
    cutoff) at which the object was accepted.
    """

    t: int
    c: int
    coords: np.ndarray = field(repr=False)
    max_intensity: float
    level: int = 0
    threshold: float = float("nan")

    def __post_init__(self):
        coords = np.array(self.coords, dtype=np.int64, copy=True).reshape(-1, 3)
        coords.flags.writeable = False
        object.__setattr__(self, "coords", coords)

    @property
    def size(self) -> int:
        return int(self.coords.shape[0])

    @property
    def centroid(self) -> np.ndarray:
        return M.coords_centroid(self.coords)

    @property
    def bbox(self) -> np.ndarray:
        return M.coords_bbox(self.coords)

    def voxel_set(self) -> frozenset:
        return frozenset(map(tuple, self.coords.tolist()))

    def mask(self, shape: Tuple[int, int, int]) -> np.ndarray:
        """Boolean (z,y,x) array of `shape` with this region's voxels set."""
        out = np.zeros(shape, dtype=bool)
        out[self.coords[:, 0], self.coords[:, 1], self.coords[:, 2]] = True
        return out


def _index_list(sel, n: int, name: str) -> List[int]:
    if sel is None:
        return list(range(n))
    if isinstance(sel, (int, np.integer)):
        sel = [sel]
    out = [int(i) for i in sel]
    bad = [i for i in out if not 0 <= i < n]
    if bad:
        raise ConfigurationError(f"{name} index out of range [0,{n}): {bad}")
    return out


class HierarchicalSegmenter:
    """Per-(frame, channel) hierarchical K-means segmentation."""

    def __init__(self,
                 num_classes: int = 10,
                 pre_filter_sigma: float = 0.0,
                 min_size: int = 100,
                 max_size: int = 1600,
                 min_intensity: Optional[float] = None,
                 connectivity: Optional[int] = None,
                 strict_filter: bool = False,
                 n_bins: int = 255):
        self.num_classes = int(num_classes)
        self.pre_filter_sigma = float(pre_filter_sigma)
        self.min_size = int(min_size)
        self.max_size = int(max_size)
        self.min_intensity = None if min_intensity is None else float(min_intensity)
        self.connectivity = None if connectivity is None else int(connectivity)
        self.strict_filter = bool(strict_filter)
        self.n_bins = int(n_bins)

        if self.num_classes < 2:
            raise ConfigurationError(f"HK-Means requires at least two classes, got {self.num_classes}")
        if self.pre_filter_sigma < 0:
            raise ConfigurationError(f"pre_filter_sigma must be >= 0, got {self.pre_filter_sigma}")
        if self.min_size < 1:
            raise ConfigurationError(f"min_size must be >= 1, got {self.min_size}")
        if self.max_size < self.min_size:
            raise ConfigurationError(f"max_size ({self.max_size}) < min_size ({self.min_size})")
        if self.connectivity is not None and self.connectivity not in PLANAR_CONNECTIVITY + VOLUME_CONNECTIVITY:
            raise ConfigurationError(f"unsupported connectivity {self.connectivity}")
        if self.n_bins < 1:
            raise ConfigurationError(f"n_bins must be >= 1, got {self.n_bins}")

    def segment_slice(self,
                      raw: np.ndarray,
                      t: int = 0,
                      c: int = 0,
                      spacing: Spacing = (1.0, 1.0, 1.0),
                      cancel: Optional[CancellationToken] = None) -> List[DetectedRegion]:
        """Run the class hierarchy on one (z,y,x) or (y,x) slice.

        `raw` is only read. Returns the regions accepted before any
        cancellation.
        """
        work = VolumeBuffer.from_array(raw, spacing)
        raw = np.asarray(raw).reshape(work.shape)
        connectivity = self.connectivity or default_connectivity(work.depth)
        assigned = np.zeros(work.shape, dtype=bool)
        regions: List[DetectedRegion] = []

        if self.pre_filter_sigma > 0:
            try:
                gaussian_prefilter(work, self.pre_filter_sigma)
            except ConfigurationError as exc:
                if self.strict_filter:
                    raise
                logger.warning("t=%d c=%d: pre-filter skipped: %s", t, c, exc)

        thresholds = kmeans_thresholds(work.data, self.num_classes, self.n_bins)
        classes = classify(work.data, thresholds)
        logger.debug("t=%d c=%d thresholds=%s", t, c, np.array2string(thresholds, precision=3))

        for level in range(1, self.num_classes):
            if cancel is not None and cancel.cancelled:
                logger.info("t=%d c=%d: cancelled at level %d", t, c, level)
                return regions

            working = (classes >= level) & ~assigned
            comps = extract_components(working, connectivity, self.min_size, self.max_size)
            if not comps:
                continue
            peaks = M.component_peaks(raw, comps)
            cutoff = float(thresholds[level - 1])
            for comp, peak in zip(comps, peaks):
                if self.min_intensity is not None and peak < self.min_intensity:
                    continue
                assigned.flat[comp] = True
                coords = np.stack(np.unravel_index(comp, work.shape), axis=1)
                regions.append(DetectedRegion(t, c, coords, float(peak), level, cutoff))

        logger.info("t=%d c=%d: %d objects", t, c, len(regions))
        return regions

    def segment(self,
                volume: np.ndarray,
                frames=None,
                channels=None,
                spacing: Spacing = (1.0, 1.0, 1.0),
                cancel: Optional[CancellationToken] = None,
                progress: Optional[Callable[[float], None]] = None,
                workers: int = 1) -> List[DetectedRegion]:
        """Segment every selected (frame, channel) of a (t,c,z,y,x) array."""
        volume = np.asarray(volume)
        if volume.ndim != 5:
            raise ConfigurationError(
                f"expected a (t,c,z,y,x) array, got ndim={volume.ndim}; see volume.as_hyperstack")
        nt, nc = volume.shape[:2]
        tasks = [(t, c) for t in _index_list(frames, nt, "frame")
                 for c in _index_list(channels, nc, "channel")]
        if not tasks:
            return []

        done = 0
        lock = threading.Lock()

        def run(tc: Tuple[int, int]) -> List[DetectedRegion]:
            nonlocal done
            t, c = tc
            if cancel is not None and cancel.cancelled:
                return []
            out = self.segment_slice(volume[t, c], t, c, spacing, cancel)
            if progress is not None:
                with lock:
                    done += 1
                    frac = done / len(tasks)
                progress(frac)
            return out

        results: List[DetectedRegion] = []
        if workers <= 1:
            for tc in tasks:
                if cancel is not None and cancel.cancelled:
                    break
                results.extend(run(tc))
            return results

        with ThreadPoolExecutor(max_workers=int(workers)) as pool:
            for out in pool.map(run, tasks):
                results.extend(out)
        return results


def segment(volume: np.ndarray,
            frames=None,
            channels=None,
            pre_filter_sigma: float = 0.0,
            num_classes: int = 10,
            min_size: int = 100,
            max_size: int = 1600,
            min_intensity: Optional[float] = None,
            connectivity: Optional[int] = None,
            cancel: Optional[CancellationToken] = None,
            *,
            spacing: Spacing = (1.0, 1.0, 1.0),
            strict_filter: bool = False,
            n_bins: int = 255,
            progress: Optional[Callable[[float], None]] = None,
            workers: int = 1) -> List[DetectedRegion]:
    """Hierarchical K-means segmentation of a (t,c,z,y,x) array.

    Returns the accepted regions ordered by (t, c), then by the level at which
    they were accepted, then by scan order. If `cancel` is set during the run
    the regions found so far are returned.
    """
    seg = HierarchicalSegmenter(num_classes=num_classes,
                                pre_filter_sigma=pre_filter_sigma,
                                min_size=min_size,
                                max_size=max_size,
                                min_intensity=min_intensity,
                                connectivity=connectivity,
                                strict_filter=strict_filter,
                                n_bins=n_bins)
    return seg.segment(volume, frames, channels, spacing=spacing, cancel=cancel,
                       progress=progress, workers=workers)
