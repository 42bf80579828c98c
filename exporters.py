"""
exporters.py

Pure conversions from the detected-region list to the representations used
downstream: a labeled (t,c,z,y,x) array, per-region point lists, per-frame
spot sets for tracking, and a columnar table for serialization.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

import metrics as M
from hkmeans import DetectedRegion
from volume import ConfigurationError, Spacing


LABEL_ORDERS = ("arbitrary", "size", "depth", "intensity")


def _sort_key(order: str):
    if order == "size":
        return lambda r: r.size
    if order == "depth":
        return lambda r: float(r.centroid[2])
    if order == "intensity":
        return lambda r: r.max_intensity
    raise ConfigurationError(f"label order must be one of {LABEL_ORDERS}, got '{order}'")


def _paint(dst: np.ndarray, rs: Sequence[DetectedRegion]) -> None:
    for lbl, r in enumerate(rs, start=1):
        dst[r.coords[:, 0], r.coords[:, 1], r.coords[:, 2]] = lbl


def labeled_volume(regions: Sequence[DetectedRegion],
                   shape: Tuple[int, int, int, int, int],
                   order: str = "arbitrary",
                   descending: bool = False) -> np.ndarray:
    """Paint regions into a uint32 (t,c,z,y,x) array.

    Labels restart at 1 in every (t,c). With order "arbitrary" they follow
    the result order; otherwise regions are sorted (stably) by size, centroid
    depth or peak intensity.
    """
    if len(shape) != 5:
        raise ConfigurationError(f"shape must be (t,c,z,y,x), got {shape}")
    out = np.zeros(shape, dtype=np.uint32)
    groups: Dict[Tuple[int, int], List[DetectedRegion]] = defaultdict(list)
    for r in regions:
        groups[(r.t, r.c)].append(r)

    for (t, c), rs in groups.items():
        if order != "arbitrary":
            rs = sorted(rs, key=_sort_key(order), reverse=descending)
        elif descending:
            rs = rs[::-1]
        _paint(out[t, c], rs)
    return out


def region_to_roi(region: DetectedRegion, index: int, planar: bool | None = None) -> dict:
    """Point-list description of one region.

    Points are (x, y) for planar regions, (x, y, z) otherwise. `planar=None`
    drops z only when every voxel lies in plane 0.
    """
    zyx = region.coords
    if planar is None:
        planar = not zyx[:, 0].any()
    pts = zyx[:, ::-1]
    if planar:
        pts = pts[:, :2]
    return {
        "name": f"HK-Means detection #{index}",
        "t": region.t,
        "c": region.c,
        "points": np.ascontiguousarray(pts),
    }


def regions_to_rois(regions: Sequence[DetectedRegion]) -> List[dict]:
    planar = all(not r.coords[:, 0].any() for r in regions)
    return [region_to_roi(r, i, planar) for i, r in enumerate(regions, start=1)]


@dataclass(frozen=True)
class Spot:
    x: float
    y: float
    z: float
    c: int
    size: int
    max_intensity: float


def to_detection_set(regions: Sequence[DetectedRegion],
                     spacing: Spacing = (1.0, 1.0, 1.0)) -> Dict[int, List[Spot]]:
    """Group region centroids by frame for downstream tracking.

    Spot positions are in `spacing` units, like the table centroids.
    """
    out: Dict[int, List[Spot]] = {}
    for r in regions:
        x, y, z = M.coords_centroid(r.coords, spacing)
        out.setdefault(r.t, []).append(Spot(float(x), float(y), float(z), r.c, r.size, r.max_intensity))
    return dict(sorted(out.items()))


def _label_slice(rs: Sequence[DetectedRegion]) -> np.ndarray:
    """Labels 1..len(rs) painted into the smallest (z,y,x) box holding them."""
    hi = np.max([r.coords.max(axis=0) for r in rs], axis=0) + 1
    lab = np.zeros(tuple(int(n) for n in hi), dtype=np.int64)
    _paint(lab, rs)
    return lab


def region_table(regions: Sequence[DetectedRegion],
                 spacing: Spacing = (1.0, 1.0, 1.0)) -> Dict[str, np.ndarray]:
    """Columnar per-region attributes, in result order.

    Size, centroid (x, y, z in `spacing` units) and bbox are measured once
    per (t,c) on a label array of that slice's regions.
    """
    K = len(regions)
    size = np.zeros(K, dtype=np.int64)
    centroid = np.zeros((K, 3), dtype=np.float64)
    bbox = np.zeros((K, 6), dtype=np.int32)

    groups: Dict[Tuple[int, int], List[int]] = defaultdict(list)
    for i, r in enumerate(regions):
        groups[(r.t, r.c)].append(i)
    for idx in groups.values():
        lab = _label_slice([regions[i] for i in idx])
        n = len(idx)
        size[idx] = M.num_cells(lab, n)
        centroid[idx] = M.centroids(lab, spacing, n)
        bbox[idx] = M.compute_bboxes(lab, n)

    return {
        "t": np.array([r.t for r in regions], dtype=np.int32),
        "c": np.array([r.c for r in regions], dtype=np.int32),
        "size": size,
        "max_intensity": np.array([r.max_intensity for r in regions], dtype=np.float64),
        "level": np.array([r.level for r in regions], dtype=np.int32),
        "threshold": np.array([r.threshold for r in regions], dtype=np.float64),
        "centroid": centroid,
        "bbox": bbox,
    }
