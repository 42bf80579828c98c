from __future__ import annotations

from typing import Sequence

import numpy as np


def _ensure_K(labels: np.ndarray, K: int | None = None) -> int:
    if K is None:
        K = int(labels.max()) if labels.size else 0
    return K


def num_cells(labels: np.ndarray, K: int | None = None) -> np.ndarray:
    K = _ensure_K(labels, K)
    lab = labels.ravel()
    cnt = np.bincount(lab, minlength=K + 1).astype(np.int64)
    return cnt[1:]


def centroids(labels: np.ndarray,
              spacing: tuple[float, float, float] = (1.0, 1.0, 1.0),
              K: int | None = None) -> np.ndarray:
    """Volume-weighted centroid per label of a (z,y,x) label array.

    Returns float64 [K,3] as (x, y, z) in spacing units, measured at voxel
    corners (voxel (0,0,0) has centroid (0,0,0)).
    """
    K = _ensure_K(labels, K)
    if K == 0:
        return np.zeros((0, 3), dtype=np.float64)
    lab = labels.ravel()
    zz, yy, xx = np.indices(labels.shape).reshape(3, -1).astype(np.float64)
    W = np.bincount(lab, minlength=K + 1)[1:].astype(np.float64)
    small = 1e-300
    cx = np.bincount(lab, weights=xx, minlength=K + 1)[1:] / (W + small)
    cy = np.bincount(lab, weights=yy, minlength=K + 1)[1:] / (W + small)
    cz = np.bincount(lab, weights=zz, minlength=K + 1)[1:] / (W + small)
    sx, sy, sz = spacing
    return np.stack([cx * sx, cy * sy, cz * sz], axis=1)


def compute_bboxes(labels: np.ndarray, K: int | None = None) -> np.ndarray:
    """Compute per-label bounding boxes [min,max) of a (z,y,x) label array.

    Returns int32 array of shape [K,6]: (x_min,x_max,y_min,y_max,z_min,z_max)
    """
    K = _ensure_K(labels, K)
    if K == 0:
        return np.zeros((0, 6), dtype=np.int32)
    nz, ny, nx = labels.shape
    lab = labels.ravel()
    zz, yy, xx = np.indices(labels.shape).reshape(3, -1)
    out = np.zeros((K + 1, 6), dtype=np.int64)
    for col, (coord, n) in enumerate(((xx, nx), (yy, ny), (zz, nz))):
        lo = np.full(K + 1, n, dtype=np.int64)
        hi = np.zeros(K + 1, dtype=np.int64)
        np.minimum.at(lo, lab, coord)
        np.maximum.at(hi, lab, coord + 1)
        out[:, 2 * col] = lo
        out[:, 2 * col + 1] = hi
    # Drop background
    return out[1:].astype(np.int32)


def component_peaks(values: np.ndarray, components: Sequence[np.ndarray]) -> np.ndarray:
    """Maximum of `values` over each component (flat index arrays)."""
    flat = values.ravel()
    if len(components) == 0:
        return np.zeros(0, dtype=np.float64)
    return np.array([flat[c].max() for c in components], dtype=np.float64)


def coords_centroid(coords: np.ndarray,
                    spacing: tuple[float, float, float] = (1.0, 1.0, 1.0)) -> np.ndarray:
    """Centroid (x, y, z) of an [n,3] array of (z,y,x) voxel coordinates."""
    z, y, x = coords.astype(np.float64).mean(axis=0)
    sx, sy, sz = spacing
    return np.array([x * sx, y * sy, z * sz], dtype=np.float64)


def coords_bbox(coords: np.ndarray) -> np.ndarray:
    """Bounding box [min,max) of (z,y,x) coordinates as (x0,x1,y0,y1,z0,z1)."""
    lo = coords.min(axis=0)
    hi = coords.max(axis=0) + 1
    return np.array([lo[2], hi[2], lo[1], hi[1], lo[0], hi[0]], dtype=np.int32)
