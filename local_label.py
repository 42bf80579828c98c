from __future__ import annotations

from typing import List

import numpy as np
from numba import njit

from volume import ConfigurationError


PLANAR_CONNECTIVITY = (4, 8)
VOLUME_CONNECTIVITY = (6, 18, 26)


@njit(inline='always')
def uf_find(parent, x):
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@njit(inline='always')
def uf_union(parent, a, b):
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra != rb:
        parent[rb] = ra


def default_connectivity(depth: int) -> int:
    """Full connectivity: 8 on a single plane, 26 in a volume."""
    return 8 if depth == 1 else 26


def _neighbor_offsets(connectivity: int, depth: int) -> np.ndarray:
    """Return half-neighborhood offsets for the requested connectivity.

    Offsets are shaped (M,3) with entries (dz,dy,dx) relative to the current
    voxel and point only at voxels already visited. Scanning order is z, then
    y, then x (fastest).
    """
    if connectivity in PLANAR_CONNECTIVITY and depth > 1:
        raise ConfigurationError(
            f"connectivity {connectivity} is planar; use 6, 18 or 26 for a volume of depth {depth}")
    if connectivity in (4, 6):
        offs = [(0, 0, -1), (0, -1, 0)]
        if connectivity == 6:
            offs.append((-1, 0, 0))
    elif connectivity in (8, 18, 26):
        # same slice (dz=0), previous voxel and previous row
        offs = [(0, 0, -1), (0, -1, -1), (0, -1, 0), (0, -1, 1)]
        if connectivity == 18:
            # previous slice, exclude 3D corners (dy and dx both non-zero)
            offs += [(-1, 0, 0), (-1, 0, -1), (-1, 0, 1), (-1, -1, 0), (-1, 1, 0)]
        elif connectivity == 26:
            # previous slice, all 3x3 neighbors
            offs += [(-1, dy, dx) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]
    else:
        raise ConfigurationError("connectivity must be 4 or 8 (2-D), or 6, 18 or 26 (3-D)")
    return np.asarray(offs, dtype=np.int64)


@njit(nogil=True)
def _ccl(mask: np.ndarray, neigh: np.ndarray) -> np.ndarray:
    """Label a boolean (z,y,x) array using two-pass union-find CCL.

    Returns an int64 label array of the same shape; 0 is background. Labels
    are union-find representatives, not yet compacted.
    """
    nz, ny, nx = mask.shape
    labels = np.zeros((nz, ny, nx), dtype=np.int64)
    parent = np.arange(nz * ny * nx + 1, dtype=np.int64)
    next_label = 1

    # First pass: assign and union
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                if not mask[k, j, i]:
                    continue
                lbl = 0
                for t in range(neigh.shape[0]):
                    dk = k + neigh[t, 0]
                    dj = j + neigh[t, 1]
                    di = i + neigh[t, 2]
                    if dk < 0 or dj < 0 or di < 0 or dj >= ny or di >= nx:
                        continue
                    nb = labels[dk, dj, di]
                    if nb != 0:
                        if lbl == 0 or nb < lbl:
                            lbl = nb
                if lbl == 0:
                    lbl = next_label
                    next_label += 1
                labels[k, j, i] = lbl

                for t in range(neigh.shape[0]):
                    dk = k + neigh[t, 0]
                    dj = j + neigh[t, 1]
                    di = i + neigh[t, 2]
                    if dk < 0 or dj < 0 or di < 0 or dj >= ny or di >= nx:
                        continue
                    nb = labels[dk, dj, di]
                    if nb != 0 and nb != lbl:
                        uf_union(parent, lbl, nb)

    # Second pass: compress to representatives
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                l = labels[k, j, i]
                if l != 0:
                    labels[k, j, i] = uf_find(parent, l)

    return labels


def _as_volume_mask(mask: np.ndarray) -> np.ndarray:
    m = np.asarray(mask, dtype=bool)
    if m.ndim == 2:
        m = m[np.newaxis]
    if m.ndim != 3:
        raise ConfigurationError(f"mask must be 2-D or 3-D, got ndim={m.ndim}")
    return np.ascontiguousarray(m)


def label_components(mask: np.ndarray, connectivity: int | None = None) -> tuple[np.ndarray, int]:
    """Label a 2-D or 3-D boolean mask.

    Returns (labels, K): int32 labels of shape (z,y,x) compacted to 1..K in
    order of first appearance in the scan, 0 for background.
    """
    m = _as_volume_mask(mask)
    if connectivity is None:
        connectivity = default_connectivity(m.shape[0])
    neigh = _neighbor_offsets(int(connectivity), m.shape[0])
    if not m.any():
        return np.zeros(m.shape, dtype=np.int32), 0

    raw = _ccl(m, neigh).ravel()
    fg = np.flatnonzero(raw)
    reps, first = np.unique(raw[fg], return_index=True)
    # rank representatives by first voxel in scan order
    rank = np.empty(reps.size, dtype=np.int64)
    rank[np.argsort(first, kind="stable")] = np.arange(1, reps.size + 1)
    out = np.zeros(raw.size, dtype=np.int32)
    out[fg] = rank[np.searchsorted(reps, raw[fg])]
    return out.reshape(m.shape), int(reps.size)


def extract_components(mask: np.ndarray,
                       connectivity: int | None = None,
                       min_size: int = 1,
                       max_size: int | None = None) -> List[np.ndarray]:
    """Connected components of `mask` with min_size <= voxel count <= max_size.

    Each component is an ascending int64 array of flat (z,y,x) indices.
    Components are ordered by their first voxel in scan order; components
    outside the size range are dropped.
    """
    labels, K = label_components(mask, connectivity)
    if K == 0:
        return []
    flat = labels.ravel()
    fg = np.flatnonzero(flat)
    lab = flat[fg]
    order = np.argsort(lab, kind="stable")
    idx = fg[order]
    sizes = np.bincount(lab, minlength=K + 1)[1:]
    bounds = np.concatenate(([0], np.cumsum(sizes)))

    hi = np.inf if max_size is None else max_size
    out = []
    for l in range(K):
        if min_size <= sizes[l] <= hi:
            out.append(idx[bounds[l]:bounds[l + 1]])
    return out
