from __future__ import annotations

import numpy as np

from volume import ConfigurationError


def intensity_histogram(values: np.ndarray, n_bins: int = 255) -> tuple[np.ndarray, np.ndarray]:
    """Histogram of finite `values` as (levels, counts), empty bins dropped.

    Exact (one level per distinct value) when there are at most `n_bins`
    distinct values; otherwise `n_bins` equal-width bins over [min, max]
    with bin centres as levels.
    """
    if n_bins < 1:
        raise ConfigurationError(f"n_bins must be >= 1, got {n_bins}")
    v = np.asarray(values, dtype=np.float64).ravel()
    v = v[np.isfinite(v)]
    if v.size == 0:
        return np.zeros(0, dtype=np.float64), np.zeros(0, dtype=np.int64)

    levels, counts = np.unique(v, return_counts=True)
    if levels.size <= n_bins:
        return levels, counts.astype(np.int64)

    lo, hi = float(levels[0]), float(levels[-1])
    counts, edges = np.histogram(v, bins=n_bins, range=(lo, hi))
    centres = 0.5 * (edges[:-1] + edges[1:])
    keep = counts > 0
    return centres[keep], counts[keep].astype(np.int64)


def kmeans_centroids(levels: np.ndarray,
                     counts: np.ndarray,
                     n_classes: int,
                     max_iter: int = 100) -> np.ndarray:
    """Weighted 1-D K-means over histogram levels; returns sorted centroids.

    Centroids start evenly spaced over [levels.min(), levels.max()]. Ties in
    the assignment go to the lower centroid index. Empty clusters keep their
    previous centroid.
    """
    levels = np.asarray(levels, dtype=np.float64)
    w = np.asarray(counts, dtype=np.float64)
    lo, hi = float(levels.min()), float(levels.max())
    centroids = np.linspace(lo, hi, n_classes)

    assign = None
    for _ in range(max_iter):
        # argmin returns the first minimum: lower index wins ties
        new_assign = np.argmin(np.abs(levels[:, None] - centroids[None, :]), axis=1)
        if assign is not None and np.array_equal(new_assign, assign):
            break
        assign = new_assign
        W = np.bincount(assign, weights=w, minlength=n_classes)
        S = np.bincount(assign, weights=w * levels, minlength=n_classes)
        filled = W > 0
        centroids = centroids.copy()
        centroids[filled] = S[filled] / W[filled]
    return np.sort(centroids)


def kmeans_thresholds(values: np.ndarray,
                      n_classes: int,
                      n_bins: int = 255,
                      max_iter: int = 100) -> np.ndarray:
    """Return the n_classes-1 ascending class thresholds of `values`.

    Thresholds are midpoints between consecutive K-means centroids of the
    intensity histogram. With fewer distinct intensities than classes some
    thresholds coincide. Empty input gives +inf thresholds (everything is
    class 0).
    """
    n_classes = int(n_classes)
    if n_classes < 2:
        raise ConfigurationError(f"K-means requires at least two classes, got {n_classes}")
    levels, counts = intensity_histogram(values, n_bins)
    if levels.size == 0:
        return np.full(n_classes - 1, np.inf, dtype=np.float64)
    c = kmeans_centroids(levels, counts, n_classes, max_iter)
    return 0.5 * (c[:-1] + c[1:])


def classify(values: np.ndarray, thresholds: np.ndarray) -> np.ndarray:
    """Class id per voxel: the number of thresholds <= value.

    Non-finite values (NaN, +-inf) are class 0, like the histogram that
    produced the thresholds, which ignores them.
    """
    t = np.sort(np.asarray(thresholds, dtype=np.float64))
    v = np.asarray(values, dtype=np.float64)
    cls = np.searchsorted(t, v, side="right").astype(np.int32)
    cls[~np.isfinite(v)] = 0
    return cls
