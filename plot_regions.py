from __future__ import annotations

import argparse
import logging
import os

import numpy as np
import matplotlib
matplotlib.use("agg")
import matplotlib.pyplot as plt
from matplotlib.colors import LogNorm

from log_config import configure_logging

logger = logging.getLogger(__name__)


def _load(path: str) -> dict[str, np.ndarray]:
    with np.load(path) as d:
        return {k: d[k] for k in d.files}


def _size_edges(size: np.ndarray, n_bins: int = 40) -> np.ndarray:
    lo = max(1, int(size.min()))
    hi = max(lo + 1, int(size.max()) + 1)
    return np.unique(np.around(np.geomspace(lo, hi, n_bins)).astype(int))


def _hist2d(ax, x, y, xedges, bins=60, xlabel=None, ylabel=None):
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    m = np.isfinite(x) & np.isfinite(y)
    x = x[m]
    y = y[m]
    if x.size == 0:
        ax.text(0.5, 0.5, "No data", ha='center', va='center')
        return
    lo, hi = np.min(y), np.max(y)
    if hi <= lo:
        hi = lo + 1.0
    y_edges = np.linspace(lo, hi, bins)
    H, xe, ye = np.histogram2d(x, y, bins=[xedges, y_edges])
    positive = H[H > 0]
    vmax = np.nanmax(positive) if positive.size else 1.0
    im = ax.pcolormesh(xe, ye, H.T, shading='auto', cmap='viridis',
                       norm=LogNorm(vmin=1.0, vmax=max(vmax, 1.0)))
    plt.colorbar(im, ax=ax, label='counts')
    ax.set_xscale('log')
    ax.set_xlabel(xlabel or 'x')
    ax.set_ylabel(ylabel or 'y')


def make_png(npz_path: str, outdir: str, prefix: str | None = None) -> str | None:
    """Write a three-panel summary of a regions.npz; returns the PNG path.

    Panels: size histogram, size vs peak intensity, regions per frame.
    Returns None when the file holds no region.
    """
    d = _load(npz_path)
    size = d['size']
    if size.size == 0:
        logger.warning("%s holds no regions; nothing to plot", npz_path)
        return None
    peak = d['max_intensity']
    t = d['t']
    nt = int(d['shape'][0]) if 'shape' in d else int(t.max()) + 1

    os.makedirs(outdir, exist_ok=True)
    base = prefix or os.path.splitext(os.path.basename(npz_path))[0]
    edges = _size_edges(size)

    fig, axes = plt.subplots(1, 3, figsize=(16, 4.5), dpi=120)

    ax = axes[0]
    ax.hist(size, bins=edges, histtype='stepfilled', alpha=0.85)
    ax.set_xscale('log')
    ax.set_xlabel('object size (voxels)')
    ax.set_ylabel('count')
    ax.set_title(f'Size distribution (K={size.shape[0]})')

    _hist2d(axes[1], size, peak, xedges=edges,
            xlabel='object size (voxels)', ylabel='peak intensity')
    axes[1].set_title('Size vs peak intensity')

    ax = axes[2]
    ax.bar(np.arange(nt), np.bincount(t, minlength=nt), width=0.9)
    ax.set_xlabel('frame')
    ax.set_ylabel('objects')
    ax.set_title('Objects per frame')

    path = os.path.join(outdir, f"{base}_summary.png")
    fig.savefig(path, bbox_inches='tight')
    plt.close(fig)
    logger.info("wrote %s", path)
    return path


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument('--input', required=True, help='path to regions.npz')
    ap.add_argument('--outdir', default=None, help='output directory for the PNG (default next to input)')
    args = ap.parse_args()

    configure_logging("INFO")
    outdir = args.outdir or os.path.dirname(args.input) or '.'
    make_png(args.input, outdir)


if __name__ == '__main__':
    main()
