"""
io_bridge.py

Thin I/O wrapper for reading intensity arrays and writing detection results.

- Input arrays are plain numpy files (.npy, or .npz holding one or more arrays).
- `axes` names the dimensions of the stored array with letters from "TCZYX";
  the returned hyperstack is always shaped [t, c, z, y, x].
- Results are written as one .npz: the voxel coordinates of every region
  concatenated into `coords` ([n,3] of z,y,x), with `offsets` delimiting each
  region, plus per-region columns (t, c, size, max_intensity, ...).

Primary API
-----------

    from io_bridge import IOConfig, load_volume, save_regions, load_regions

    cfg = IOConfig(input_path="./embryo.npy", axes="TZYX", spacing=(0.2, 0.2, 1.0))
    stack = load_volume(cfg)            # (t, c, z, y, x)
    ...
    save_regions("./out/regions.npz", regions, stack.shape)
    regions = load_regions("./out/regions.npz")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from exporters import region_table
from hkmeans import DetectedRegion
from volume import AXES, Spacing, as_hyperstack


@dataclass
class IOConfig:
    """Configuration for load_volume.

    - input_path: .npy or .npz file
    - array_key: array name inside an .npz; if None the file must hold exactly one array
    - axes: axis letters of the stored array (subset of "TCZYX", any order)
    - spacing: pixel size (x, y, z), used for anisotropy correction of the pre-filter
    """

    input_path: str
    array_key: Optional[str] = None
    axes: str = AXES
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)


def _load_npz(path: str) -> Dict[str, np.ndarray]:
    with np.load(path) as d:
        return {k: d[k] for k in d.files}


def load_volume(cfg: IOConfig) -> np.ndarray:
    """Read the configured array and return it as a (t,c,z,y,x) hyperstack."""
    path = str(cfg.input_path)
    if not os.path.exists(path):
        raise FileNotFoundError(path)
    if path.endswith(".npz"):
        d = _load_npz(path)
        if cfg.array_key is not None:
            if cfg.array_key not in d:
                raise KeyError(f"array '{cfg.array_key}' not in {path}; available: {sorted(d)}")
            arr = d[cfg.array_key]
        elif len(d) == 1:
            arr = next(iter(d.values()))
        else:
            raise KeyError(f"{path} holds {len(d)} arrays; set array_key to one of {sorted(d)}")
    else:
        arr = np.load(path)
    return as_hyperstack(arr, cfg.axes)


def save_regions(path: str,
                 regions: Sequence[DetectedRegion],
                 shape: Tuple[int, ...],
                 spacing: Spacing = (1.0, 1.0, 1.0),
                 **extra: np.ndarray) -> None:
    out = region_table(regions, spacing)
    offsets = np.zeros(len(regions) + 1, dtype=np.int64)
    offsets[1:] = np.cumsum([r.size for r in regions])
    if regions:
        coords = np.concatenate([r.coords for r in regions]).astype(np.int32)
    else:
        coords = np.zeros((0, 3), dtype=np.int32)
    out.update({
        "coords": coords,
        "offsets": offsets,
        "shape": np.asarray(shape, dtype=np.int64),
        "voxel_spacing": np.asarray(spacing, dtype=np.float64),
    })
    out.update(extra)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    np.savez(path, **out)


def load_regions(path: str) -> List[DetectedRegion]:
    d = _load_npz(path)
    off = d["offsets"]
    coords = d["coords"]
    return [
        DetectedRegion(int(d["t"][i]), int(d["c"][i]), coords[off[i]:off[i + 1]],
                       float(d["max_intensity"][i]), int(d["level"][i]), float(d["threshold"][i]))
        for i in range(off.size - 1)
    ]
