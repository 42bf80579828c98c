"""
volume.py

Dense scalar buffers for one (frame, channel) slice of a hyperstack.

- Hyperstacks are numpy arrays ordered [t, c, z, y, x] (x fastest).
- A VolumeBuffer holds one [z, y, x] slice as float64 plus pixel spacing (x, y, z).
- Structural misconfiguration raises ConfigurationError (a ValueError).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np


AXES = "TCZYX"

Spacing = Tuple[float, float, float]


class ConfigurationError(ValueError):
    """Raised for invalid parameters or array layouts."""


def as_hyperstack(arr: np.ndarray, axes: str = AXES) -> np.ndarray:
    """Reorder and expand `arr` to the canonical 5-D [t, c, z, y, x] layout.

    `axes` names the axis of each dimension of `arr` using letters from
    "TCZYX" (e.g. "YX", "ZYX", "TZCYX"). Missing axes become length-1 axes.
    Returns a view where possible.
    """
    arr = np.asarray(arr)
    axes = str(axes).upper()
    if len(axes) != arr.ndim:
        raise ConfigurationError(f"axes '{axes}' does not match array of ndim={arr.ndim}")
    if len(set(axes)) != len(axes) or any(a not in AXES for a in axes):
        raise ConfigurationError(f"axes must be distinct letters from '{AXES}', got '{axes}'")
    present = [a for a in AXES if a in axes]
    out = np.transpose(arr, [axes.index(a) for a in present])
    shape = [out.shape[present.index(a)] if a in present else 1 for a in AXES]
    out = out.reshape(shape)
    if any(n <= 0 for n in out.shape):
        raise ConfigurationError(f"hyperstack has an empty axis: shape={out.shape}")
    return out


def _check_spacing(spacing) -> Spacing:
    sx, sy, sz = (float(s) for s in spacing)
    if not (sx > 0 and sy > 0 and sz > 0):
        raise ConfigurationError(f"pixel spacing must be positive, got {(sx, sy, sz)}")
    return sx, sy, sz


@dataclass
class VolumeBuffer:
    """Scalar field over a width x height x depth grid.

    Values live in `data`, shaped (depth, height, width).
    """

    width: int
    height: int
    depth: int = 1
    spacing: Spacing = (1.0, 1.0, 1.0)
    data: np.ndarray = field(default=None, repr=False)

    def __post_init__(self):
        self.width, self.height, self.depth = int(self.width), int(self.height), int(self.depth)
        if self.width <= 0 or self.height <= 0 or self.depth <= 0:
            raise ConfigurationError(
                f"extents must be positive, got (w,h,d)=({self.width},{self.height},{self.depth})")
        self.spacing = _check_spacing(self.spacing)
        shape = (self.depth, self.height, self.width)
        if self.data is None:
            self.data = np.zeros(shape, dtype=np.float64)
        else:
            self.data = np.asarray(self.data, dtype=np.float64)
            if self.data.shape != shape:
                raise ConfigurationError(f"data shape {self.data.shape} != {shape}")

    @classmethod
    def from_array(cls, arr: np.ndarray, spacing=(1.0, 1.0, 1.0)) -> "VolumeBuffer":
        """Copy a (y, x) or (z, y, x) array into a new float64 buffer."""
        arr = np.asarray(arr)
        if arr.ndim == 2:
            arr = arr[np.newaxis]
        if arr.ndim != 3:
            raise ConfigurationError(f"expected a 2-D or 3-D array, got ndim={arr.ndim}")
        nz, ny, nx = arr.shape
        return cls(nx, ny, nz, spacing, np.array(arr, dtype=np.float64, order="C", copy=True))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.data.shape

    @property
    def size(self) -> int:
        return int(self.data.size)

    def get(self, x: int, y: int, z: int = 0) -> float:
        return float(self.data[z, y, x])

    def set(self, x: int, y: int, z: int, value: float) -> None:
        self.data[z, y, x] = value

    def copy(self) -> "VolumeBuffer":
        return VolumeBuffer(self.width, self.height, self.depth, self.spacing, self.data.copy())
