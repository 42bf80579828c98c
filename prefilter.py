from __future__ import annotations

import math
from typing import Optional

import numpy as np
from scipy import ndimage

from volume import ConfigurationError, VolumeBuffer


def gaussian_kernel_1d(sigma: float) -> np.ndarray:
    """Return a normalised Gaussian kernel of radius ceil(3*sigma).

    sigma <= 0 gives the unit kernel [1.0].
    """
    sigma = float(sigma)
    if sigma <= 0.0:
        return np.ones(1, dtype=np.float64)
    radius = int(math.ceil(3.0 * sigma))
    x = np.arange(-radius, radius + 1, dtype=np.float64)
    k = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return k / k.sum()


def convolve_separable(buffer: VolumeBuffer,
                       kx: np.ndarray,
                       ky: np.ndarray,
                       kz: Optional[np.ndarray] = None) -> None:
    """Convolve `buffer` in place along x, then y, then z (if kz and depth > 1).

    Boundaries are mirrored. All kernel lengths are checked before the buffer
    is touched, so a failure leaves it unchanged.
    """
    passes = [(2, np.asarray(kx, dtype=np.float64), buffer.width, "x"),
              (1, np.asarray(ky, dtype=np.float64), buffer.height, "y")]
    if kz is not None and buffer.depth > 1:
        passes.append((0, np.asarray(kz, dtype=np.float64), buffer.depth, "z"))

    for _axis, k, n, name in passes:
        if k.ndim != 1 or k.size == 0:
            raise ConfigurationError(f"{name} kernel must be a non-empty 1-D array")
        if k.size > n:
            raise ConfigurationError(
                f"{name} kernel of length {k.size} exceeds the image extent ({n}) along {name}")

    out = buffer.data
    for axis, k, _n, _name in passes:
        if k.size == 1 and k[0] == 1.0:
            continue
        out = ndimage.convolve1d(out, k, axis=axis, mode="mirror")
    buffer.data[...] = out


def gaussian_prefilter(buffer: VolumeBuffer, sigma: float) -> None:
    """Smooth `buffer` in place with an anisotropy-corrected Gaussian.

    The z sigma is scaled by spacing_x / spacing_z. sigma == 0 is a no-op.
    """
    sigma = float(sigma)
    if sigma < 0.0:
        raise ConfigurationError(f"pre-filter sigma must be >= 0, got {sigma}")
    if sigma == 0.0:
        return
    sx, _sy, sz = buffer.spacing
    kxy = gaussian_kernel_1d(sigma)
    kz = gaussian_kernel_1d(sigma * sx / sz)
    convolve_separable(buffer, kxy, kxy, kz if buffer.depth > 1 else None)
