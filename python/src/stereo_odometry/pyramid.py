"""
Image and depth pyramids: level 0 is full resolution, each next level a 2x area
downsample. Built once per frame, read-only afterwards.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from stereo_odometry.geometry import F32, F64


def _check_levels(levels: int, shape: tuple[int, ...]) -> None:
    if levels < 1:
        raise ValueError(f"levels must be >= 1, got {levels}")
    if len(shape) != 2:
        raise ValueError(f"expected a 2D image, got shape {shape}")
    h, w = shape
    min_side = 1 << (levels - 1)
    if h < min_side or w < min_side:
        raise ValueError(f"{h}x{w} image is too small for {levels} pyramid levels")


def _crop_even(a: NDArray) -> NDArray:
    h, w = a.shape
    return a[: h - (h % 2), : w - (w % 2)]


def _block_sum(a: NDArray) -> NDArray:
    a = _crop_even(a)
    return a[0::2, 0::2] + a[1::2, 0::2] + a[0::2, 1::2] + a[1::2, 1::2]


def _frozen(a: NDArray) -> NDArray:
    a.setflags(write=False)
    return a


class ImagePyramid:
    """
    Intensity pyramid with per-level central-difference gradients.
    """

    __slots__ = ("_images", "_grads")

    def __init__(self, levels: int, base) -> None:
        img = np.asarray(base)
        _check_levels(levels, img.shape)
        if not np.all(np.isfinite(img)):
            raise ValueError("pyramid base image contains non-finite values")

        images = [np.array(img, dtype=np.float32)]
        for _ in range(1, levels):
            prev = images[-1].astype(np.float64)
            images.append((0.25 * _block_sum(prev)).astype(np.float32))

        grads = []
        for im in images:
            if min(im.shape) >= 2:
                gy, gx = np.gradient(im.astype(np.float64))
            else:
                gy = gx = np.zeros(im.shape, dtype=np.float64)
            grads.append((_frozen(gx.astype(np.float32)), _frozen(gy.astype(np.float32))))

        self._images = tuple(_frozen(im) for im in images)
        self._grads = tuple(grads)

    @property
    def levels(self) -> int:
        return len(self._images)

    def __len__(self) -> int:
        return len(self._images)

    def __getitem__(self, level: int) -> NDArray[F32]:
        return self._images[level]

    def shape(self, level: int) -> tuple[int, int]:
        return self._images[level].shape

    def gradient(self, level: int) -> tuple[NDArray[F32], NDArray[F32]]:
        """(gx, gy) at `level`."""
        return self._grads[level]

    def gradient_magnitude(self, level: int) -> NDArray[F64]:
        gx, gy = self._grads[level]
        return np.hypot(gx.astype(np.float64), gy.astype(np.float64))


class DepthPyramid:
    """
    Depth/validity pyramid. A coarse pixel is valid iff at least one of its 2x2
    children is valid, and its depth is the mean over the valid children only.
    Invalid pixels carry depth 0.
    """

    __slots__ = ("_depths", "_valid")

    def __init__(self, levels: int, depth, validity) -> None:
        d = np.asarray(depth, dtype=np.float64)
        v = np.asarray(validity, dtype=bool)
        _check_levels(levels, d.shape)
        if v.shape != d.shape:
            raise ValueError(f"depth {d.shape} and validity {v.shape} shapes differ")

        with np.errstate(invalid="ignore"):
            v = v & np.isfinite(d) & (d > 0.0)
        d = np.where(v, d, 0.0)

        depths, valid = [d], [v]
        for _ in range(1, levels):
            wsum = _block_sum(valid[-1].astype(np.float64))
            dsum = _block_sum(np.where(valid[-1], depths[-1], 0.0))
            vc = wsum > 0.0
            depths.append(np.where(vc, dsum / np.where(vc, wsum, 1.0), 0.0))
            valid.append(vc)

        self._depths = tuple(_frozen(x.astype(np.float32)) for x in depths)
        self._valid = tuple(_frozen(x) for x in valid)

    @property
    def levels(self) -> int:
        return len(self._depths)

    def __len__(self) -> int:
        return len(self._depths)

    def depth(self, level: int) -> NDArray[F32]:
        return self._depths[level]

    def validity(self, level: int) -> NDArray[np.bool_]:
        return self._valid[level]

    def inverse_depth(self, level: int) -> NDArray[F64]:
        d = self._depths[level].astype(np.float64)
        return np.where(self._valid[level], 1.0 / np.where(self._valid[level], d, 1.0), 0.0)

    def shape(self, level: int) -> tuple[int, int]:
        return self._depths[level].shape

    def valid_count(self, level: int = 0) -> int:
        return int(np.count_nonzero(self._valid[level]))
