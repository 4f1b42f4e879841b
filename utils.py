from __future__ import annotations

import math
import re
from typing import Callable, Iterator, Optional, Tuple

import cv2
import numpy as np
from scipy import ndimage

from errors import ConfigurationError

NameFormat = Callable[[object, object, object], str]

_PLACEHOLDERS = ("e", "r", "c")


def default_name_fmt(e, r, c) -> str:
    return f"e{e}_r{r}c{c}"


def name_pattern(name_fmt: NameFormat, ext: str) -> re.Pattern:
    """Invert a naming scheme into a regex with named ``e``, ``r``, ``c`` groups.

    The scheme is called once with ``"<e>"``, ``"<r>"`` and ``"<c>"``; the
    literal text around those markers must be the same for every tile.
    """
    template = str(name_fmt("<e>", "<r>", "<c>"))
    expression = re.escape(template) + re.escape(ext)
    for key in _PLACEHOLDERS:
        marker = re.escape(f"<{key}>")
        if expression.count(marker) != 1:
            raise ConfigurationError(f"Naming scheme {template!r} must contain <{key}> exactly once")
        expression = expression.replace(marker, rf"(?P<{key}>\d+)")
    return re.compile(expression)


def parse_tile_coords(address: str, pattern: re.Pattern) -> Optional[Tuple[int, int, int]]:
    match = pattern.fullmatch(address)
    if not match:
        return None
    return int(match.group("e")), int(match.group("r")), int(match.group("c"))


def to_gray_float(img: np.ndarray) -> np.ndarray:
    if img.ndim == 3:
        img = np.ascontiguousarray(img)
        if img.shape[2] == 1:
            img = img[:, :, 0]
        else:
            if img.shape[2] == 4:
                img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return np.ascontiguousarray(img, dtype=np.float32)


def ncc_surface(image: np.ndarray, template: np.ndarray) -> np.ndarray:
    """Full normalized cross-correlation of ``template`` over ``image``.

    The image is zero padded so that every overlap of the template with the
    image is scored; entry ``(i, j)`` puts the template's top-left corner at
    ``(i - th + 1, j - tw + 1)`` in image coordinates.
    """
    th, tw = template.shape[:2]
    padded = cv2.copyMakeBorder(image, th - 1, th - 1, tw - 1, tw - 1, cv2.BORDER_CONSTANT, value=0)
    scores = cv2.matchTemplate(padded, template, cv2.TM_CCOEFF_NORMED)
    return np.nan_to_num(scores, nan=-1.0, posinf=-1.0, neginf=-1.0)


def peak_location(scores: np.ndarray) -> Tuple[int, int]:
    # np.argmax returns the first maximum in row-major order
    flat = int(np.argmax(scores))
    y, x = np.unravel_index(flat, scores.shape)
    return int(y), int(x)


def rescale_intensity(img: np.ndarray) -> np.ndarray:
    values = to_gray_float(img).astype(np.float64)
    lo = float(np.nanmin(values))
    hi = float(np.nanmax(values))
    if not hi > lo:
        return np.zeros_like(values)
    return (values - lo) / (hi - lo)


def world_to_subscript(value: float, step: float = 1.0) -> int:
    return int(math.floor(value / step + 0.5))


def gaussian_kernel(window: int) -> np.ndarray:
    if window < 1 or window % 2 == 0:
        raise ConfigurationError(f"Smoothing window must be a positive odd number, got {window}")
    return cv2.getGaussianKernel(window, window / 5.0, cv2.CV_64F).ravel()


def smooth_nan_gaussian(values: np.ndarray, window: int, axis: int) -> np.ndarray:
    """Gaussian moving average along one axis that ignores NaN samples.

    Weights are renormalised over the valid neighbours, so edges and holes do
    not pull values towards zero. NaN samples stay NaN.
    """
    kernel = gaussian_kernel(window)
    valid = np.isfinite(values)
    filled = np.where(valid, values, 0.0).astype(np.float64)
    total = ndimage.convolve1d(filled, kernel, axis=axis, mode="constant", cval=0.0)
    weight = ndimage.convolve1d(valid.astype(np.float64), kernel, axis=axis, mode="constant", cval=0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        smoothed = total / weight
    smoothed[~valid] = np.nan
    return smoothed


def tile_order(n_rows: int, n_cols: int) -> Iterator[Tuple[int, int]]:
    """Reverse row-major order: last row and column first, (0, 0) last."""
    for i_row in range(n_rows - 1, -1, -1):
        for i_col in range(n_cols - 1, -1, -1):
            yield i_row, i_col


def clip_rect(
    y0: int, x0: int, h: int, w: int, shape: Tuple[int, int]
) -> Optional[Tuple[Tuple[slice, slice], Tuple[slice, slice]]]:
    """Canvas and tile slices for an ``h`` x ``w`` tile placed at (y0, x0)."""
    height, width = shape
    cy0, cx0 = max(y0, 0), max(x0, 0)
    cy1, cx1 = min(y0 + h, height), min(x0 + w, width)
    if cy1 <= cy0 or cx1 <= cx0:
        return None
    return (slice(cy0, cy1), slice(cx0, cx1)), (slice(cy0 - y0, cy1 - y0), slice(cx0 - x0, cx1 - x0))
