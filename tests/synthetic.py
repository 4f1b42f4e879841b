"""Synthetic speckle tiles and DIC field bundles for the test suite."""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np

from models import FieldBundle, GridIndex, Registration


def speckle(height: int = 400, width: int = 400, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width), dtype=np.uint8)


def slice_tiles(
    image: np.ndarray,
    n_rows: int,
    n_cols: int,
    tile: int = 100,
    overlap: int = 10,
    origin: Tuple[int, int] = (0, 0),
) -> Dict[Tuple[int, int], np.ndarray]:
    step = tile - overlap
    tiles = {}
    for i_row in range(n_rows):
        for i_col in range(n_cols):
            y0 = origin[0] + i_row * step
            x0 = origin[1] + i_col * step
            tiles[(i_row, i_col)] = image[y0 : y0 + tile, x0 : x0 + tile].copy()
    return tiles


def registration_from_anchors(
    e: Tuple[int, ...],
    y: np.ndarray,
    x: np.ndarray,
    height,
    width,
) -> Registration:
    n_rows, n_cols, _ = y.shape
    index = GridIndex(e=tuple(e), r=tuple(range(n_rows)), c=tuple(range(n_cols)))
    return Registration(
        index=index,
        y=np.asarray(y, dtype=np.float64),
        x=np.asarray(x, dtype=np.float64),
        height=np.asarray(height, dtype=np.int64),
        width=np.asarray(width, dtype=np.int64),
    )


def field_bundle(
    height: int,
    width: int,
    step: float = 1.0,
    confidence=0.01,
    **values,
) -> FieldBundle:
    """Bundle on a local grid starting at 0; unspecified strain fields are zero."""
    xs = np.arange(0, width, step, dtype=np.float64)
    ys = np.arange(0, height, step, dtype=np.float64)
    x, y = np.meshgrid(xs, ys)
    fields = {}
    for name in ("exx", "eyy", "exy", "u", "v"):
        fields[name] = np.broadcast_to(np.asarray(values.get(name, 0.0), dtype=np.float64), x.shape).copy()
    fields["sigma"] = np.broadcast_to(np.asarray(confidence, dtype=np.float64), x.shape).copy()
    return FieldBundle(x=x, y=y, fields=fields)
