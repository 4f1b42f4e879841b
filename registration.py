from __future__ import annotations

import concurrent.futures
import logging
import math
import time
from typing import Callable, Iterable, List, Optional, Tuple

import cv2
import numpy as np

from errors import ConfigurationError, InvalidCropError, TileCorruptError
from models import GridIndex, Registration, StitchParams, TileGrid
from utils import ncc_surface, peak_location, to_gray_float

ImageLoader = Callable[[str], np.ndarray]


def read_image(path: str) -> np.ndarray:
    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if img is None:
        raise TileCorruptError(f"Failed to read {path}")
    return img


def register_pair(image: np.ndarray, next_image: np.ndarray, template_size: int) -> Tuple[int, int]:
    """Offset (dy, dx) of ``next_image``'s origin inside ``image``.

    A ``template_size`` square is cropped from the top-left corner of
    ``next_image`` and located in ``image`` by normalized cross-correlation.
    Equal peaks resolve to the first one in row-major order.
    """
    if template_size < 1:
        raise InvalidCropError(f"Crop template must be positive, got {template_size}")
    for label, img in (("image", image), ("next image", next_image)):
        h, w = img.shape[:2]
        if template_size > h or template_size > w:
            raise InvalidCropError(f"Crop template {template_size} exceeds {label} size {w}x{h}")
    search = to_gray_float(image)
    template = to_gray_float(next_image[:template_size, :template_size])
    scores = ncc_surface(search, template)
    y_peak, x_peak = peak_location(scores)
    return y_peak - (template_size - 1), x_peak - (template_size - 1)


def accumulate_chain(images: Iterable[np.ndarray], template_size: int) -> Tuple[np.ndarray, int, int]:
    """Register a row or column of tiles one neighbour at a time.

    Returns an (N, 2) array of (y, x) offsets normalised so the smallest
    offset along each axis is zero, and the height and width of the last tile.
    """
    offsets: List[Tuple[float, float]] = []
    previous: Optional[np.ndarray] = None
    for img in images:
        if previous is None:
            offsets.append((0.0, 0.0))
        else:
            dy, dx = register_pair(previous, img, template_size)
            y, x = offsets[-1]
            offsets.append((y + dy, x + dx))
        previous = img
    if previous is None:
        raise ConfigurationError("Cannot register an empty chain of tiles")
    chain = np.asarray(offsets, dtype=np.float64)
    chain -= chain.min(axis=0)
    h, w = previous.shape[:2]
    return chain, h, w


def solve_time_step(
    load: Callable[[int, int], np.ndarray],
    n_rows: int,
    n_cols: int,
    template_size: int,
) -> Tuple[np.ndarray, np.ndarray, int, int]:
    y_col = np.zeros((n_rows, n_cols))
    x_col = np.zeros((n_rows, n_cols))
    h_col = np.zeros(n_cols)
    for i_col in range(n_cols):
        chain, h_col[i_col], _ = accumulate_chain((load(i_row, i_col) for i_row in range(n_rows)), template_size)
        y_col[:, i_col] = chain[:, 0]
        x_col[:, i_col] = chain[:, 1]

    y_row = np.zeros((n_rows, n_cols))
    x_row = np.zeros((n_rows, n_cols))
    w_row = np.zeros(n_rows)
    for i_row in range(n_rows):
        chain, _, w_row[i_row] = accumulate_chain((load(i_row, i_col) for i_col in range(n_cols)), template_size)
        y_row[i_row, :] = chain[:, 0]
        x_row[i_row, :] = chain[:, 1]

    # down the first column then along the row, and along the first row then down the column
    y = (y_row + y_col[:, :1] + y_col + y_row[:1, :]) / 2.0
    x = (x_row + x_col[:, :1] + x_col + x_row[:1, :]) / 2.0
    height = int(math.ceil(np.max(y[-1, :] + h_col) + 1))
    width = int(math.ceil(np.max(x[:, -1] + w_row) + 1))
    return y, x, height, width


def register_images(
    grid: TileGrid,
    params: StitchParams,
    loader: Optional[ImageLoader] = None,
    on_log: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Registration:
    start = time.time()
    loader = loader or read_image
    index: GridIndex = grid.index
    n_rows, n_cols, n_e = index.shape
    y = np.full((n_rows, n_cols, n_e), np.nan)
    x = np.full((n_rows, n_cols, n_e), np.nan)
    height = np.zeros(n_e, dtype=np.int64)
    width = np.zeros(n_e, dtype=np.int64)

    def solve(i_e: int) -> Tuple[np.ndarray, np.ndarray, int, int]:
        return solve_time_step(
            lambda i_row, i_col: loader(grid.address(i_row, i_col, i_e)),
            n_rows,
            n_cols,
            params.crop_template,
        )

    max_workers = max(1, min(params.max_workers, n_e))
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_map = {executor.submit(solve, i_e): i_e for i_e in range(n_e)}
        completed = 0
        for future in concurrent.futures.as_completed(future_map):
            i_e = future_map[future]
            y[:, :, i_e], x[:, :, i_e], height[i_e], width[i_e] = future.result()
            completed += 1
            logging.info("Registered time step %d: canvas %dx%d", index.e[i_e], width[i_e], height[i_e])
            if on_log:
                on_log(f"Time step {index.e[i_e]} registered: canvas {width[i_e]}x{height[i_e]}")
            if on_progress:
                on_progress(int((completed / n_e) * 100))

    if on_log:
        on_log(f"Registration complete: {n_rows * n_cols * n_e} tiles in {time.time() - start:.2f}s")
    return Registration(index=index, y=y, x=x, height=height, width=width)
