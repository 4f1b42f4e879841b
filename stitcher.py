from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from errors import ConfigurationError
from models import GridIndex, Registration, StitchParams
from sources import FileSink, FileTileSource
from store import load_or_register
from utils import NameFormat, clip_rect, default_name_fmt, rescale_intensity, tile_order, to_gray_float, world_to_subscript

TileLoader = Callable[[int, int], np.ndarray]


def _image_loader(source, index: GridIndex, e: int) -> TileLoader:
    def load(i_row: int, i_col: int) -> np.ndarray:
        return source.load_image(e, index.r[i_row], index.c[i_col])

    return load


def compose_mosaic(
    registration: Registration,
    i_e: int,
    load: TileLoader,
    average_overlapping_regions: bool = False,
    rescale: bool = True,
    order: Optional[Sequence[Tuple[int, int]]] = None,
) -> np.ndarray:
    """Paint every tile of time step ``i_e`` into one canvas.

    Tiles are painted in reverse row-major order unless ``order`` is given,
    so in overwrite mode the (0, 0) tile wins every overlap. With
    ``average_overlapping_regions`` overlapping samples hold the mean of all
    tiles covering them. Samples no tile covers stay NaN.
    """
    n_rows, n_cols, _ = registration.index.shape
    shape = registration.canvas_shape(i_e)
    canvas = np.full(shape, np.nan)
    if average_overlapping_regions:
        total = np.zeros(shape)
        count = np.zeros(shape)

    for i_row, i_col in order if order is not None else tile_order(n_rows, n_cols):
        img = load(i_row, i_col)
        tile = rescale_intensity(img) if rescale else to_gray_float(img).astype(np.float64)
        anchor_y, anchor_x = registration.anchor(i_row, i_col, i_e)
        rect = clip_rect(world_to_subscript(anchor_y), world_to_subscript(anchor_x), tile.shape[0], tile.shape[1], shape)
        if rect is None:
            logging.warning("Tile (%d, %d) lies outside the canvas", i_row, i_col)
            continue
        region, local = rect
        if average_overlapping_regions:
            total[region] += tile[local]
            count[region] += 1
        else:
            canvas[region] = tile[local]

    if average_overlapping_regions:
        covered = count > 0
        canvas[covered] = total[covered] / count[covered]
    return canvas


def rescale_outputs(canvas: np.ndarray, scale_factors: Sequence[float]) -> List[Tuple[float, np.ndarray]]:
    outputs: List[Tuple[float, np.ndarray]] = []
    for factor in scale_factors:
        if factor < 1:
            raise ConfigurationError(f"Scale factors must be >= 1, got {factor}")
        if factor == 1:
            outputs.append((factor, canvas))
            continue
        h, w = canvas.shape[:2]
        size = (max(1, math.ceil(w / factor)), max(1, math.ceil(h / factor)))
        scaled = cv2.resize(canvas.astype(np.float32), size, interpolation=cv2.INTER_LANCZOS4)
        outputs.append((factor, scaled))
    return outputs


def stitch_images(
    root,
    name_fmt: NameFormat = default_name_fmt,
    ext: str = ".tif",
    params: Optional[StitchParams] = None,
    registration: Optional[Registration] = None,
    source=None,
    sink=None,
    on_log: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> List[Path]:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    start = time.time()
    params = params or StitchParams()
    if registration is None:
        registration = load_or_register(root, name_fmt, ext, params, on_log)
    source = source or FileTileSource(root, name_fmt, ext)
    sink = sink or FileSink(root)
    index = registration.index

    written: List[Path] = []
    for i_e, e in enumerate(index.e):
        canvas = compose_mosaic(
            registration,
            i_e,
            _image_loader(source, index, e),
            average_overlapping_regions=params.average_overlapping_regions,
            rescale=params.rescale_intensity,
        )
        name = params.image_output_fmt.format(e=e)
        for factor, img in rescale_outputs(canvas, params.scale_factors):
            out_name = name if factor == 1 else f"{name}_rescale{factor:g}"
            written.append(sink.write_image(out_name, img, params.compression))
        if on_progress:
            on_progress(int(((i_e + 1) / len(index.e)) * 100))
        if on_log:
            on_log(f"Stitched time step {e} ({canvas.shape[1]}x{canvas.shape[0]})")

    if on_log:
        on_log(f"Saved {len(written)} images, time={time.time() - start:.2f}s")
    return written
