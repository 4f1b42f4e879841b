from __future__ import annotations

import logging
import time
import warnings
from typing import Callable, Dict, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.interpolate import griddata
from scipy.spatial import QhullError

from errors import ConfigurationError, TileLoadError, TileLoadWarning
from models import FieldBundle, GridIndex, MergedField, Registration, StitchParams
from sources import FileSink, FileTileSource
from store import load_or_register
from utils import NameFormat, clip_rect, default_name_fmt, smooth_nan_gaussian, tile_order, world_to_subscript

FieldLoader = Callable[[int, int], FieldBundle]


def _field_loader(source, index: GridIndex, e: int, names: Sequence[str]) -> FieldLoader:
    def load(i_row: int, i_col: int) -> FieldBundle:
        return source.load_fields(e, index.r[i_row], index.c[i_col], names)

    return load


def check_field_params(params: StitchParams) -> None:
    if len(params.displacement_fields) != 2:
        raise ConfigurationError(f"Expected two displacement fields, got {params.displacement_fields}")
    unknown = [name for name in params.smooth_fields if name not in params.tracked_fields]
    if unknown:
        raise ConfigurationError(f"Smoothing fields {unknown} are not tracked")


def field_grid(registration: Registration, i_ref: int, step: float) -> Tuple[np.ndarray, np.ndarray]:
    """Global sample coordinates of the reference canvas.

    The trailing one-sample margin of the registered canvas is not sampled.
    """
    if step <= 0:
        raise ConfigurationError(f"Field sample spacing must be positive, got {step}")
    height, width = registration.canvas_shape(i_ref)
    xs = np.arange(0, width - 1, step, dtype=np.float64)
    ys = np.arange(0, height - 1, step, dtype=np.float64)
    return np.meshgrid(xs, ys)


def _first_bundle(load: FieldLoader, n_rows: int, n_cols: int) -> Tuple[Tuple[int, int], FieldBundle]:
    # first loadable tile in row-major order
    for i_row in range(n_rows):
        for i_col in range(n_cols):
            try:
                return (i_row, i_col), load(i_row, i_col)
            except TileLoadError:
                continue
    raise ConfigurationError("No field tile could be loaded to determine the sample spacing")


def merge_tile(
    merged: Dict[str, np.ndarray],
    confidence: np.ndarray,
    bundle: FieldBundle,
    shift: Tuple[float, float],
    ref_anchor: Tuple[float, float],
    step: float,
    params: StitchParams,
) -> np.ndarray:
    """Write one tile into the merged arrays and return the mask of written samples.

    ``shift`` is the (y, x) anchor of the tile in the deformed step minus its
    anchor in the reference step; ``ref_anchor`` places the tile's local
    coordinates on the global grid.
    """
    u_name, v_name = params.displacement_fields
    values = dict(bundle.fields)
    values[u_name] = values[u_name] + shift[1]
    values[v_name] = values[v_name] + shift[0]
    x = bundle.x + ref_anchor[1]
    y = bundle.y + ref_anchor[0]

    tile_confidence = values[params.corr_flag]
    row0 = world_to_subscript(y[0, 0], step)
    col0 = world_to_subscript(x[0, 0], step)
    rect = clip_rect(row0, col0, tile_confidence.shape[0], tile_confidence.shape[1], confidence.shape)
    if rect is None:
        return np.zeros(confidence.shape, dtype=bool)
    region, local = rect

    snapshot = np.full(confidence.shape, params.corr_fail, dtype=np.float64)
    snapshot[region] = tile_confidence[local]
    valid = (snapshot != params.corr_fail) & ~np.isnan(snapshot)
    if params.filter_confidence:
        # lower confidence values are better correlations
        valid &= (confidence == params.corr_fail) | (snapshot < confidence)

    confidence[valid] = snapshot[valid]
    valid_local = valid[region]
    for name in params.tracked_fields:
        target = merged[name][region]
        target[valid_local] = values[name][local][valid_local]
    return valid


def fill_missing(values: np.ndarray) -> np.ndarray:
    """Linearly interpolate NaN samples inside the hull of the known samples."""
    missing = np.isnan(values)
    filled = values.copy()
    if not missing.any() or missing.all():
        return filled
    known_rows, known_cols = np.nonzero(~missing)
    missing_rows, missing_cols = np.nonzero(missing)
    try:
        filled[missing] = griddata(
            (known_rows, known_cols),
            values[~missing],
            (missing_rows, missing_cols),
            method="linear",
        )
    except QhullError:
        logging.warning("Known samples are degenerate; missing samples left unset")
    return filled


def warp_to_deformed(
    fields: Dict[str, np.ndarray],
    u: np.ndarray,
    v: np.ndarray,
    step: float,
) -> Dict[str, np.ndarray]:
    """Resample every field from the reference grid onto the deformed grid.

    Output sample ``p`` takes the nearest reference sample at ``p + D(p)``
    where ``D`` is the displacement in units of the sample spacing.
    """
    dx = np.nan_to_num(u / step, nan=0.0)
    dy = np.nan_to_num(v / step, nan=0.0)
    rows, cols = np.indices(u.shape)
    map_x = (cols + dx).astype(np.float32)
    map_y = (rows + dy).astype(np.float32)
    warped: Dict[str, np.ndarray] = {}
    for name, values in fields.items():
        warped[name] = cv2.remap(
            np.ascontiguousarray(values, dtype=np.float64),
            map_x,
            map_y,
            interpolation=cv2.INTER_NEAREST,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=np.nan,
        )
    return warped


def merge_time_step(
    registration: Registration,
    i_e: int,
    i_ref: int,
    load: FieldLoader,
    params: StitchParams,
    on_log: Optional[Callable[[str], None]] = None,
    order: Optional[Sequence[Tuple[int, int]]] = None,
) -> MergedField:
    check_field_params(params)
    index = registration.index
    n_rows, n_cols, _ = index.shape
    e = index.e[i_e]

    first, first_bundle = _first_bundle(load, n_rows, n_cols)
    loaded = {first: first_bundle}
    step = first_bundle.step
    grid_x, grid_y = field_grid(registration, i_ref, step)
    merged = {name: np.full(grid_x.shape, np.nan) for name in params.tracked_fields}
    confidence = np.full(grid_x.shape, params.corr_fail, dtype=np.float64)
    skipped = []

    for i_row, i_col in order if order is not None else tile_order(n_rows, n_cols):
        r, c = index.r[i_row], index.c[i_col]
        try:
            bundle = loaded.pop((i_row, i_col), None) or load(i_row, i_col)
        except TileLoadError as exc:
            logging.warning("Tile e=%s r=%s c=%s failed to stitch: %s", e, r, c, exc)
            warnings.warn(f"Tile e={e} r={r} c={c} failed to stitch: {exc}", TileLoadWarning, stacklevel=2)
            if on_log:
                on_log(f"Skipped tile r={r} c={c}: {exc}")
            skipped.append((r, c))
            continue
        def_y, def_x = registration.anchor(i_row, i_col, i_e)
        ref_y, ref_x = registration.anchor(i_row, i_col, i_ref)
        merge_tile(merged, confidence, bundle, (def_y - ref_y, def_x - ref_x), (ref_y, ref_x), step, params)

    for name in params.smooth_fields:
        merged[name] = smooth_nan_gaussian(merged[name], params.smooth_window, axis=0)
        merged[name] = smooth_nan_gaussian(merged[name], params.smooth_window, axis=1)

    # NOTE: filling missing displacements is slow; smoothing them beforehand is the cheaper mitigation
    if params.output_deformed_config:
        u_name, v_name = params.displacement_fields
        u = fill_missing(merged[u_name])
        v = fill_missing(merged[v_name])
        merged = warp_to_deformed(merged, u, v, step)

    return MergedField(e=e, fields=merged, confidence=confidence, x=grid_x, y=grid_y, skipped=skipped)


def stitch_fields(
    root,
    name_fmt: NameFormat = default_name_fmt,
    ext: str = ".npz",
    params: Optional[StitchParams] = None,
    registration: Optional[Registration] = None,
    source=None,
    sink=None,
    image_fmt: Optional[NameFormat] = None,
    image_ext: str = ".tif",
    on_log: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Dict[int, MergedField]:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    start = time.time()
    params = params or StitchParams()
    check_field_params(params)
    if registration is None:
        registration = load_or_register(root, image_fmt or name_fmt, image_ext, params, on_log)
    source = source or FileTileSource(root, name_fmt, ext)
    sink = sink or FileSink(root)
    index = registration.index
    i_ref = index.e_index(params.reference_config)

    deformed = [i_e for i_e in range(len(index.e)) if i_e != i_ref]
    results: Dict[int, MergedField] = {}
    for done, i_e in enumerate(deformed, start=1):
        e = index.e[i_e]
        merged = merge_time_step(
            registration,
            i_e,
            i_ref,
            _field_loader(source, index, e, params.tracked_fields),
            params,
            on_log=on_log,
        )
        sink.write_fields(params.field_output_fmt.format(e=e), merged, params.field_ext)
        results[e] = merged
        if merged.skipped:
            logging.warning("Time step %s: %d tile(s) skipped", e, len(merged.skipped))
        if on_progress:
            on_progress(int((done / len(deformed)) * 100))
        if on_log:
            on_log(f"Stitched fields for time step {e} ({merged.shape[1]}x{merged.shape[0]})")

    if on_log:
        on_log(f"Stitched {len(results)} time steps, time={time.time() - start:.2f}s")
    return results
