from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from errors import ConfigurationError, MissingRegistrationError, TileLoadError
from grid import build_grid
from models import GridIndex, Registration, StitchParams
from registration import register_images
from utils import NameFormat, default_name_fmt


def registration_path(root, params: StitchParams) -> Path:
    return Path(root) / params.registration_file


def save_registration(registration: Registration, path: Path) -> None:
    payload = {
        "e": list(registration.index.e),
        "r": list(registration.index.r),
        "c": list(registration.index.c),
        "y": registration.y.tolist(),
        "x": registration.x.tolist(),
        "height": [int(v) for v in registration.height],
        "width": [int(v) for v in registration.width],
    }
    Path(path).write_text(json.dumps(payload, indent=2))


def load_registration(path: Path) -> Registration:
    path = Path(path)
    if not path.is_file():
        raise MissingRegistrationError(f"No registration file at {path}")
    try:
        payload = json.loads(path.read_text())
        index = GridIndex(
            e=tuple(int(v) for v in payload["e"]),
            r=tuple(int(v) for v in payload["r"]),
            c=tuple(int(v) for v in payload["c"]),
        )
        y = np.asarray(payload["y"], dtype=np.float64)
        x = np.asarray(payload["x"], dtype=np.float64)
        height = np.asarray(payload["height"], dtype=np.int64)
        width = np.asarray(payload["width"], dtype=np.int64)
    except (ValueError, KeyError, TypeError) as exc:
        raise ConfigurationError(f"Malformed registration file {path}: {exc}") from exc
    if y.shape != index.shape or x.shape != index.shape or height.shape != (len(index.e),) or width.shape != (len(index.e),):
        raise ConfigurationError(f"Registration file {path} does not match its grid {index.shape}")
    return Registration(index=index, y=y, x=x, height=height, width=width)


def register_directory(
    root,
    name_fmt: NameFormat = default_name_fmt,
    ext: str = ".tif",
    params: Optional[StitchParams] = None,
    on_log: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Registration:
    params = params or StitchParams()
    grid = build_grid(root, name_fmt, ext)
    registration = register_images(grid, params, on_log=on_log, on_progress=on_progress)
    if params.save_registration:
        output_file = registration_path(root, params)
        save_registration(registration, output_file)
        logging.info("Saved registration to %s", output_file)
    return registration


def load_or_register(
    root,
    image_fmt: NameFormat = default_name_fmt,
    image_ext: str = ".tif",
    params: Optional[StitchParams] = None,
    on_log: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Registration:
    """Reuse a persisted registration, registering the raw images when there is none.

    The fallback result is only written back when
    ``params.save_fallback_registration`` is set.
    """
    params = params or StitchParams()
    path = registration_path(root, params)
    try:
        return load_registration(path)
    except MissingRegistrationError:
        logging.warning("No registration file found at %s; registering images", path)
        if on_log:
            on_log("No registration file found. Registering images.")
    fallback = dataclasses.replace(params, save_registration=params.save_fallback_registration)
    try:
        return register_directory(root, image_fmt, image_ext, fallback, on_log, on_progress)
    except (ConfigurationError, TileLoadError) as exc:
        raise MissingRegistrationError(f"No registration at {path} and registering images failed: {exc}") from exc
