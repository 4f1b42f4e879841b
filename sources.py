from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Dict, Sequence

import cv2
import numpy as np
from PIL import Image
from scipy import io as sio

from errors import ConfigurationError, TileCorruptError, TileNotFoundError
from models import FieldBundle, MergedField
from utils import NameFormat, default_name_fmt

FIELD_SUFFIXES = (".npz", ".mat")


class FileTileSource:
    """Resolves (e, r, c) to tile files laid out by a naming scheme under ``root``."""

    def __init__(self, root, name_fmt: NameFormat = default_name_fmt, ext: str = ".tif") -> None:
        self.root = Path(root)
        self.name_fmt = name_fmt
        self.ext = ext

    def path(self, e: int, r: int, c: int) -> Path:
        return self.root / (str(self.name_fmt(e, r, c)) + self.ext)

    def _existing(self, e: int, r: int, c: int) -> Path:
        path = self.path(e, r, c)
        if not path.is_file():
            raise TileNotFoundError(f"Tile e={e} r={r} c={c} not found at {path}")
        return path

    def load_image(self, e: int, r: int, c: int) -> np.ndarray:
        path = self._existing(e, r, c)
        img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if img is None:
            raise TileCorruptError(f"Failed to read {path}")
        return img

    def load_fields(self, e: int, r: int, c: int, names: Sequence[str]) -> FieldBundle:
        path = self._existing(e, r, c)
        if path.suffix.lower() not in FIELD_SUFFIXES:
            raise ConfigurationError(f"Unsupported field file type {path.suffix!r}")
        try:
            raw = _read_arrays(path)
        except (OSError, EOFError, ValueError, zipfile.BadZipFile, sio.matlab.MatReadError) as exc:
            raise TileCorruptError(f"Failed to read {path}: {exc}") from exc
        missing = [name for name in ("x", "y", *names) if name not in raw]
        if missing:
            raise TileCorruptError(f"{path} has no field(s) {', '.join(missing)}")
        x = np.array(raw["x"], dtype=np.float64)
        y = np.array(raw["y"], dtype=np.float64)
        fields = {name: np.array(raw[name], dtype=np.float64) for name in names}
        for name, values in (("y", y), *fields.items()):
            if values.shape != x.shape:
                raise TileCorruptError(f"{path}: field {name} has shape {values.shape}, expected {x.shape}")
        return FieldBundle(x=x, y=y, fields=fields)


def _read_arrays(path: Path) -> Dict[str, np.ndarray]:
    suffix = path.suffix.lower()
    if suffix == ".npz":
        with np.load(path, allow_pickle=False) as data:
            return {key: data[key] for key in data.files}
    return {key: value for key, value in sio.loadmat(str(path)).items() if not key.startswith("__")}


def save_tiff(img: np.ndarray, output_path: Path, compression: str) -> None:
    pillow_img = Image.fromarray(np.ascontiguousarray(img, dtype=np.float32))
    compress_map = {
        "none": "raw",
        "lzw": "tiff_lzw",
        "deflate": "tiff_adobe_deflate",
    }
    if compression not in compress_map:
        raise ConfigurationError(f"Unknown compression {compression!r}")
    comp = compress_map[compression]
    bytes_per_pixel = 4
    total_bytes = img.shape[0] * img.shape[1] * bytes_per_pixel
    bigtiff = total_bytes > (4 * 1024**3)
    pillow_img.save(
        output_path,
        format="TIFF",
        compression=comp,
        bigtiff=bigtiff,
    )


class FileSink:
    """Writes stitched images and merged fields into ``root``."""

    def __init__(self, root) -> None:
        self.root = Path(root)

    def write_image(self, name: str, img: np.ndarray, compression: str = "deflate") -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        output_file = self.root / f"{name}.tif"
        save_tiff(img, output_file, compression)
        logging.info("Saved %s (%dx%d)", output_file, img.shape[1], img.shape[0])
        return output_file

    def write_fields(self, name: str, merged: MergedField, ext: str = ".npz") -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        arrays = dict(merged.fields)
        arrays["x"] = merged.x
        arrays["y"] = merged.y
        output_file = self.root / f"{name}{ext}"
        if ext == ".npz":
            np.savez_compressed(output_file, **arrays)
        elif ext == ".mat":
            sio.savemat(str(output_file), arrays)
        else:
            raise ConfigurationError(f"Unsupported field output type {ext!r}")
        logging.info("Saved %s (%dx%d)", output_file, merged.shape[1], merged.shape[0])
        return output_file
