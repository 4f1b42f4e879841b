from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np

from errors import ConfigurationError


@dataclass(frozen=True)
class GridIndex:
    e: Tuple[int, ...]
    r: Tuple[int, ...]
    c: Tuple[int, ...]

    @property
    def shape(self) -> Tuple[int, int, int]:
        return len(self.r), len(self.c), len(self.e)

    def e_index(self, e: int) -> int:
        try:
            return self.e.index(e)
        except ValueError:
            raise ConfigurationError(f"Time step {e} is not part of the grid {list(self.e)}") from None


@dataclass
class TileGrid:
    index: GridIndex
    addresses: np.ndarray  # [row, column, time]

    def address(self, i_row: int, i_col: int, i_e: int) -> str:
        return self.addresses[i_row, i_col, i_e]


@dataclass
class Registration:
    """Global tile anchors and canvas sizes for every time step.

    ``x`` and ``y`` are indexed ``[row, column, time]`` like the grid
    addresses; ``height`` and ``width`` hold one canvas size per time step.
    """

    index: GridIndex
    y: np.ndarray
    x: np.ndarray
    height: np.ndarray
    width: np.ndarray

    def anchor(self, i_row: int, i_col: int, i_e: int) -> Tuple[float, float]:
        return float(self.y[i_row, i_col, i_e]), float(self.x[i_row, i_col, i_e])

    def canvas_shape(self, i_e: int) -> Tuple[int, int]:
        return int(self.height[i_e]), int(self.width[i_e])


@dataclass
class FieldBundle:
    x: np.ndarray
    y: np.ndarray
    fields: Dict[str, np.ndarray]

    def __getitem__(self, name: str) -> np.ndarray:
        return self.fields[name]

    @property
    def step(self) -> float:
        if self.x.shape[1] < 2:
            return 1.0
        return float(self.x[0, 1] - self.x[0, 0])


@dataclass
class MergedField:
    e: int
    fields: Dict[str, np.ndarray]
    confidence: np.ndarray
    x: np.ndarray
    y: np.ndarray
    skipped: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.confidence.shape


@dataclass
class StitchParams:
    crop_template: int = 1024
    save_registration: bool = True
    save_fallback_registration: bool = False
    registration_file: str = "reg.json"
    max_workers: int = 4
    average_overlapping_regions: bool = False
    rescale_intensity: bool = True
    scale_factors: Tuple[float, ...] = (1, 10)
    compression: str = "deflate"
    image_output_fmt: str = "e{e}"
    corr_flag: str = "sigma"
    corr_fail: float = -1.0
    displacement_fields: Tuple[str, str] = ("u", "v")
    deformation_fields: Tuple[str, ...] = ("exx", "eyy", "exy")
    smooth_fields: Tuple[str, ...] = ("u", "v", "exx")
    smooth_window: int = 5
    reference_config: int = 0
    output_deformed_config: bool = False
    filter_confidence: bool = False
    field_output_fmt: str = "e{e}_stitched"
    field_ext: str = ".npz"

    @property
    def tracked_fields(self) -> Tuple[str, ...]:
        names = list(self.deformation_fields) + list(self.displacement_fields) + [self.corr_flag]
        return tuple(dict.fromkeys(names))
