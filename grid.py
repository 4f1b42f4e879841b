from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

import numpy as np

from errors import AmbiguousGridError, ConfigurationError, NoMatchError
from models import GridIndex, TileGrid
from utils import NameFormat, default_name_fmt, name_pattern, parse_tile_coords


def _format_cells(cells: List[Tuple[int, int, int]], limit: int = 10) -> str:
    shown = ", ".join(f"(e={e}, r={r}, c={c})" for e, r, c in cells[:limit])
    if len(cells) > limit:
        shown += f", ... ({len(cells) - limit} more)"
    return shown


def index_addresses(addresses: Iterable[str], pattern: re.Pattern) -> TileGrid:
    """Arrange addresses matching ``pattern`` into a dense (row, column, time) grid."""
    cells: Dict[Tuple[int, int, int], List[str]] = {}
    for address in addresses:
        coords = parse_tile_coords(address, pattern)
        if coords is None:
            continue
        cells.setdefault(coords, []).append(address)
    if not cells:
        raise NoMatchError(f"No tile address matches {pattern.pattern!r}")

    index = GridIndex(
        e=tuple(sorted({e for e, _, _ in cells})),
        r=tuple(sorted({r for _, r, _ in cells})),
        c=tuple(sorted({c for _, _, c in cells})),
    )
    duplicated = sorted(key for key, found in cells.items() if len(found) > 1)
    missing = sorted(
        (e, r, c) for e in index.e for r in index.r for c in index.c if (e, r, c) not in cells
    )
    if duplicated or missing:
        problems = []
        if missing:
            problems.append(f"missing {_format_cells(missing)}")
        if duplicated:
            problems.append(f"duplicated {_format_cells(duplicated)}")
        raise AmbiguousGridError("Tile grid is not dense: " + "; ".join(problems))

    grid = np.empty(index.shape, dtype=object)
    for i_e, e in enumerate(index.e):
        for i_row, r in enumerate(index.r):
            for i_col, c in enumerate(index.c):
                grid[i_row, i_col, i_e] = cells[(e, r, c)][0]
    logging.info(
        "Indexed %d tiles: %d time steps, %d rows, %d columns",
        grid.size,
        len(index.e),
        len(index.r),
        len(index.c),
    )
    return TileGrid(index=index, addresses=grid)


def build_grid(root, name_fmt: NameFormat = default_name_fmt, ext: str = ".tif") -> TileGrid:
    root_path = Path(root)
    if not root_path.is_dir():
        raise ConfigurationError(f"Tile directory does not exist: {root_path}")
    pattern = name_pattern(name_fmt, ext)
    relative = {path.relative_to(root_path).as_posix(): path for path in root_path.rglob(f"*{ext}") if path.is_file()}
    grid = index_addresses(sorted(relative), pattern)
    paths = np.empty(grid.addresses.shape, dtype=object)
    for position, address in np.ndenumerate(grid.addresses):
        paths[position] = str(relative[address])
    return TileGrid(index=grid.index, addresses=paths)
