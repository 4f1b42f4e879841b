from pathlib import Path

import pytest

from errors import AmbiguousGridError, ConfigurationError, NoMatchError, RegistrationAmbiguityError
from grid import build_grid, index_addresses
from utils import default_name_fmt, name_pattern


def _addresses(es, rs, cs, ext=".tif"):
    return [default_name_fmt(e, r, c) + ext for e in es for r in rs for c in cs]


class TestIndexAddresses:
    def setup_method(self):
        self.pattern = name_pattern(default_name_fmt, ".tif")

    def test_dense_grid_is_sorted_and_ordered_row_column_time(self):
        addresses = _addresses([5, 0], [2, 1, 10], [3, 0])
        grid = index_addresses(addresses + ["notes.txt", "e1_r1.tif"], self.pattern)
        assert grid.index.e == (0, 5)
        assert grid.index.r == (1, 2, 10)
        assert grid.index.c == (0, 3)
        assert grid.addresses.shape == (3, 2, 2)
        assert grid.address(2, 1, 0) == "e0_r10c3.tif"
        assert grid.address(0, 0, 1) == "e5_r1c0.tif"

    def test_missing_cell_is_an_error(self):
        addresses = _addresses([0, 1], [0, 1], [0, 1])
        addresses.remove("e1_r0c1.tif")
        with pytest.raises(AmbiguousGridError, match=r"missing \(e=1, r=0, c=1\)"):
            index_addresses(addresses, self.pattern)

    def test_duplicated_cell_is_an_error(self):
        addresses = _addresses([0], [0, 1], [0, 1]) + ["e0_r01c1.tif"]
        with pytest.raises(AmbiguousGridError, match="duplicated"):
            index_addresses(addresses, self.pattern)

    def test_ambiguity_is_a_configuration_error(self):
        assert issubclass(AmbiguousGridError, RegistrationAmbiguityError)
        assert issubclass(AmbiguousGridError, ConfigurationError)

    def test_no_match(self):
        with pytest.raises(NoMatchError):
            index_addresses(["a.tif", "b.png"], self.pattern)

    def test_single_tile(self):
        grid = index_addresses(["e0_r0c0.tif"], self.pattern)
        assert grid.index.shape == (1, 1, 1)


class TestBuildGrid:
    def test_discovers_nested_files(self, tmp_path: Path):
        fmt = lambda e, r, c: f"r{r}c{c}/e{e}"
        for e in (0, 1):
            for r in (0, 1):
                for c in (0, 1, 2):
                    path = tmp_path / f"{fmt(e, r, c)}.mat"
                    path.parent.mkdir(exist_ok=True)
                    path.write_bytes(b"")
        (tmp_path / "reg.json").write_text("{}")
        grid = build_grid(tmp_path, fmt, ".mat")
        assert grid.index.shape == (2, 3, 2)
        assert Path(grid.address(1, 2, 1)) == tmp_path / "r1c2" / "e1.mat"

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            build_grid(tmp_path / "nope")

    def test_empty_directory(self, tmp_path: Path):
        with pytest.raises(NoMatchError):
            build_grid(tmp_path)
