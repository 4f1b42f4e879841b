import numpy as np
import pytest

import registration
from errors import ConfigurationError, InvalidCropError
from models import GridIndex, StitchParams, TileGrid
from registration import accumulate_chain, register_images, register_pair, solve_time_step
from synthetic import slice_tiles, speckle


@pytest.fixture
def image():
    return speckle()


class TestRegisterPair:
    def test_horizontal_neighbour(self, image):
        tiles = slice_tiles(image, 1, 3, tile=100, overlap=10)
        assert register_pair(tiles[(0, 0)], tiles[(0, 1)], 10) == (0, 90)
        assert register_pair(tiles[(0, 1)], tiles[(0, 2)], 10) == (0, 90)

    def test_vertical_neighbour(self, image):
        tiles = slice_tiles(image, 2, 1, tile=100, overlap=25)
        assert register_pair(tiles[(0, 0)], tiles[(1, 0)], 20) == (75, 0)

    def test_diagonal_offset(self, image):
        current = image[50:150, 50:150]
        following = image[53:153, 135:235]
        assert register_pair(current, following, 12) == (3, 85)

    def test_colour_tiles(self, image):
        rgb = np.dstack([image, image, image])
        assert register_pair(rgb[0:100, 0:100], rgb[0:100, 80:180], 16) == (0, 80)

    @pytest.mark.parametrize("size", [0, 101, 500])
    def test_invalid_crop(self, image, size):
        with pytest.raises(InvalidCropError):
            register_pair(image[:100, :100], image[:100, 90:190], size)

    def test_crop_larger_than_search_image(self, image):
        with pytest.raises(ConfigurationError):
            register_pair(image[:40, :40], image[:100, :100], 50)


class TestAccumulateChain:
    def test_single_tile(self, image):
        offsets, h, w = accumulate_chain([image[:80, :120]], 10)
        np.testing.assert_array_equal(offsets, [[0.0, 0.0]])
        assert (h, w) == (80, 120)

    def test_row_of_slices(self, image):
        tiles = slice_tiles(image, 1, 4, tile=100, overlap=10)
        offsets, h, w = accumulate_chain((tiles[(0, i)] for i in range(4)), 10)
        np.testing.assert_array_equal(offsets, [[0, 0], [0, 90], [0, 180], [0, 270]])
        assert (h, w) == (100, 100)

    def test_offsets_are_normalised_to_zero(self, monkeypatch):
        steps = iter([(-4, 90), (6, 88)])
        monkeypatch.setattr(registration, "register_pair", lambda a, b, size: next(steps))
        tiles = [np.zeros((10, 10))] * 3
        offsets, _, _ = accumulate_chain(tiles, 5)
        np.testing.assert_array_equal(offsets, [[4, 0], [0, 90], [6, 178]])

    def test_last_tile_gives_extent(self, monkeypatch):
        monkeypatch.setattr(registration, "register_pair", lambda a, b, size: (0, 5))
        _, h, w = accumulate_chain([np.zeros((10, 10)), np.zeros((12, 14))], 5)
        assert (h, w) == (12, 14)

    def test_empty_chain(self):
        with pytest.raises(ConfigurationError):
            accumulate_chain([], 10)


class TestSolveTimeStep:
    def test_two_by_two_grid(self, image):
        tiles = slice_tiles(image, 2, 2, tile=100, overlap=10)
        y, x, height, width = solve_time_step(lambda i, j: tiles[(i, j)], 2, 2, 10)
        np.testing.assert_array_equal(y, [[0, 0], [90, 90]])
        np.testing.assert_array_equal(x, [[0, 90], [0, 90]])
        assert (height, width) == (191, 191)

    def test_single_tile_grid(self, image):
        y, x, height, width = solve_time_step(lambda i, j: image[:60, :70], 1, 1, 10)
        np.testing.assert_array_equal(y, [[0]])
        np.testing.assert_array_equal(x, [[0]])
        assert (height, width) == (61, 71)

    def test_anchors_are_translation_invariant(self, image):
        # row neighbours never step up and column neighbours never step left
        jitter_y = np.array([[0, 1, 4], [2, 2, 3], [1, 5, 5]])
        jitter_x = np.array([[0, 3, 1], [2, 3, 4], [5, 3, 6]])

        def jittered(origin):
            tiles = {}
            for i in range(3):
                for j in range(3):
                    y0 = origin[0] + i * 80 + jitter_y[i, j]
                    x0 = origin[1] + j * 80 + jitter_x[i, j]
                    tiles[(i, j)] = image[y0 : y0 + 100, x0 : x0 + 100]
            return tiles

        base = jittered((0, 0))
        shifted = jittered((37, 11))
        first = solve_time_step(lambda i, j: base[(i, j)], 3, 3, 12)
        second = solve_time_step(lambda i, j: shifted[(i, j)], 3, 3, 12)
        np.testing.assert_array_equal(first[0], second[0])
        np.testing.assert_array_equal(first[1], second[1])
        assert first[2:] == second[2:]
        assert (first[0] >= 0).all() and (first[1] >= 0).all()


def test_register_images_solves_every_time_step(image):
    layouts = {0: slice_tiles(image, 2, 3, tile=100, overlap=10), 3: slice_tiles(image, 2, 3, tile=100, overlap=20)}
    index = GridIndex(e=(0, 3), r=(0, 1), c=(0, 1, 2))
    addresses = np.empty(index.shape, dtype=object)
    for i_e, e in enumerate(index.e):
        for i in range(2):
            for j in range(3):
                addresses[i, j, i_e] = f"{e}/{i}/{j}"

    def loader(address):
        e, i, j = (int(part) for part in address.split("/"))
        return layouts[e][(i, j)]

    messages = []
    progress = []
    reg = register_images(
        TileGrid(index=index, addresses=addresses),
        StitchParams(crop_template=10, max_workers=2),
        loader=loader,
        on_log=messages.append,
        on_progress=progress.append,
    )
    assert reg.y.shape == (2, 3, 2)
    np.testing.assert_array_equal(reg.x[:, :, 0], [[0, 90, 180], [0, 90, 180]])
    np.testing.assert_array_equal(reg.x[:, :, 1], [[0, 80, 160], [0, 80, 160]])
    np.testing.assert_array_equal(reg.y[:, :, 1], [[0, 0, 0], [80, 80, 80]])
    assert list(reg.height) == [191, 181]
    assert list(reg.width) == [281, 261]
    assert progress[-1] == 100
    assert messages[-1].startswith("Registration complete")
