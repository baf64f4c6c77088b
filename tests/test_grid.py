# tests/test_grid.py

"""Tests for grid indexing and distance math."""

import pytest

from spatial.grid import (
    Coordinate,
    GridIndex,
    cell_id,
    great_circle_distance_meters,
    parse_cell_id,
)


class TestCellIds:
    """Test cell id formatting and parsing."""

    def test_cell_id_format(self):
        assert cell_id(100, 200) == "100_200"
        assert cell_id(-1828, 20190) == "-1828_20190"

    def test_parse_negative_x(self):
        """Negative x is parsed on the last underscore."""
        assert parse_cell_id("-1828_20190") == (-1828, 20190)
        assert parse_cell_id("-5_-7") == (-5, -7)

    @pytest.mark.parametrize("value", ["", "abc", "10", "_5", "1_x", "1.5_2"])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            parse_cell_id(value)


class TestGridIndex:
    """Test coordinate to cell mapping."""

    def test_cell_index_uses_floor(self):
        grid = GridIndex()
        assert grid.cell_index(40.381, -3.655) == (-1828, 20190)
        assert grid.cell_id_for(0.4011, 0.2011) == "100_200"

    def test_cell_index_southern_western_hemisphere(self):
        grid = GridIndex()
        x, y = grid.cell_index(-0.0001, -0.0001)
        assert (x, y) == (-1, -1)

    def test_cell_center(self):
        grid = GridIndex()
        center = grid.center_for_id("100_200")
        assert center.latitude == pytest.approx(0.401)
        assert center.longitude == pytest.approx(0.201)
        assert grid.cell_id_for(center.latitude, center.longitude) == "100_200"

    def test_cell_boundary_corner_order(self):
        """Corners are top-left, top-right, bottom-right, bottom-left."""
        grid = GridIndex()
        tl, tr, br, bl = grid.boundary_for_id("100_200")

        assert tl.latitude == pytest.approx(0.402)
        assert tl.longitude == pytest.approx(0.200)
        assert tr.latitude == pytest.approx(0.402)
        assert tr.longitude == pytest.approx(0.202)
        assert br.latitude == pytest.approx(0.400)
        assert br.longitude == pytest.approx(0.202)
        assert bl.latitude == pytest.approx(0.400)
        assert bl.longitude == pytest.approx(0.200)

    def test_cell_bounds(self):
        grid = GridIndex()
        min_lat, min_lon, max_lat, max_lon = grid.cell_bounds(100, 200)
        assert (min_lat, min_lon) == pytest.approx((0.400, 0.200))
        assert (max_lat, max_lon) == pytest.approx((0.402, 0.202))

    def test_custom_cell_size(self):
        grid = GridIndex(cell_size_degrees=0.01)
        assert grid.cell_index(0.015, 0.025) == (2, 1)


class TestSegmentWalk:
    """Test exact traversal of the cells under a segment."""

    def test_same_cell(self):
        grid = GridIndex()
        cells = grid.cells_on_segment(Coordinate(0.0011, 0.0011), Coordinate(0.0015, 0.0019))
        assert cells == {"0_0"}

    def test_east_west(self):
        grid = GridIndex()
        cells = grid.cells_on_segment(Coordinate(0.0011, 0.0011), Coordinate(0.0011, 0.0071))
        assert cells == {"0_0", "1_0", "2_0", "3_0"}

    def test_shallow_diagonal_is_connected(self):
        """Each step of the walk crosses exactly one border."""
        grid = GridIndex()
        start, end = Coordinate(0.0001, 0.0001), Coordinate(0.0031, 0.0097)
        cells = grid.cells_on_segment(start, end)

        assert len(cells) == 6
        assert {"0_0", "4_1"} <= cells
        for value in cells:
            x, y = parse_cell_id(value)
            neighbours = {
                cell_id(x + 1, y),
                cell_id(x - 1, y),
                cell_id(x, y + 1),
                cell_id(x, y - 1),
            }
            assert neighbours & cells

    def test_direction_does_not_matter(self):
        grid = GridIndex()
        a, b = Coordinate(40.3811, -3.6549), Coordinate(40.3825, -3.6561)
        assert grid.cells_on_segment(a, b) == grid.cells_on_segment(b, a)


class TestDistance:
    """Test haversine distance."""

    def test_zero_distance(self):
        p = Coordinate(40.0, -3.0)
        assert great_circle_distance_meters(p, p) == 0.0

    def test_one_degree_latitude(self):
        d = great_circle_distance_meters(Coordinate(0.0, 0.0), Coordinate(1.0, 0.0))
        assert d == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        a = Coordinate(40.381, -3.655)
        b = Coordinate(40.381, -3.665)
        assert great_circle_distance_meters(a, b) == pytest.approx(
            great_circle_distance_meters(b, a)
        )
        assert great_circle_distance_meters(a, b) == pytest.approx(847, abs=5)
