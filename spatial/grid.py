# spatial/grid.py

"""World grid indexing: lat/lon <-> cell coordinates and identifiers.

The grid uses a fixed step in degrees, so a cell is ~222m tall everywhere
but narrows in longitude toward the poles. Existing world state depends on
this layout, so it is intentionally not an equal-area grid.
"""

import math
from dataclasses import dataclass

# Reference cell size (~200m at mid-latitudes)
CELL_SIZE_DEG = 0.002

# Mean Earth radius used by the haversine formula (meters)
EARTH_RADIUS_M = 6371e3

CellXY = tuple[int, int]


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 point in decimal degrees."""

    latitude: float
    longitude: float

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> "Coordinate":
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))


def cell_id(x: int, y: int) -> str:
    """Canonical string key for a cell."""
    return f"{x}_{y}"


def parse_cell_id(value: str) -> CellXY:
    """Parse a ``"{x}_{y}"`` key back into integer coordinates.

    Raises:
        ValueError: If the key is not two underscore-separated integers
    """
    # x may be negative ("-1828_20190"), so split on the last underscore
    head, sep, tail = value.rpartition("_")
    if not sep or not head:
        raise ValueError(f"Invalid cell id: {value!r}")
    try:
        return int(head), int(tail)
    except ValueError as e:
        raise ValueError(f"Invalid cell id: {value!r}") from e


def great_circle_distance_meters(p1: Coordinate, p2: Coordinate) -> float:
    """Haversine distance between two coordinates in meters."""
    phi1 = math.radians(p1.latitude)
    phi2 = math.radians(p2.latitude)
    d_phi = math.radians(p2.latitude - p1.latitude)
    d_lambda = math.radians(p2.longitude - p1.longitude)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class GridIndex:
    """Stateless mapping between coordinates and grid cells.

    Shared by the path resolver and the route analysis tooling; both must
    produce identical cell ids for identical input.
    """

    cell_size_degrees: float = CELL_SIZE_DEG

    def cell_index(self, latitude: float, longitude: float) -> CellXY:
        """Integer (x, y) of the cell containing the point."""
        x = math.floor(longitude / self.cell_size_degrees)
        y = math.floor(latitude / self.cell_size_degrees)
        return x, y

    def cell_id_for(self, latitude: float, longitude: float) -> str:
        """Cell id of the cell containing the point."""
        return cell_id(*self.cell_index(latitude, longitude))

    def cell_center(self, x: int, y: int) -> Coordinate:
        return Coordinate(
            latitude=(y + 0.5) * self.cell_size_degrees,
            longitude=(x + 0.5) * self.cell_size_degrees,
        )

    def cell_bounds(self, x: int, y: int) -> tuple[float, float, float, float]:
        """Return (min_lat, min_lon, max_lat, max_lon) of a cell."""
        size = self.cell_size_degrees
        return y * size, x * size, (y + 1) * size, (x + 1) * size

    def cell_boundary(self, x: int, y: int) -> list[Coordinate]:
        """Corner polygon: top-left, top-right, bottom-right, bottom-left."""
        center = self.cell_center(x, y)
        half = self.cell_size_degrees / 2.0
        return [
            Coordinate(center.latitude + half, center.longitude - half),
            Coordinate(center.latitude + half, center.longitude + half),
            Coordinate(center.latitude - half, center.longitude + half),
            Coordinate(center.latitude - half, center.longitude - half),
        ]

    def cells_on_segment(self, start: Coordinate, end: Coordinate) -> set[str]:
        """Every cell a straight lat/lon segment passes through, in grid order.

        Walks cell borders in the order the segment crosses them. When the
        segment passes exactly through a corner, both side cells are included.
        """
        size = self.cell_size_degrees
        u0, v0 = start.longitude / size, start.latitude / size
        u1, v1 = end.longitude / size, end.latitude / size
        x, y = self.cell_index(start.latitude, start.longitude)
        x_end, y_end = self.cell_index(end.latitude, end.longitude)
        du, dv = u1 - u0, v1 - v0

        step_x = (du > 0) - (du < 0)
        step_y = (dv > 0) - (dv < 0)
        t_delta_x = abs(1.0 / du) if du else math.inf
        t_delta_y = abs(1.0 / dv) if dv else math.inf
        if du > 0:
            t_max_x = (x + 1 - u0) / du
        elif du < 0:
            t_max_x = (u0 - x) / -du
        else:
            t_max_x = math.inf
        if dv > 0:
            t_max_y = (y + 1 - v0) / dv
        elif dv < 0:
            t_max_y = (v0 - y) / -dv
        else:
            t_max_y = math.inf

        cells = {cell_id(x, y)}
        remaining = abs(x_end - x) + abs(y_end - y)
        while remaining > 0 and (x, y) != (x_end, y_end):
            if t_max_x < t_max_y:
                x += step_x
                t_max_x += t_delta_x
                remaining -= 1
            elif t_max_y < t_max_x:
                y += step_y
                t_max_y += t_delta_y
                remaining -= 1
            else:
                cells.add(cell_id(x + step_x, y))
                cells.add(cell_id(x, y + step_y))
                x += step_x
                y += step_y
                t_max_x += t_delta_x
                t_max_y += t_delta_y
                remaining -= 2
            cells.add(cell_id(x, y))

        cells.add(cell_id(x_end, y_end))
        return cells

    def center_for_id(self, value: str) -> Coordinate:
        return self.cell_center(*parse_cell_id(value))

    def boundary_for_id(self, value: str) -> list[Coordinate]:
        return self.cell_boundary(*parse_cell_id(value))
