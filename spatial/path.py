# spatial/path.py

"""Route to grid resolution with an anti-teleport cutoff."""

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from territory.logging import get_logger

from .grid import Coordinate, GridIndex, great_circle_distance_meters
from .route import RoutePoint, interpolate, is_usable, seconds_between, validate_point

logger = get_logger(__name__)

DEFAULT_STEP_METERS = 20.0
DEFAULT_MAX_INTERPOLATION_METERS = 300.0
DEFAULT_MIN_INTERPOLATION_METERS = 10.0


@dataclass(frozen=True)
class SegmentAnomaly:
    """A segment longer than the interpolation cutoff (signal loss, teleport)."""

    start_index: int
    end_index: int
    start: Coordinate
    end: Coordinate
    distance_meters: float
    seconds: Optional[float] = None

    @property
    def apparent_speed_kmh(self) -> Optional[float]:
        if not self.seconds or self.seconds <= 0:
            return None
        return self.distance_meters / self.seconds * 3.6


@dataclass
class PathResolution:
    """Cells covered by a route plus diagnostics."""

    cell_ids: set[str] = field(default_factory=set)
    anomalies: list[SegmentAnomaly] = field(default_factory=list)
    points_used: int = 0
    points_dropped: int = 0
    total_distance_meters: float = 0.0


class PathResolver:
    """Converts an ordered route into the set of grid cells it covers.

    Pure and offline: the same route always yields the same cell set.
    """

    def __init__(
        self,
        grid: Optional[GridIndex] = None,
        interpolation_step_meters: float = DEFAULT_STEP_METERS,
        max_interpolation_distance_meters: float = DEFAULT_MAX_INTERPOLATION_METERS,
        min_interpolation_distance_meters: float = DEFAULT_MIN_INTERPOLATION_METERS,
    ):
        self.grid = grid or GridIndex()
        self.interpolation_step_meters = interpolation_step_meters
        self.max_interpolation_distance_meters = max_interpolation_distance_meters
        self.min_interpolation_distance_meters = min_interpolation_distance_meters

    @classmethod
    def from_config(cls, config) -> "PathResolver":
        return cls(
            grid=GridIndex(config.cell_size_degrees),
            interpolation_step_meters=config.interpolation_step_meters,
            max_interpolation_distance_meters=config.max_interpolation_distance_meters,
            min_interpolation_distance_meters=config.min_interpolation_distance_meters,
        )

    def cells_between(self, start: Coordinate, end: Coordinate) -> set[str]:
        """Cells touched by one segment, endpoints included."""
        cells, _ = self._segment(start, end)
        return cells

    def _segment(self, start: Coordinate, end: Coordinate) -> tuple[set[str], float]:
        cells = {
            self.grid.cell_id_for(start.latitude, start.longitude),
            self.grid.cell_id_for(end.latitude, end.longitude),
        }
        distance = great_circle_distance_meters(start, end)

        if distance < self.min_interpolation_distance_meters:
            return cells, distance

        if distance > self.max_interpolation_distance_meters:
            return cells, distance

        steps = math.ceil(distance / self.interpolation_step_meters)
        for i in range(1, steps):
            point = interpolate(start, end, i / steps)
            cells.add(self.grid.cell_id_for(point.latitude, point.longitude))

        # Sampling can step over a cell the segment only clips at a corner
        cells.update(self.grid.cells_on_segment(start, end))

        return cells, distance

    def resolve(self, route: Iterable[Any]) -> set[str]:
        """Return the set of cell ids covered by the route."""
        return self.resolve_detailed(route).cell_ids

    def resolve_detailed(self, route: Iterable[Any]) -> PathResolution:
        """Resolve a route and report dropped points and GPS jumps.

        Non-finite or out-of-range points are dropped; the segment is then
        formed between the surrounding usable points.
        """
        resolution = PathResolution()
        usable: list[tuple[int, RoutePoint]] = []

        for index, raw in enumerate(route):
            point = validate_point(raw)
            if is_usable(point):
                usable.append((index, point))
            else:
                resolution.points_dropped += 1

        resolution.points_used = len(usable)

        if resolution.points_dropped:
            logger.warning(
                "path.points_dropped",
                dropped=resolution.points_dropped,
                used=resolution.points_used,
            )

        if not usable:
            return resolution

        first = usable[0][1]
        resolution.cell_ids.add(self.grid.cell_id_for(first.latitude, first.longitude))

        for (i, a), (j, b) in zip(usable, usable[1:]):
            cells, distance = self._segment(a.coordinate, b.coordinate)
            resolution.cell_ids.update(cells)
            resolution.total_distance_meters += distance

            if distance > self.max_interpolation_distance_meters:
                anomaly = SegmentAnomaly(
                    start_index=i,
                    end_index=j,
                    start=a.coordinate,
                    end=b.coordinate,
                    distance_meters=distance,
                    seconds=seconds_between(a, b),
                )
                resolution.anomalies.append(anomaly)
                logger.info(
                    "path.jump_skipped",
                    start_index=i,
                    end_index=j,
                    distance_m=round(distance, 2),
                    limit_m=self.max_interpolation_distance_meters,
                )

        return resolution
