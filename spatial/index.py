# spatial/index.py

"""Spatial indexing of cell centers using R-tree for range queries."""

import math

import rtree.index

from territory.logging import get_logger

from .grid import Coordinate, great_circle_distance_meters

logger = get_logger(__name__)

# Meters per degree of latitude (used to size radius search boxes)
METERS_PER_DEGREE = 111_320.0


class CellIndex:
    """R-tree based index of cell centers.

    Backs the in-memory store's shard (geohash bounding box) and radius
    queries. Cell ids are strings; rtree needs integer ids, so each cell gets
    a stable integer slot.
    """

    def __init__(self):
        """Initialize cell index with a 2D R-tree backend."""
        self._rtree = rtree.index.Index()
        self._centers: dict[str, Coordinate] = {}
        self._slots: dict[str, int] = {}
        self._next_slot = 0

        self.logger = get_logger(f"{__name__}.CellIndex")

    @staticmethod
    def _bbox(center: Coordinate) -> tuple[float, float, float, float]:
        # (minx, miny, maxx, maxy) with x = longitude
        return (center.longitude, center.latitude, center.longitude, center.latitude)

    def insert(self, cell_id: str, center: Coordinate) -> None:
        """Insert or move a cell center in the index."""
        if cell_id in self._centers:
            if self._centers[cell_id] == center:
                return
            self.remove(cell_id)

        slot = self._slots.get(cell_id)
        if slot is None:
            slot = self._next_slot
            self._next_slot += 1
            self._slots[cell_id] = slot

        self._rtree.insert(slot, self._bbox(center), obj=cell_id)
        self._centers[cell_id] = center

    def remove(self, cell_id: str) -> None:
        """Remove a cell from the index. Unknown ids are ignored."""
        center = self._centers.pop(cell_id, None)
        if center is None:
            return
        self._rtree.delete(self._slots[cell_id], self._bbox(center))

    def __contains__(self, cell_id: str) -> bool:
        return cell_id in self._centers

    def query_bbox(
        self,
        min_lat: float,
        min_lon: float,
        max_lat: float,
        max_lon: float,
    ) -> list[str]:
        """Find cells whose center lies within the bounding box."""
        bbox = (min_lon, min_lat, max_lon, max_lat)
        return [item.object for item in self._rtree.intersection(bbox, objects=True)]

    def query_radius(self, center: Coordinate, radius_meters: float) -> list[tuple[str, float]]:
        """Find cells within a great-circle radius, nearest first.

        Returns:
            List of (cell_id, distance_meters) tuples sorted by distance
        """
        d_lat = radius_meters / METERS_PER_DEGREE
        cos_lat = max(math.cos(math.radians(center.latitude)), 1e-6)
        d_lon = radius_meters / (METERS_PER_DEGREE * cos_lat)

        candidates = self.query_bbox(
            center.latitude - d_lat,
            center.longitude - d_lon,
            center.latitude + d_lat,
            center.longitude + d_lon,
        )

        results = []
        for cell_id in candidates:
            dist = great_circle_distance_meters(center, self._centers[cell_id])
            if dist <= radius_meters:
                results.append((cell_id, dist))

        results.sort(key=lambda item: (item[1], item[0]))
        return results

    def get_cell_count(self) -> int:
        return len(self._centers)

    def clear(self) -> None:
        """Clear all cells from index."""
        self._rtree = rtree.index.Index()
        self._centers.clear()
        self._slots.clear()
        self._next_slot = 0

        self.logger.info("cell_index.cleared")
