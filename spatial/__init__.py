# spatial/__init__.py

"""Spatial layer - grid indexing, geohash shards, and route resolution."""

from . import geohash
from .grid import (
    CELL_SIZE_DEG,
    Coordinate,
    GridIndex,
    cell_id,
    great_circle_distance_meters,
    parse_cell_id,
)
from .index import CellIndex
from .path import PathResolution, PathResolver, SegmentAnomaly
from .route import RoutePoint, interpolate, is_usable, validate_point

__all__ = [
    "CELL_SIZE_DEG",
    "CellIndex",
    "Coordinate",
    "GridIndex",
    "PathResolution",
    "PathResolver",
    "RoutePoint",
    "SegmentAnomaly",
    "cell_id",
    "geohash",
    "great_circle_distance_meters",
    "interpolate",
    "is_usable",
    "parse_cell_id",
    "validate_point",
]
