# spatial/route.py

"""Route point schema utilities for the spatial layer."""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from territory.exceptions import InvalidRouteError

from .grid import Coordinate


@dataclass(frozen=True)
class RoutePoint:
    """A single timestamped GPS fix. Routes are append-only lists of these."""

    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    altitude: Optional[float] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "altitude": self.altitude,
        }


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise InvalidRouteError(f"Invalid timestamp type: {type(value)}")


def validate_point(point: Any) -> RoutePoint:
    """Normalize route point data to a RoutePoint.

    Args:
        point: RoutePoint, (lat, lon[, timestamp]) sequence, or dict with
            latitude/longitude keys (lat/lon accepted too)

    Returns:
        Normalized RoutePoint (coordinates may still be non-finite)

    Raises:
        InvalidRouteError: If the point format is invalid
    """
    if isinstance(point, RoutePoint):
        return point
    try:
        if isinstance(point, (list, tuple)):
            if len(point) < 2 or len(point) > 4:
                raise InvalidRouteError(
                    f"Route point must have 2 to 4 values, got {len(point)}"
                )
            timestamp = _parse_timestamp(point[2]) if len(point) > 2 else None
            altitude = float(point[3]) if len(point) > 3 and point[3] is not None else None
            return RoutePoint(float(point[0]), float(point[1]), timestamp, altitude)
        if isinstance(point, dict):
            lat = point.get("latitude", point.get("lat"))
            lon = point.get("longitude", point.get("lon"))
            if lat is None or lon is None:
                raise InvalidRouteError("Route point dict must have latitude and longitude")
            altitude = point.get("altitude")
            return RoutePoint(
                float(lat),
                float(lon),
                _parse_timestamp(point.get("timestamp")),
                float(altitude) if altitude is not None else None,
            )
    except (TypeError, ValueError) as e:
        raise InvalidRouteError(f"Invalid route point {point!r}: {e}") from e
    raise InvalidRouteError(f"Invalid route point type: {type(point)}")


def is_usable(point: RoutePoint) -> bool:
    """True when the point has finite, in-range coordinates."""
    lat, lon = point.latitude, point.longitude
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def interpolate(start: Coordinate, end: Coordinate, fraction: float) -> Coordinate:
    """Linear lat/lon interpolation (not geodesic; fine at cell scale)."""
    return Coordinate(
        start.latitude + (end.latitude - start.latitude) * fraction,
        start.longitude + (end.longitude - start.longitude) * fraction,
    )


def seconds_between(a: RoutePoint, b: RoutePoint) -> Optional[float]:
    if a.timestamp is None or b.timestamp is None:
        return None
    return (b.timestamp - a.timestamp).total_seconds()
