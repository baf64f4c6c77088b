# spatial/geohash.py

"""Geohash encoding and shard neighborhoods for spatial subscriptions."""

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {char: index for index, char in enumerate(BASE32)}

# Precision used for zoomed-out and zoomed-in viewports
WIDE_PRECISION = 5
NARROW_PRECISION = 6


def encode(latitude: float, longitude: float, precision: int = 10) -> str:
    """Encode a coordinate into a geohash of the given precision."""
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars = []
    is_lon = True
    bit = 0
    ch = 0

    while len(chars) < precision:
        if is_lon:
            mid = (lon_range[0] + lon_range[1]) / 2
            if longitude > mid:
                ch |= 1 << (4 - bit)
                lon_range[0] = mid
            else:
                lon_range[1] = mid
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if latitude > mid:
                ch |= 1 << (4 - bit)
                lat_range[0] = mid
            else:
                lat_range[1] = mid

        is_lon = not is_lon
        if bit < 4:
            bit += 1
        else:
            chars.append(BASE32[ch])
            bit = 0
            ch = 0

    return "".join(chars)


def bounds(geohash: str) -> tuple[float, float, float, float]:
    """Return (min_lat, min_lon, max_lat, max_lon) covered by a geohash.

    Raises:
        ValueError: If the geohash contains characters outside the alphabet
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    is_lon = True

    for char in geohash:
        try:
            cd = _DECODE_MAP[char]
        except KeyError:
            raise ValueError(f"Invalid geohash character {char!r} in {geohash!r}") from None
        for mask in (16, 8, 4, 2, 1):
            target = lon_range if is_lon else lat_range
            mid = (target[0] + target[1]) / 2
            if cd & mask:
                target[0] = mid
            else:
                target[1] = mid
            is_lon = not is_lon

    return lat_range[0], lon_range[0], lat_range[1], lon_range[1]


def decode(geohash: str) -> tuple[float, float, float, float]:
    """Decode a geohash into (lat, lon, lat_error, lon_error)."""
    min_lat, min_lon, max_lat, max_lon = bounds(geohash)
    lat = (min_lat + max_lat) / 2
    lon = (min_lon + max_lon) / 2
    return lat, lon, max_lat - lat, max_lon - lon


def _wrap_longitude(longitude: float) -> float:
    if longitude > 180.0:
        return longitude - 360.0
    if longitude < -180.0:
        return longitude + 360.0
    return longitude


def neighbors(geohash: str) -> list[str]:
    """Return the geohash itself followed by its 8 surrounding cells.

    Near the poles some neighbors collapse onto the same key; duplicates are
    removed while keeping order.
    """
    lat, lon, lat_err, lon_err = decode(geohash)
    precision = len(geohash)
    d_lat = lat_err * 2
    d_lon = lon_err * 2

    offsets = [
        (0, 0),
        (1, 0),  # n
        (-1, 0),  # s
        (0, 1),  # e
        (0, -1),  # w
        (1, 1),  # ne
        (1, -1),  # nw
        (-1, 1),  # se
        (-1, -1),  # sw
    ]

    result: list[str] = []
    for lat_step, lon_step in offsets:
        n_lat = lat + lat_step * d_lat
        if n_lat > 90.0 or n_lat < -90.0:
            continue
        n_lon = _wrap_longitude(lon + lon_step * d_lon)
        key = encode(n_lat, n_lon, precision)
        if key not in result:
            result.append(key)
    return result


def precision_for_span(span_degrees: float, wide_span_degrees: float = 0.04) -> int:
    """Pick a shard precision from a viewport span.

    Wide (zoomed-out) views use coarser shards so a handful of subscriptions
    still cover the screen.
    """
    return WIDE_PRECISION if span_degrees >= wide_span_degrees else NARROW_PRECISION


def prefix_upper_bound(prefix: str) -> str:
    """Exclusive upper bound for a lexicographic prefix range query."""
    # '{' sorts directly after 'z', the last geohash character
    return prefix + "{"
