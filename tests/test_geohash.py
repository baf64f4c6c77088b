# tests/test_geohash.py

"""Tests for geohash encoding and shard neighbourhoods."""

import pytest

from spatial import geohash


class TestEncodeDecode:
    def test_known_value(self):
        assert geohash.encode(57.64911, 10.40744, 11) == "u4pruydqqvj"

    def test_prefix_of_longer_hash(self):
        long_hash = geohash.encode(40.381, -3.655, 9)
        assert geohash.encode(40.381, -3.655, 6) == long_hash[:6]

    def test_decode_contains_point(self):
        lat, lon, lat_err, lon_err = geohash.decode(geohash.encode(40.381, -3.655, 6))
        assert abs(lat - 40.381) <= lat_err
        assert abs(lon - (-3.655)) <= lon_err

    def test_bounds_order(self):
        min_lat, min_lon, max_lat, max_lon = geohash.bounds("ezjm")
        assert min_lat < max_lat
        assert min_lon < max_lon

    def test_invalid_character(self):
        with pytest.raises(ValueError):
            geohash.bounds("ezja")


class TestNeighbors:
    def test_center_first_and_nine_keys(self):
        center = geohash.encode(40.381, -3.655, 6)
        keys = geohash.neighbors(center)

        assert keys[0] == center
        assert len(keys) == 9
        assert len(set(keys)) == 9
        assert all(len(key) == 6 for key in keys)

    def test_neighbors_surround_center(self):
        center = geohash.encode(40.381, -3.655, 5)
        lat, lon, lat_err, lon_err = geohash.decode(center)

        for key in geohash.neighbors(center)[1:]:
            n_lat, n_lon, _, _ = geohash.decode(key)
            assert abs(n_lat - lat) == pytest.approx(0, abs=1e-9) or abs(
                n_lat - lat
            ) == pytest.approx(2 * lat_err)
            assert abs(n_lon - lon) == pytest.approx(0, abs=1e-9) or abs(
                n_lon - lon
            ) == pytest.approx(2 * lon_err)

    def test_wraps_antimeridian(self):
        keys = geohash.neighbors(geohash.encode(0.0, 179.999, 4))
        assert len(keys) == 9
        assert any(geohash.decode(key)[1] < 0 for key in keys)


class TestShardHelpers:
    def test_precision_for_span(self):
        assert geohash.precision_for_span(0.04) == 5
        assert geohash.precision_for_span(0.2) == 5
        assert geohash.precision_for_span(0.0399) == 6

    def test_prefix_upper_bound(self):
        upper = geohash.prefix_upper_bound("ezjm")
        assert "ezjm" < upper
        assert "ezjmzzzz" < upper
        assert "ezjn" > upper
