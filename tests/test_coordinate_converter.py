"""
Unit tests for geodesy and local tangent plane conversion.

Tests cover:
- Angle and longitude normalisation
- Great-circle distance, bearing and destination point
- Circular statistics and weighted percentile
- Geodetic <-> ENU conversion, round trips and vectorised variants
- Antimeridian handling and re-anchoring

Reference geometry: spherical Earth (WGS84 equatorial radius) for great
circles, WGS84 curvature radii for the tangent plane, Hong Kong area origin.
"""

import math

import numpy as np
import pytest

from mesh_predict.localization import (
    EARTH_RADIUS_M,
    LocalTangentPlane,
    circular_mean_deg,
    circular_std_deg,
    destination_point,
    haversine_m,
    initial_bearing_deg,
    normalize_angle_180,
    normalize_angle_360,
    normalize_longitude,
    weighted_percentile,
)

ORIGIN = (22.2900, 114.1700)


class TestAngleNormalization:
    """Tests for angle wrapping helpers."""

    @pytest.mark.parametrize("angle,expected", [
        (0.0, 0.0), (360.0, 0.0), (-90.0, 270.0), (725.0, 5.0),
    ])
    def test_normalize_360(self, angle, expected):
        """Angles wrap into [0, 360)."""
        assert normalize_angle_360(angle) == pytest.approx(expected)

    @pytest.mark.parametrize("angle,expected", [
        (190.0, -170.0), (-190.0, 170.0), (180.0, -180.0), (45.0, 45.0),
    ])
    def test_normalize_180(self, angle, expected):
        """Angles wrap into [-180, 180)."""
        assert normalize_angle_180(angle) == pytest.approx(expected)

    def test_normalize_longitude(self):
        """In-range longitudes pass through; others wrap."""
        assert normalize_longitude(180.0) == 180.0
        assert normalize_longitude(190.0) == pytest.approx(-170.0)


class TestGreatCircle:
    """Tests for great-circle helpers."""

    def test_one_degree_of_latitude(self):
        """One degree along a meridian is R * pi / 180."""
        expected = EARTH_RADIUS_M * math.pi / 180.0
        assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(expected, rel=1e-12)

    def test_zero_distance(self):
        """Identical points are 0 m apart."""
        assert haversine_m(*ORIGIN, *ORIGIN) == 0.0

    @pytest.mark.parametrize("lat2,lon2,expected", [
        (1.0, 0.0, 0.0), (0.0, 1.0, 90.0), (-1.0, 0.0, 180.0), (0.0, -1.0, 270.0),
    ])
    def test_cardinal_bearings(self, lat2, lon2, expected):
        """Bearings from the equator/prime meridian to cardinal neighbours."""
        assert initial_bearing_deg(0.0, 0.0, lat2, lon2) == pytest.approx(expected, abs=1e-9)

    def test_destination_consistent_with_distance_and_bearing(self):
        """destination_point inverts haversine_m and initial_bearing_deg."""
        lat, lon = destination_point(*ORIGIN, 1000.0, 45.0)

        assert haversine_m(*ORIGIN, lat, lon) == pytest.approx(1000.0, abs=1e-6)
        assert initial_bearing_deg(*ORIGIN, lat, lon) == pytest.approx(45.0, abs=1e-6)

    def test_destination_zero_distance(self):
        """Zero distance returns the start point unchanged."""
        assert destination_point(*ORIGIN, 0.0, 123.0) == ORIGIN

    def test_destination_wraps_longitude(self):
        """Crossing the antimeridian yields a wrapped longitude."""
        lat, lon = destination_point(0.0, 179.99, 5000.0, 90.0)
        assert -180.0 <= lon <= 180.0
        assert lon < 0.0


class TestCircularStatistics:
    """Tests for circular mean/std and weighted percentile."""

    def test_circular_mean_across_north(self):
        """Mean of 350 and 10 degrees is north, not 180."""
        mean = circular_mean_deg([350.0, 10.0])
        assert min(mean, 360.0 - mean) < 1e-9

    def test_circular_mean_weighted(self):
        """Weights pull the mean toward the heavier angle."""
        mean = circular_mean_deg([0.0, 90.0], weights=[3.0, 1.0])
        assert 0.0 < mean < 45.0

    def test_circular_std_identical(self):
        """Identical headings have no spread."""
        assert circular_std_deg([42.0] * 5) == pytest.approx(0.0, abs=1e-5)

    def test_circular_std_opposed(self):
        """Opposed headings have very large spread."""
        assert circular_std_deg([0.0, 180.0]) > 100.0

    def test_circular_std_empty(self):
        """Empty input has zero spread."""
        assert circular_std_deg([]) == 0.0

    def test_weighted_percentile_uniform(self):
        """Uniform weights give the cumulative-weight median."""
        assert weighted_percentile([4.0, 1.0, 3.0, 2.0], [1.0] * 4, 0.5) == 2.0

    def test_weighted_percentile_heavy_weight(self):
        """A dominant weight pins the percentile to its value."""
        assert weighted_percentile([1.0, 2.0, 100.0], [0.01, 0.01, 0.98], 0.5) == 100.0

    def test_weighted_percentile_zero_weights(self):
        """Zero total weight falls back to the unweighted percentile."""
        assert weighted_percentile([1.0, 2.0, 3.0, 4.0], [0.0] * 4, 0.5) == pytest.approx(2.5)


class TestLocalTangentPlane:
    """Tests for geodetic <-> ENU conversion."""

    def test_origin_maps_to_zero(self):
        """The origin is (0, 0) in its own plane."""
        plane = LocalTangentPlane(*ORIGIN)
        e, n = plane.to_enu(*ORIGIN)

        assert e == pytest.approx(0.0, abs=1e-9)
        assert n == pytest.approx(0.0, abs=1e-9)
        assert plane.origin == ORIGIN

    def test_round_trip(self):
        """to_geodetic inverts to_enu."""
        plane = LocalTangentPlane(*ORIGIN)
        lat, lon = 22.2991, 114.1623

        back = plane.to_geodetic(*plane.to_enu(lat, lon))

        assert back[0] == pytest.approx(lat, abs=1e-10)
        assert back[1] == pytest.approx(lon, abs=1e-10)

    @pytest.mark.parametrize("bearing", [0.0, 90.0, 180.0, 270.0])
    def test_local_distance_matches_great_circle(self, bearing):
        """A 1 km offset measures close to 1 km in the plane."""
        plane = LocalTangentPlane(*ORIGIN)
        lat, lon = destination_point(*ORIGIN, 1000.0, bearing)

        e, n = plane.to_enu(lat, lon)

        assert math.hypot(e, n) == pytest.approx(1000.0, rel=0.01)

    def test_axes_orientation(self):
        """North offsets are +n, east offsets are +e."""
        plane = LocalTangentPlane(*ORIGIN)

        e, n = plane.to_enu(*destination_point(*ORIGIN, 100.0, 0.0))
        assert n > 99.0 and abs(e) < 1e-6

        e, n = plane.to_enu(*destination_point(*ORIGIN, 100.0, 90.0))
        assert e > 99.0 and abs(n) < 0.01

    def test_arrays_match_scalar(self):
        """Vectorised conversions agree with the scalar versions."""
        plane = LocalTangentPlane(*ORIGIN)
        lats = np.array([22.28, 22.29, 22.30])
        lons = np.array([114.16, 114.17, 114.18])

        east, north = plane.to_enu_arrays(lats, lons)
        for i in range(3):
            e, n = plane.to_enu(lats[i], lons[i])
            assert east[i] == pytest.approx(e)
            assert north[i] == pytest.approx(n)

        back_lats, back_lons = plane.to_geodetic_arrays(east, north)
        np.testing.assert_allclose(back_lats, lats, atol=1e-10)
        np.testing.assert_allclose(back_lons, lons, atol=1e-10)

    def test_antimeridian(self):
        """Points across the antimeridian are close, not a world away."""
        plane = LocalTangentPlane(0.0, 179.9)

        e, n = plane.to_enu(0.0, -179.9)

        assert e == pytest.approx(22_264.0, rel=0.01)
        lat, lon = plane.to_geodetic(e, n)
        assert lon == pytest.approx(-179.9, abs=1e-9)

    def test_reanchored(self):
        """Re-anchoring moves the origin; geodetic positions are preserved."""
        plane = LocalTangentPlane(*ORIGIN)
        target = destination_point(*ORIGIN, 8000.0, 60.0)
        point = plane.to_geodetic(7000.0, 3000.0)

        moved = plane.reanchored(*target)

        assert moved.origin == target
        assert plane.distance_from_origin_m(*target) == pytest.approx(8000.0, abs=1e-6)
        lat, lon = moved.to_geodetic(*moved.to_enu(*point))
        assert lat == pytest.approx(point[0], abs=1e-10)
        assert lon == pytest.approx(point[1], abs=1e-10)
