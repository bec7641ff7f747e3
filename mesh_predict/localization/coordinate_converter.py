"""
Geodesy and local tangent plane (ENU) conversion.

All filter algebra runs in a local East-North frame anchored at a geodetic
origin. The conversion is the small-area linearisation using the WGS84
meridian (M) and prime-vertical (N) radii of curvature at the origin:

    e = N0 * cos(lat0) * dlon
    n = M0 * dlat

Valid to well under a meter within a few kilometers of the origin; callers
that track a moving peer re-anchor the origin before error grows (see
KalmanPredictorConfig.reanchor_distance_m).

Great-circle helpers (distance, bearing, destination) use a spherical Earth
with the WGS84 equatorial radius.
"""

import math
import logging
from typing import Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# WGS84 ellipsoid
WGS84_A = 6378137.0                        # Semi-major axis (m)
WGS84_F = 1.0 / 298.257223563              # Flattening
WGS84_E2 = 2 * WGS84_F - WGS84_F ** 2      # First eccentricity squared

EARTH_RADIUS_M = WGS84_A


def normalize_angle_360(angle_deg: float) -> float:
    """Normalize angle to [0, 360)."""
    normalized = angle_deg % 360.0
    # -1e-15 % 360 rounds to 360.0
    return 0.0 if normalized >= 360.0 else normalized


def normalize_angle_180(angle_deg: float) -> float:
    """Normalize angle to [-180, 180)."""
    return ((angle_deg + 180.0) % 360.0) - 180.0


def normalize_longitude(lon_deg: float) -> float:
    """Wrap longitude into [-180, 180]."""
    if -180.0 <= lon_deg <= 180.0:
        return lon_deg
    return normalize_angle_180(lon_deg)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2, degrees in [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlmb = math.radians(lon2 - lon1)
    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    return normalize_angle_360(math.degrees(math.atan2(y, x)))


def destination_point(lat: float, lon: float, distance_m: float, bearing_deg: float) -> Tuple[float, float]:
    """
    Point reached travelling distance_m along a great circle.

    Args:
        lat: Start latitude (deg)
        lon: Start longitude (deg)
        distance_m: Distance to travel (m)
        bearing_deg: Initial bearing (deg, clockwise from north)

    Returns:
        (lat, lon) of destination, longitude wrapped to [-180, 180]
    """
    if distance_m == 0.0:
        return lat, lon

    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    phi1 = math.radians(lat)
    lmb1 = math.radians(lon)

    sin_phi2 = math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    phi2 = math.asin(max(-1.0, min(1.0, sin_phi2)))
    lmb2 = lmb1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )

    return math.degrees(phi2), normalize_longitude(math.degrees(lmb2))


def circular_mean_deg(angles_deg: Sequence[float], weights: Optional[Sequence[float]] = None) -> float:
    """Weighted circular mean of angles, degrees in [0, 360)."""
    angles = np.radians(np.asarray(angles_deg, dtype=float))
    w = np.ones_like(angles) if weights is None else np.asarray(weights, dtype=float)
    s = float(np.sum(w * np.sin(angles)))
    c = float(np.sum(w * np.cos(angles)))
    return normalize_angle_360(math.degrees(math.atan2(s, c)))


def circular_std_deg(angles_deg: Sequence[float]) -> float:
    """
    Circular standard deviation of angles in degrees.

    Uses sqrt(-2 ln R) with R the mean resultant length; 0 for identical
    angles, growing without bound as headings spread uniformly.
    """
    if len(angles_deg) == 0:
        return 0.0
    angles = np.radians(np.asarray(angles_deg, dtype=float))
    r = math.hypot(float(np.mean(np.sin(angles))), float(np.mean(np.cos(angles))))
    r = min(max(r, 1e-12), 1.0)
    return math.degrees(math.sqrt(-2.0 * math.log(r)))


def weighted_percentile(values: Sequence[float], weights: Sequence[float], p: float) -> float:
    """
    Weighted percentile (p in [0, 1]) by cumulative weight.

    Falls back to the unweighted percentile when the weights sum to zero.
    """
    vals = np.asarray(values, dtype=float)
    if vals.size == 0:
        return 0.0
    w = np.asarray(weights, dtype=float)
    total = float(np.sum(w))
    if total <= 0.0 or not np.isfinite(total):
        return float(np.percentile(vals, p * 100.0))

    order = np.argsort(vals)
    cumulative = np.cumsum(w[order]) / total
    idx = int(np.searchsorted(cumulative, p, side='left'))
    return float(vals[order][min(idx, vals.size - 1)])


class LocalTangentPlane:
    """
    Local East-North frame anchored at a geodetic origin.

    Usage:
        plane = LocalTangentPlane(22.29, 114.17)
        e, n = plane.to_enu(22.2909, 114.1710)
        lat, lon = plane.to_geodetic(e, n)
    """

    def __init__(self, origin_lat: float, origin_lon: float):
        self.origin_lat = origin_lat
        self.origin_lon = origin_lon

        lat0 = math.radians(origin_lat)
        sin_lat0 = math.sin(lat0)
        denom = 1 - WGS84_E2 * sin_lat0 ** 2
        prime_vertical = WGS84_A / math.sqrt(denom)
        meridian = WGS84_A * (1 - WGS84_E2) / (denom ** 1.5)

        # Meters per radian along each axis
        self._m_per_rad_east = prime_vertical * max(math.cos(lat0), 1e-9)
        self._m_per_rad_north = meridian

    @property
    def origin(self) -> Tuple[float, float]:
        return (self.origin_lat, self.origin_lon)

    def to_enu(self, lat: float, lon: float) -> Tuple[float, float]:
        """Geodetic (deg) to local (east, north) in meters."""
        dlat = math.radians(lat - self.origin_lat)
        dlon = math.radians(normalize_angle_180(lon - self.origin_lon))
        return (self._m_per_rad_east * dlon, self._m_per_rad_north * dlat)

    def to_geodetic(self, east: float, north: float) -> Tuple[float, float]:
        """Local (east, north) in meters to geodetic (deg)."""
        lat = self.origin_lat + math.degrees(north / self._m_per_rad_north)
        lon = self.origin_lon + math.degrees(east / self._m_per_rad_east)
        return (lat, normalize_longitude(lon))

    def to_enu_arrays(self, lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised to_enu for particle clouds."""
        dlat = np.radians(np.asarray(lats, dtype=float) - self.origin_lat)
        dlon_deg = ((np.asarray(lons, dtype=float) - self.origin_lon + 180.0) % 360.0) - 180.0
        return (self._m_per_rad_east * np.radians(dlon_deg), self._m_per_rad_north * dlat)

    def to_geodetic_arrays(self, east: np.ndarray, north: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised to_geodetic for particle clouds."""
        lats = self.origin_lat + np.degrees(np.asarray(north, dtype=float) / self._m_per_rad_north)
        lons = self.origin_lon + np.degrees(np.asarray(east, dtype=float) / self._m_per_rad_east)
        lons = np.where(np.abs(lons) > 180.0, ((lons + 180.0) % 360.0) - 180.0, lons)
        return lats, lons

    def distance_from_origin_m(self, lat: float, lon: float) -> float:
        """Great-circle distance from the origin in meters."""
        return haversine_m(self.origin_lat, self.origin_lon, lat, lon)

    def reanchored(self, lat: float, lon: float) -> 'LocalTangentPlane':
        """New plane anchored at (lat, lon)."""
        logger.debug(
            f"Re-anchoring tangent plane from ({self.origin_lat:.6f}, {self.origin_lon:.6f}) "
            f"to ({lat:.6f}, {lon:.6f})"
        )
        return LocalTangentPlane(lat, lon)
