"""
Localization Module: geodesy and local tangent plane conversion.

Components:
- LocalTangentPlane: geodetic <-> local East-North frame
- Great-circle helpers: haversine_m, initial_bearing_deg, destination_point
- Angle helpers: normalize_angle_360/180, circular_mean_deg, circular_std_deg
"""

from .coordinate_converter import (
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

__all__ = [
    'EARTH_RADIUS_M',
    'LocalTangentPlane',
    'circular_mean_deg',
    'circular_std_deg',
    'destination_point',
    'haversine_m',
    'initial_bearing_deg',
    'normalize_angle_180',
    'normalize_angle_360',
    'normalize_longitude',
    'weighted_percentile',
]
