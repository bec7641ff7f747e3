"""
Location Sample Input Schema.

A single position report for a peer as received from the mesh. Samples
arrive at irregular intervals and may be out of order; the history store
rejects the stale ones.

Reports from GPS devices may also carry the receiver's own ground speed and
course over ground, and the GPS fix time. Motion helpers prefer those over
values derived from position differences.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math


@dataclass(frozen=True)
class LocationSample:
    """
    Position report for one peer.

    Attributes:
        peer_id: Peer identifier
        latitude: Latitude in degrees [-90, 90]
        longitude: Longitude in degrees [-180, 180]
        timestamp: Unix epoch milliseconds (receive time, orders the history)
        accuracy_m: Reported horizontal accuracy in meters (optional)
        ground_speed_mps: Device-reported ground speed in m/s (optional)
        ground_track_deg: Device-reported course over ground in degrees (optional)
        gps_timestamp: GPS fix time, Unix epoch milliseconds (optional)
    """

    peer_id: str
    latitude: float
    longitude: float
    timestamp: int
    accuracy_m: Optional[float] = None
    ground_speed_mps: Optional[float] = None
    ground_track_deg: Optional[float] = None
    gps_timestamp: Optional[int] = None

    def __post_init__(self):
        """Validate sample."""
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            raise ValueError(f"Non-finite coordinates: ({self.latitude}, {self.longitude})")

        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude must be in [-90,90]: {self.latitude}")

        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude must be in [-180,180]: {self.longitude}")

        if self.accuracy_m is not None and (not math.isfinite(self.accuracy_m) or self.accuracy_m < 0):
            raise ValueError(f"Accuracy must be finite and non-negative: {self.accuracy_m}")

        if self.ground_speed_mps is not None and (
                not math.isfinite(self.ground_speed_mps) or self.ground_speed_mps < 0):
            raise ValueError(f"Ground speed must be finite and non-negative: {self.ground_speed_mps}")

        if self.ground_track_deg is not None and not math.isfinite(self.ground_track_deg):
            raise ValueError(f"Ground track must be finite: {self.ground_track_deg}")

    @property
    def time_s(self) -> float:
        """Timestamp in seconds."""
        return self.timestamp / 1000.0

    @property
    def best_timestamp(self) -> int:
        """GPS fix time when reported, else receive time (ms)."""
        return self.gps_timestamp if self.gps_timestamp is not None else self.timestamp

    @property
    def has_velocity(self) -> bool:
        """True if the device reported both ground speed and track."""
        return self.ground_speed_mps is not None and self.ground_track_deg is not None

    @property
    def device_velocity(self) -> Optional[Tuple[float, float]]:
        """(speed m/s, course deg in [0, 360)) as reported by the device, or None."""
        if not self.has_velocity:
            return None
        return self.ground_speed_mps, self.ground_track_deg % 360.0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'peer_id': self.peer_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'timestamp': self.timestamp,
            'accuracy_m': self.accuracy_m,
            'ground_speed_mps': self.ground_speed_mps,
            'ground_track_deg': self.ground_track_deg,
            'gps_timestamp': self.gps_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LocationSample':
        """Create from dictionary (raises KeyError/ValueError on bad input)."""
        def optional(key, convert):
            value = data.get(key)
            return convert(value) if value is not None else None

        return cls(
            peer_id=str(data['peer_id']),
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            timestamp=int(data['timestamp']),
            accuracy_m=optional('accuracy_m', float),
            ground_speed_mps=optional('ground_speed_mps', float),
            ground_track_deg=optional('ground_track_deg', float),
            gps_timestamp=optional('gps_timestamp', int),
        )
