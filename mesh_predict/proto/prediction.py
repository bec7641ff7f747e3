"""
Prediction Output Schema.

Defines the predictor outputs and the per-call configuration:
- PredictionModel / MovementPattern enums
- VelocityVector, KalmanState, Particle
- LocationPrediction (tagged by prediction_model; carries the matching
  Kalman state or particle population for cone generation)
- PredictionConfig
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
import math

import numpy as np


class PredictionModel(Enum):
    """Motion model used to produce a prediction."""

    LINEAR = 'LINEAR'
    KALMAN_FILTER = 'KALMAN_FILTER'
    PARTICLE_FILTER = 'PARTICLE_FILTER'


class MovementPattern(Enum):
    """Coarse movement class used to calibrate process noise."""

    WALKING_HIKING = 'WALKING_HIKING'
    URBAN_DRIVING = 'URBAN_DRIVING'
    HIGHWAY_DRIVING = 'HIGHWAY_DRIVING'
    BOATING = 'BOATING'
    STATIONARY = 'STATIONARY'
    UNKNOWN = 'UNKNOWN'


@dataclass(frozen=True)
class PredictionConfig:
    """
    Per-call prediction configuration (supplied externally, hot-swappable).

    Attributes:
        prediction_horizon_minutes: How far ahead to predict
        min_history_entries: Minimum samples in window for a non-zero prediction
        max_history_age_minutes: Samples older than this are ignored
    """

    prediction_horizon_minutes: float = 5.0
    min_history_entries: int = 3
    max_history_age_minutes: float = 30.0

    def __post_init__(self):
        if self.prediction_horizon_minutes <= 0:
            raise ValueError(f"Horizon must be positive: {self.prediction_horizon_minutes}")
        if self.min_history_entries < 2:
            raise ValueError(f"min_history_entries must be >= 2: {self.min_history_entries}")
        if self.max_history_age_minutes <= 0:
            raise ValueError(f"max_history_age_minutes must be positive: {self.max_history_age_minutes}")

    @property
    def horizon_ms(self) -> int:
        return int(self.prediction_horizon_minutes * 60_000)

    def to_dict(self) -> dict:
        return {
            'prediction_horizon_minutes': self.prediction_horizon_minutes,
            'min_history_entries': self.min_history_entries,
            'max_history_age_minutes': self.max_history_age_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PredictionConfig':
        defaults = cls()
        return cls(
            prediction_horizon_minutes=float(data.get('prediction_horizon_minutes', defaults.prediction_horizon_minutes)),
            min_history_entries=int(data.get('min_history_entries', defaults.min_history_entries)),
            max_history_age_minutes=float(data.get('max_history_age_minutes', defaults.max_history_age_minutes)),
        )


@dataclass(frozen=True)
class VelocityVector:
    """
    Ground velocity.

    Attributes:
        speed: Speed in m/s
        heading: Course over ground in degrees [0, 360)
        heading_uncertainty: 1-sigma heading uncertainty in degrees
    """

    speed: float
    heading: float
    heading_uncertainty: float = 0.0

    @property
    def v_east(self) -> float:
        return self.speed * math.sin(math.radians(self.heading))

    @property
    def v_north(self) -> float:
        return self.speed * math.cos(math.radians(self.heading))

    def to_dict(self) -> dict:
        return {
            'speed': self.speed,
            'heading': self.heading,
            'heading_uncertainty': self.heading_uncertainty,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'VelocityVector':
        return cls(
            speed=float(data['speed']),
            heading=float(data['heading']),
            heading_uncertainty=float(data.get('heading_uncertainty', 0.0)),
        )


@dataclass(frozen=True)
class KalmanState:
    """
    Constant-velocity filter state in a local tangent plane.

    Attributes:
        origin_lat, origin_lon: Tangent plane origin (deg)
        east, north: Position relative to origin (m)
        v_east, v_north: Velocity (m/s)
        covariance: Row-major 4x4 covariance over [E, N, vE, vN]
        last_update_time: Time of the last measurement update (ms)
        process_noise_density: Acceleration spectral density used to propagate (m^2/s^3)
    """

    origin_lat: float
    origin_lon: float
    east: float
    north: float
    v_east: float
    v_north: float
    covariance: Tuple[float, ...]
    last_update_time: int
    process_noise_density: float = 0.0

    def __post_init__(self):
        if len(self.covariance) != 16:
            raise ValueError(f"Covariance must have 16 elements: {len(self.covariance)}")

    def state_vector(self) -> np.ndarray:
        return np.array([self.east, self.north, self.v_east, self.v_north], dtype=float)

    def covariance_matrix(self) -> np.ndarray:
        return np.array(self.covariance, dtype=float).reshape(4, 4)

    @classmethod
    def from_arrays(cls, origin: Tuple[float, float], x: np.ndarray, P: np.ndarray,
                    last_update_time: int, process_noise_density: float = 0.0) -> 'KalmanState':
        """Build from numpy state vector and covariance."""
        return cls(
            origin_lat=origin[0],
            origin_lon=origin[1],
            east=float(x[0]),
            north=float(x[1]),
            v_east=float(x[2]),
            v_north=float(x[3]),
            covariance=tuple(float(v) for v in np.asarray(P, dtype=float).reshape(16)),
            last_update_time=int(last_update_time),
            process_noise_density=float(process_noise_density),
        )

    def to_dict(self) -> dict:
        return {
            'origin_lat': self.origin_lat,
            'origin_lon': self.origin_lon,
            'east': self.east,
            'north': self.north,
            'v_east': self.v_east,
            'v_north': self.v_north,
            'covariance': list(self.covariance),
            'last_update_time': self.last_update_time,
            'process_noise_density': self.process_noise_density,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'KalmanState':
        return cls(
            origin_lat=float(data['origin_lat']),
            origin_lon=float(data['origin_lon']),
            east=float(data['east']),
            north=float(data['north']),
            v_east=float(data['v_east']),
            v_north=float(data['v_north']),
            covariance=tuple(float(v) for v in data['covariance']),
            last_update_time=int(data['last_update_time']),
            process_noise_density=float(data.get('process_noise_density', 0.0)),
        )


@dataclass(frozen=True)
class Particle:
    """One weighted hypothesis of a particle filter population."""

    latitude: float
    longitude: float
    v_east: float
    v_north: float
    weight: float
    log_weight: float

    def to_dict(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'v_east': self.v_east,
            'v_north': self.v_north,
            'weight': self.weight,
            'log_weight': self.log_weight,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Particle':
        return cls(**{k: float(data[k]) for k in
                      ('latitude', 'longitude', 'v_east', 'v_north', 'weight', 'log_weight')})


@dataclass(frozen=True)
class LocationPrediction:
    """
    Predicted peer position at a target time.

    Attributes:
        peer_id: Peer identifier
        latitude, longitude: Predicted position (deg)
        predicted_timestamp: When the prediction was made (ms)
        target_timestamp: Time the prediction refers to (ms)
        confidence: Confidence in [0, 1]; 0 means no usable prediction
        velocity: Estimated velocity (optional)
        prediction_model: Model that produced this prediction
        kalman_state: Filter state (KALMAN_FILTER predictions only)
        particles: Propagated population (PARTICLE_FILTER predictions only)
        movement_pattern: Classification used for noise calibration
        noise_scale: Classifier noise scale used
        last_known_lat, last_known_lon: Newest sample position (cone apex)
    """

    peer_id: str
    latitude: float
    longitude: float
    predicted_timestamp: int
    target_timestamp: int
    confidence: float
    prediction_model: PredictionModel
    velocity: Optional[VelocityVector] = None
    kalman_state: Optional[KalmanState] = None
    particles: Optional[Tuple[Particle, ...]] = None
    movement_pattern: MovementPattern = MovementPattern.UNKNOWN
    noise_scale: float = 1.0
    last_known_lat: Optional[float] = None
    last_known_lon: Optional[float] = None
    last_sample_timestamp: Optional[int] = None

    def __post_init__(self):
        """Validate prediction."""
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be in [0,1]: {self.confidence}")

        if self.kalman_state is not None and self.prediction_model != PredictionModel.KALMAN_FILTER:
            raise ValueError(f"Kalman state attached to {self.prediction_model.name} prediction")

        if self.particles is not None and self.prediction_model != PredictionModel.PARTICLE_FILTER:
            raise ValueError(f"Particles attached to {self.prediction_model.name} prediction")

    @property
    def is_valid(self) -> bool:
        """True when the prediction carries usable information."""
        return self.confidence > 0.0

    @property
    def horizon_s(self) -> float:
        """Seconds from the newest sample to the target."""
        base = self.last_sample_timestamp if self.last_sample_timestamp is not None else self.predicted_timestamp
        return max(0.0, (self.target_timestamp - base) / 1000.0)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'peer_id': self.peer_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'predicted_timestamp': self.predicted_timestamp,
            'target_timestamp': self.target_timestamp,
            'confidence': self.confidence,
            'prediction_model': self.prediction_model.name,
            'velocity': self.velocity.to_dict() if self.velocity else None,
            'kalman_state': self.kalman_state.to_dict() if self.kalman_state else None,
            'particles': [p.to_dict() for p in self.particles] if self.particles is not None else None,
            'movement_pattern': self.movement_pattern.name,
            'noise_scale': self.noise_scale,
            'last_known_lat': self.last_known_lat,
            'last_known_lon': self.last_known_lon,
            'last_sample_timestamp': self.last_sample_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LocationPrediction':
        velocity = data.get('velocity')
        kalman_state = data.get('kalman_state')
        particles = data.get('particles')
        return cls(
            peer_id=str(data['peer_id']),
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            predicted_timestamp=int(data['predicted_timestamp']),
            target_timestamp=int(data['target_timestamp']),
            confidence=float(data['confidence']),
            prediction_model=PredictionModel[data['prediction_model']],
            velocity=VelocityVector.from_dict(velocity) if velocity else None,
            kalman_state=KalmanState.from_dict(kalman_state) if kalman_state else None,
            particles=tuple(Particle.from_dict(p) for p in particles) if particles is not None else None,
            movement_pattern=MovementPattern[data.get('movement_pattern', 'UNKNOWN')],
            noise_scale=float(data.get('noise_scale', 1.0)),
            last_known_lat=data.get('last_known_lat'),
            last_known_lon=data.get('last_known_lon'),
            last_sample_timestamp=data.get('last_sample_timestamp'),
        )


def create_zero_confidence(peer_id: str, model: PredictionModel, now_ms: int,
                           target_timestamp: int,
                           last_known: Optional[Tuple[float, float]] = None,
                           last_sample_timestamp: Optional[int] = None) -> LocationPrediction:
    """
    Create a zero-confidence prediction (not enough data to predict).

    Position is the last known position when available, else (0, 0).
    """
    lat, lon = last_known if last_known is not None else (0.0, 0.0)
    return LocationPrediction(
        peer_id=peer_id,
        latitude=lat,
        longitude=lon,
        predicted_timestamp=now_ms,
        target_timestamp=target_timestamp,
        confidence=0.0,
        prediction_model=model,
        last_known_lat=last_known[0] if last_known is not None else None,
        last_known_lon=last_known[1] if last_known is not None else None,
        last_sample_timestamp=last_sample_timestamp,
    )
