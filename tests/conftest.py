"""
Pytest configuration and shared fixtures for mesh peer location prediction tests.

This module provides reusable fixtures for building synthetic peer tracks,
controllable clocks, prediction configs and fully wired engines.
"""

import sys
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mesh_predict.domain import create_default_engine
from mesh_predict.localization import destination_point
from mesh_predict.metrics import reset_metrics
from mesh_predict.prediction import ParticlePredictorConfig
from mesh_predict.proto import LocationSample, PredictionConfig, PredictionModel

# 2023-11-14T22:13:20Z
T0_MS = 1_700_000_000_000

BASE_LAT = 22.2900
BASE_LON = 114.1700


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


# =============================================================================
# Clock Fixtures
# =============================================================================


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now_ms: int = T0_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float):
        self.now_ms += int(seconds * 1000)

    def set(self, now_ms: int):
        self.now_ms = now_ms


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at T0, advanced explicitly by tests."""
    return FakeClock()


# =============================================================================
# Track Fixtures
# =============================================================================


def build_track(
    peer_id: str = "peer-1",
    n: int = 10,
    interval_s: float = 10.0,
    speed_mps: float = 1.4,
    heading_deg: float = 0.0,
    start_ms: int = T0_MS,
    lat: float = BASE_LAT,
    lon: float = BASE_LON,
    accuracy_m: Optional[float] = 5.0,
    noise_m: float = 0.0,
    heading_jitter_deg: float = 0.0,
    speed_jitter_mps: float = 0.0,
    seed: int = 0,
) -> List[LocationSample]:
    """
    Generate a chronological track.

    The true path moves at speed_mps along heading_deg; jitter perturbs the
    heading/speed per step and noise_m perturbs the reported position.

    Returns:
        List of LocationSample, oldest first.
    """
    rng = np.random.default_rng(seed)
    samples = []
    timestamp = start_ms
    for i in range(n):
        obs_lat, obs_lon = lat, lon
        if noise_m > 0:
            d = abs(float(rng.normal(0.0, noise_m)))
            obs_lat, obs_lon = destination_point(lat, lon, d, float(rng.uniform(0.0, 360.0)))
        samples.append(LocationSample(peer_id, obs_lat, obs_lon, timestamp, accuracy_m))

        step_heading = heading_deg + (float(rng.normal(0.0, heading_jitter_deg)) if heading_jitter_deg else 0.0)
        step_speed = max(0.0, speed_mps + (float(rng.normal(0.0, speed_jitter_mps)) if speed_jitter_mps else 0.0))
        lat, lon = destination_point(lat, lon, step_speed * interval_s, step_heading)
        timestamp += int(interval_s * 1000)
    return samples


@pytest.fixture
def make_track() -> Callable[..., List[LocationSample]]:
    """Factory for synthetic tracks (see build_track)."""
    return build_track


@pytest.fixture
def walking_track() -> List[LocationSample]:
    """Ten samples walking due north at 1.4 m/s, 10 s apart."""
    return build_track(speed_mps=1.4, heading_deg=0.0)


@pytest.fixture
def highway_track() -> List[LocationSample]:
    """Twenty samples at 30 m/s due east on a straight road."""
    return build_track(peer_id="car-1", n=20, speed_mps=30.0, heading_deg=90.0)


@pytest.fixture
def stationary_track() -> List[LocationSample]:
    """Ten identical positions."""
    return build_track(peer_id="still-1", speed_mps=0.0)


@pytest.fixture
def erratic_track() -> List[LocationSample]:
    """Ten samples with strongly varying heading and speed."""
    return build_track(
        peer_id="erratic-1", speed_mps=8.0, heading_jitter_deg=90.0,
        speed_jitter_mps=6.0, noise_m=3.0, seed=42,
    )


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def prediction_config() -> PredictionConfig:
    """Default-like config: 5 min horizon, 3 entries, 30 min history."""
    return PredictionConfig(
        prediction_horizon_minutes=5.0,
        min_history_entries=3,
        max_history_age_minutes=30.0,
    )


@pytest.fixture
def engine(clock):
    """Kalman-default engine with a seeded particle filter and the fake clock."""
    return create_default_engine(
        prediction_config=PredictionConfig(),
        model=PredictionModel.KALMAN_FILTER,
        particle_config=ParticlePredictorConfig(num_particles=100, seed=7),
        clock=clock,
    )


# =============================================================================
# Helper Functions
# =============================================================================


def end_time_ms(samples: List[LocationSample]) -> int:
    """Timestamp of the newest sample."""
    return samples[-1].timestamp


def is_non_decreasing(values, tolerance: float = 1e-9) -> bool:
    """True if every value is >= its predecessor (within tolerance)."""
    return all(b >= a - tolerance for a, b in zip(values, values[1:]))

