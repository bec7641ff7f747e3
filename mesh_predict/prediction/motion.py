"""
Motion helpers shared by the classifier and all predictors.

- Per-step kinematics (speed, heading) between consecutive samples
- GPS jump filtering (implausible implied speeds)
- Window velocity: device-reported ground speed/track when present, else
  first-to-last great-circle displacement over elapsed time
- Heading/speed uncertainty and a consistency score
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from mesh_predict.localization import (
    circular_std_deg,
    haversine_m,
    initial_bearing_deg,
    normalize_angle_360,
)
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import LocationSample, VelocityVector

logger = logging.getLogger(__name__)

MAX_PLAUSIBLE_SPEED_MPS = 100.0

# Headings of steps slower than this are dominated by position jitter
MIN_HEADING_SPEED_MPS = 0.5

DEFAULT_HEADING_STD_DEG = 15.0
DEFAULT_SPEED_CV = 0.2
MIN_HEADING_STD_DEG = 1.0
MAX_HEADING_STD_DEG = 45.0
MIN_SPEED_CV = 0.05
MAX_SPEED_CV = 0.5

VELOCITY_SOURCE_DEVICE = "device_velocity"
VELOCITY_SOURCE_POSITION = "position_calculated"
VELOCITY_SOURCE_INSUFFICIENT = "insufficient_data"

SOURCE_FACTORS = {
    VELOCITY_SOURCE_DEVICE: 1.0,
    VELOCITY_SOURCE_POSITION: 0.8,
    VELOCITY_SOURCE_INSUFFICIENT: 0.6,
}

DEVICE_VELOCITY_BASE_CONFIDENCE = 0.8

# (accuracy below, m) -> confidence
ACCURACY_CONFIDENCE_STEPS = ((1.0, 0.95), (3.0, 0.90), (10.0, 0.85), (30.0, 0.80))


@dataclass(frozen=True)
class StepKinematics:
    """Speeds/headings between consecutive samples (steps with dt <= 0 skipped)."""

    speeds: np.ndarray
    headings: np.ndarray
    dts: np.ndarray
    distances: np.ndarray

    def __len__(self) -> int:
        return int(self.speeds.size)

    @property
    def moving_headings(self) -> np.ndarray:
        """Headings of steps fast enough for the heading to be meaningful."""
        return self.headings[self.speeds >= MIN_HEADING_SPEED_MPS]


def step_kinematics(samples: Sequence[LocationSample]) -> StepKinematics:
    """Compute per-step speed (m/s) and heading (deg) for consecutive samples."""
    speeds, headings, dts, distances = [], [], [], []
    for a, b in zip(samples, samples[1:]):
        dt = (b.best_timestamp - a.best_timestamp) / 1000.0
        if dt <= 0:
            continue
        d = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
        speeds.append(d / dt)
        headings.append(initial_bearing_deg(a.latitude, a.longitude, b.latitude, b.longitude))
        dts.append(dt)
        distances.append(d)

    return StepKinematics(
        speeds=np.asarray(speeds, dtype=float),
        headings=np.asarray(headings, dtype=float),
        dts=np.asarray(dts, dtype=float),
        distances=np.asarray(distances, dtype=float),
    )


def _plausible_step(a: LocationSample, b: LocationSample, max_speed_mps: float) -> bool:
    """True if moving from a to b needs no more than max_speed_mps."""
    d = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
    dt = (b.best_timestamp - a.best_timestamp) / 1000.0
    if dt <= 0:
        return d == 0
    return d / dt <= max_speed_mps


def filter_gps_jumps(samples: Sequence[LocationSample],
                     max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS) -> List[LocationSample]:
    """
    Drop samples that imply an implausible jump.

    The window is split into runs of mutually plausible consecutive samples.
    The longest run (the newest on ties) is trusted; samples outside it are
    kept only if reachable from the trusted samples at a plausible speed.
    A single bad fix, leading or mid-window, therefore costs only itself.
    Same-timestamp duplicates at a different position count as jumps.
    """
    if not samples:
        return []

    runs = [[samples[0]]]
    for prev, sample in zip(samples, samples[1:]):
        if _plausible_step(prev, sample, max_speed_mps):
            runs[-1].append(sample)
        else:
            runs.append([sample])

    anchor = max(range(len(runs)), key=lambda i: (len(runs[i]), i))
    kept = list(runs[anchor])

    for run in runs[anchor + 1:]:
        for sample in run:
            if _plausible_step(kept[-1], sample, max_speed_mps):
                kept.append(sample)

    earlier: List[LocationSample] = []
    for run in reversed(runs[:anchor]):
        for sample in reversed(run):
            head = earlier[-1] if earlier else kept[0]
            if _plausible_step(sample, head, max_speed_mps):
                earlier.append(sample)
    kept = earlier[::-1] + kept

    dropped = len(samples) - len(kept)
    if dropped:
        get_metrics().increment('gps_jumps_filtered', dropped)
        logger.debug(f"Filtered {dropped} GPS jumps above {max_speed_mps} m/s ({len(runs)} runs)")
    return kept


def calculate_uncertainties(samples: Sequence[LocationSample]) -> Tuple[float, float]:
    """
    Heading and speed uncertainty of a window.

    Returns:
        (heading_std_deg clamped to [1, 45], speed coefficient of variation
        clamped to [0.05, 0.5]); defaults (15, 0.2) below 3 samples
    """
    if len(samples) < 3:
        return DEFAULT_HEADING_STD_DEG, DEFAULT_SPEED_CV

    steps = step_kinematics(samples)
    if len(steps) < 2:
        return DEFAULT_HEADING_STD_DEG, DEFAULT_SPEED_CV

    headings = steps.moving_headings
    heading_std = circular_std_deg(headings) if headings.size >= 2 else DEFAULT_HEADING_STD_DEG

    mean_speed = float(np.mean(steps.speeds))
    speed_cv = float(np.std(steps.speeds)) / mean_speed if mean_speed > 0 else DEFAULT_SPEED_CV

    return (
        min(max(heading_std, MIN_HEADING_STD_DEG), MAX_HEADING_STD_DEG),
        min(max(speed_cv, MIN_SPEED_CV), MAX_SPEED_CV),
    )


@dataclass(frozen=True)
class VelocityEstimate:
    """
    Window velocity with where it came from.

    Attributes:
        velocity: Speed/heading estimate
        source: VELOCITY_SOURCE_DEVICE, VELOCITY_SOURCE_POSITION or
            VELOCITY_SOURCE_INSUFFICIENT
        confidence: Trust in the velocity itself, [0, 1]
    """

    velocity: VelocityVector
    source: str
    confidence: float

    @property
    def from_device(self) -> bool:
        return self.source == VELOCITY_SOURCE_DEVICE

    @property
    def source_factor(self) -> float:
        return SOURCE_FACTORS[self.source]


def accuracy_confidence(accuracy_m: float) -> float:
    """Trust in a fix given its reported horizontal accuracy."""
    for limit, confidence in ACCURACY_CONFIDENCE_STEPS:
        if accuracy_m < limit:
            return confidence
    return 0.70


def device_velocity_confidence(sample: LocationSample) -> float:
    """Trust in device-reported velocity: 0.8, blended with fix accuracy when known."""
    confidence = DEVICE_VELOCITY_BASE_CONFIDENCE
    if sample.accuracy_m is not None:
        confidence = confidence * 0.7 + accuracy_confidence(sample.accuracy_m) * 0.3
    return confidence


def position_velocity(samples: Sequence[LocationSample],
                      max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS) -> VelocityVector:
    """
    Average velocity from positions: first-to-last displacement / elapsed time.

    Speed is capped at max_speed_mps. A window shorter than 2 samples or
    spanning no time has zero velocity.
    """
    heading_std, _ = calculate_uncertainties(samples)
    if len(samples) < 2:
        return VelocityVector(0.0, 0.0, heading_std)

    first, last = samples[0], samples[-1]
    dt = (last.best_timestamp - first.best_timestamp) / 1000.0
    if dt <= 0:
        return VelocityVector(0.0, 0.0, heading_std)

    distance = haversine_m(first.latitude, first.longitude, last.latitude, last.longitude)
    speed = min(distance / dt, max_speed_mps)
    heading = initial_bearing_deg(first.latitude, first.longitude, last.latitude, last.longitude)
    return VelocityVector(speed=speed, heading=heading, heading_uncertainty=heading_std)


def estimate_velocity(samples: Sequence[LocationSample],
                      max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS) -> VelocityEstimate:
    """
    Best available window velocity.

    The newest device-reported ground speed/track in the window wins; without
    one, velocity comes from position differences. Below 2 samples there is
    no estimate (zero velocity, confidence 0).
    """
    heading_std, _ = calculate_uncertainties(samples)
    if len(samples) < 2:
        return VelocityEstimate(VelocityVector(0.0, 0.0, heading_std), VELOCITY_SOURCE_INSUFFICIENT, 0.0)

    for sample in reversed(samples):
        if sample.has_velocity:
            speed, track = sample.device_velocity
            if speed > max_speed_mps:
                logger.warning(f"Device speed {speed:.1f}m/s for {sample.peer_id} capped at {max_speed_mps}m/s")
                speed = max_speed_mps
            return VelocityEstimate(
                VelocityVector(speed=speed, heading=track, heading_uncertainty=heading_std),
                VELOCITY_SOURCE_DEVICE,
                device_velocity_confidence(sample),
            )

    confidence = consistency_score(samples) if len(samples) >= 3 else 0.6
    return VelocityEstimate(position_velocity(samples, max_speed_mps), VELOCITY_SOURCE_POSITION, confidence)


def window_velocity(samples: Sequence[LocationSample],
                    max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS) -> VelocityVector:
    """Best available window velocity (device-reported first, else from positions)."""
    return estimate_velocity(samples, max_speed_mps).velocity


def source_weighted_confidence(base: float, estimate: VelocityEstimate) -> float:
    """Blend a consistency-based confidence with the velocity source and its trust."""
    score = 0.6 * base + 0.2 * estimate.source_factor + 0.2 * estimate.confidence
    return min(max(score, 0.0), 1.0)


def consistency_score(samples: Sequence[LocationSample]) -> float:
    """
    Score in [0, 1] for how predictable recent motion is.

    0.4 * speed consistency + 0.4 * heading consistency + 0.2 * sample count
    factor (saturating at 10 samples).
    """
    heading_std, speed_cv = calculate_uncertainties(samples)
    speed_consistency = 1.0 - min(speed_cv, 1.0)
    heading_consistency = 1.0 - min(heading_std / 90.0, 1.0)
    count_factor = min(len(samples) / 10.0, 1.0)
    score = 0.4 * speed_consistency + 0.4 * heading_consistency + 0.2 * count_factor
    return min(max(score, 0.0), 1.0)


def heading_from_velocity(v_east: float, v_north: float) -> float:
    """Course over ground (deg, [0, 360)) from ENU velocity."""
    return normalize_angle_360(math.degrees(math.atan2(v_east, v_north)))
