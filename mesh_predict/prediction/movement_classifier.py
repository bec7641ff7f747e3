"""
Movement Classifier.

Labels a peer's recent motion with a coarse MovementPattern and a noise
scale that the Kalman and particle predictors use to size process noise.

Statistics (from consecutive samples):
- speed mean and variance
- circular heading variance (moving steps only)
- straightness = direct first-last distance / path length, in [0, 1]

Decision table (first match wins):
    < 3 samples or no valid steps               -> UNKNOWN (conservative noise)
    mean < stationary_max                       -> STATIONARY
    mean < walking_max                          -> WALKING_HIKING
    mean >= highway_min, heading std and CV low -> HIGHWAY_DRIVING
    mean >= urban_min                           -> URBAN_DRIVING
    CV >= stop_and_go_cv                        -> URBAN_DRIVING
    otherwise                                   -> BOATING
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from mesh_predict.localization import circular_std_deg, haversine_m
from mesh_predict.proto import LocationSample, MovementPattern
from mesh_predict.prediction.motion import step_kinematics

logger = logging.getLogger(__name__)


def _default_base_noise() -> Dict[MovementPattern, float]:
    return {
        MovementPattern.STATIONARY: 0.5,
        MovementPattern.WALKING_HIKING: 1.5,
        MovementPattern.URBAN_DRIVING: 1.5,
        MovementPattern.HIGHWAY_DRIVING: 0.75,
        MovementPattern.BOATING: 1.25,
        MovementPattern.UNKNOWN: 3.0,
    }


@dataclass
class ClassifierConfig:
    """
    Thresholds for the movement decision table.

    Attributes:
        min_samples: Samples required to classify (below -> UNKNOWN)
        stationary_max_mps: Mean speed below which a peer is stationary
        walking_max_mps: Mean speed below which a peer is walking/hiking
        highway_min_mps: Mean speed from which highway driving is possible
        highway_max_heading_std_deg: Heading spread allowed for highway
        highway_max_speed_cv: Speed coefficient of variation allowed for highway
        urban_min_mps: Mean speed from which driving is assumed
        stop_and_go_cv: Speed CV marking stop-and-go (urban) traffic
        unknown_noise_scale: Noise scale when classification is impossible
        min_noise_scale, max_noise_scale: Clamp for the noise scale
        base_noise: Per-pattern base noise scale
    """

    min_samples: int = 3
    stationary_max_mps: float = 0.5
    walking_max_mps: float = 2.5
    highway_min_mps: float = 18.0
    highway_max_heading_std_deg: float = 15.0
    highway_max_speed_cv: float = 0.35
    urban_min_mps: float = 6.0
    stop_and_go_cv: float = 0.5
    unknown_noise_scale: float = 3.0
    min_noise_scale: float = 0.25
    max_noise_scale: float = 10.0
    base_noise: Dict[MovementPattern, float] = field(default_factory=_default_base_noise)


@dataclass(frozen=True)
class MovementProfile:
    """Classification result with the statistics it was derived from."""

    pattern: MovementPattern
    noise_scale: float
    mean_speed: float = 0.0
    speed_variance: float = 0.0
    heading_variance: float = 0.0
    straightness: float = 0.0
    sample_count: int = 0

    @property
    def heading_std(self) -> float:
        return math.sqrt(self.heading_variance)

    @property
    def speed_cv(self) -> float:
        if self.mean_speed <= 0:
            return 0.0
        return math.sqrt(self.speed_variance) / self.mean_speed

    def to_dict(self) -> dict:
        return {
            'pattern': self.pattern.name,
            'noise_scale': self.noise_scale,
            'mean_speed': self.mean_speed,
            'speed_variance': self.speed_variance,
            'heading_variance': self.heading_variance,
            'straightness': self.straightness,
            'sample_count': self.sample_count,
        }


class MovementClassifier:
    """
    Deterministic movement pattern classifier.

    Usage:
        classifier = MovementClassifier()
        pattern, noise_scale = classifier.classify(window)
        profile = classifier.analyze(window)   # full statistics
    """

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()

    def classify(self, history: Sequence[LocationSample]) -> Tuple[MovementPattern, float]:
        """Return (pattern, noise_scale) for the samples."""
        profile = self.analyze(history)
        return profile.pattern, profile.noise_scale

    def unknown(self, sample_count: int = 0) -> MovementProfile:
        return MovementProfile(
            pattern=MovementPattern.UNKNOWN,
            noise_scale=self.config.unknown_noise_scale,
            sample_count=sample_count,
        )

    def analyze(self, history: Sequence[LocationSample]) -> MovementProfile:
        """Compute movement statistics and classify."""
        cfg = self.config
        n = len(history)
        if n < cfg.min_samples:
            return self.unknown(n)

        steps = step_kinematics(history)
        if len(steps) == 0:
            return self.unknown(n)

        mean_speed = float(np.mean(steps.speeds))
        speed_variance = float(np.var(steps.speeds))
        moving = steps.moving_headings
        heading_std = circular_std_deg(moving) if moving.size >= 2 else 0.0

        path_length = float(np.sum(steps.distances))
        first, last = history[0], history[-1]
        direct = haversine_m(first.latitude, first.longitude, last.latitude, last.longitude)
        straightness = min(max(direct / path_length, 0.0), 1.0) if path_length > 0 else 0.0

        speed_cv = math.sqrt(speed_variance) / mean_speed if mean_speed > 0 else 0.0
        pattern = self._decide(mean_speed, heading_std, speed_cv)

        noise_scale = cfg.base_noise.get(pattern, cfg.unknown_noise_scale)
        if pattern != MovementPattern.STATIONARY:
            noise_scale *= (1.0 + min(heading_std, 180.0) / 90.0) * (1.0 + speed_cv) * (2.0 - straightness)
        noise_scale = min(max(noise_scale, cfg.min_noise_scale), cfg.max_noise_scale)

        logger.debug(
            f"Classified {pattern.name}: mean={mean_speed:.2f}m/s cv={speed_cv:.2f} "
            f"heading_std={heading_std:.1f}deg straightness={straightness:.2f} noise={noise_scale:.2f}"
        )

        return MovementProfile(
            pattern=pattern,
            noise_scale=noise_scale,
            mean_speed=mean_speed,
            speed_variance=speed_variance,
            heading_variance=heading_std ** 2,
            straightness=straightness,
            sample_count=n,
        )

    def _decide(self, mean_speed: float, heading_std: float, speed_cv: float) -> MovementPattern:
        cfg = self.config
        if mean_speed < cfg.stationary_max_mps:
            return MovementPattern.STATIONARY
        if mean_speed < cfg.walking_max_mps:
            return MovementPattern.WALKING_HIKING
        if (mean_speed >= cfg.highway_min_mps
                and heading_std < cfg.highway_max_heading_std_deg
                and speed_cv < cfg.highway_max_speed_cv):
            return MovementPattern.HIGHWAY_DRIVING
        if mean_speed >= cfg.urban_min_mps:
            return MovementPattern.URBAN_DRIVING
        if speed_cv >= cfg.stop_and_go_cv:
            return MovementPattern.URBAN_DRIVING
        return MovementPattern.BOATING
