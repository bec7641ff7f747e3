"""
Linear Predictor.

Extrapolates the last known position along the window velocity: the
device-reported ground speed and track when a sample carries them, else the
great-circle bearing and distance from first to last sample over elapsed time.
Cheapest model, and the fallback for the Kalman and particle models when
their state cannot be used.

Confidence = base * exp(-elapsed_s * noise_scale / tau)
base       = 0.6 * consistency(window) + 0.2 * source factor + 0.2 * velocity trust

The source factor is 1.0 for device-reported velocity and 0.8 for velocity
derived from positions. elapsed_s runs from the newest sample to the target,
so confidence decays monotonically with elapsed time and with the classifier noise scale.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from mesh_predict.errors import InsufficientHistoryError
from mesh_predict.history.history_store import wall_clock_ms
from mesh_predict.localization import destination_point
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import (
    ConfidenceCone,
    LocationPrediction,
    PredictionConfig,
    PredictionModel,
)
from mesh_predict.prediction.base import (
    Clock,
    HistoryLike,
    prediction_window,
    zero_confidence_prediction,
)
from mesh_predict.prediction.cone_generator import ConfidenceConeGenerator
from mesh_predict.prediction.motion import (
    MAX_PLAUSIBLE_SPEED_MPS,
    consistency_score,
    estimate_velocity,
    source_weighted_confidence,
)
from mesh_predict.prediction.movement_classifier import MovementClassifier

logger = logging.getLogger(__name__)


@dataclass
class LinearPredictorConfig:
    """
    Configuration for the linear predictor.

    Attributes:
        max_speed_mps: Plausible speed cap (also the GPS jump threshold)
        max_distance_m: Cap on extrapolated distance
        confidence_tau_s: Time constant of confidence decay at noise scale 1
        floor_fraction: Share of linear confidence granted to other models as a floor
    """

    max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS
    max_distance_m: float = 50_000.0
    confidence_tau_s: float = 1800.0
    floor_fraction: float = 0.5


def decayed_confidence(base: float, elapsed_s: float, noise_scale: float, tau_s: float) -> float:
    """Base confidence decayed by elapsed time and noise scale, clamped to [0, 1]."""
    decay = math.exp(-max(elapsed_s, 0.0) * max(noise_scale, 0.0) / tau_s)
    return min(max(base * decay, 0.0), 1.0)


class LinearPredictor:
    """
    Constant-velocity great-circle extrapolation.

    Stateless across calls: the per-peer arena is not needed.
    """

    model = PredictionModel.LINEAR

    def __init__(self, config: Optional[LinearPredictorConfig] = None,
                 classifier: Optional[MovementClassifier] = None,
                 cone_generator: Optional[ConfidenceConeGenerator] = None,
                 clock: Clock = wall_clock_ms):
        self.config = config or LinearPredictorConfig()
        self.classifier = classifier or MovementClassifier()
        self.cone_generator = cone_generator or ConfidenceConeGenerator()
        self.clock = clock
        self.metrics = get_metrics()

    def predict(self, history: HistoryLike, config: PredictionConfig,
                target_timestamp: Optional[int] = None,
                now_ms: Optional[int] = None) -> LocationPrediction:
        """
        Predict a peer's position at target_timestamp.

        Args:
            history: Peer history (PeerLocationHistory or chronological samples)
            config: Prediction configuration
            target_timestamp: Target time (ms); defaults to newest sample + horizon
            now_ms: Current time (ms); defaults to the predictor clock

        Returns:
            LocationPrediction (confidence 0 when history is insufficient)
        """
        if now_ms is None:
            now_ms = self.clock()

        try:
            window = prediction_window(history, config, now_ms, self.config.max_speed_mps)
        except InsufficientHistoryError as e:
            logger.debug(f"Linear: {e}")
            self.metrics.increment('zero_confidence_predictions')
            return zero_confidence_prediction(history, self.model, config, now_ms, target_timestamp)

        last = window[-1]
        if target_timestamp is None:
            target_timestamp = last.timestamp + config.horizon_ms
        elapsed_s = max(0.0, (target_timestamp - last.timestamp) / 1000.0)

        estimate = estimate_velocity(window, self.config.max_speed_mps)
        velocity = estimate.velocity
        distance = min(velocity.speed * elapsed_s, self.config.max_distance_m)
        lat, lon = destination_point(last.latitude, last.longitude, distance, velocity.heading)

        profile = self.classifier.analyze(window)
        base = source_weighted_confidence(consistency_score(window), estimate)
        confidence = decayed_confidence(
            base, elapsed_s, profile.noise_scale, self.config.confidence_tau_s
        )

        self.metrics.increment('linear_predictions')
        logger.debug(
            f"Linear {last.peer_id}: speed={velocity.speed:.2f}m/s heading={velocity.heading:.1f} "
            f"source={estimate.source} distance={distance:.1f}m confidence={confidence:.3f}"
        )

        return LocationPrediction(
            peer_id=last.peer_id,
            latitude=lat,
            longitude=lon,
            predicted_timestamp=now_ms,
            target_timestamp=target_timestamp,
            confidence=confidence,
            prediction_model=self.model,
            velocity=velocity,
            movement_pattern=profile.pattern,
            noise_scale=profile.noise_scale,
            last_known_lat=last.latitude,
            last_known_lon=last.longitude,
            last_sample_timestamp=last.timestamp,
        )

    def confidence_floor(self, prediction: LocationPrediction) -> float:
        """Confidence floor granted to other models given this linear prediction."""
        return prediction.confidence * self.config.floor_fraction

    def confidence_cone(self, prediction: LocationPrediction, history: HistoryLike,
                        config: PredictionConfig) -> ConfidenceCone:
        return self.cone_generator.generate(prediction, history, config)

    def forget(self, peer_id: str) -> bool:
        return False
