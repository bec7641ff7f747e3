"""
Prediction accuracy tracking and statistics.

When a new sample arrives for a peer that already has a prediction, the
prediction is evaluated at the sample's time: the expected position is
interpolated along the great circle from the last known position (at the
last sample time) to the predicted position (at the target time). The
distance to the actual sample is the error.
"""

import logging
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

from mesh_predict.localization import destination_point, haversine_m, initial_bearing_deg
from mesh_predict.metrics import get_metrics
from mesh_predict.proto import LocationPrediction, LocationSample, PredictionModel

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.7
MEDIUM_CONFIDENCE = 0.4

# Model recommendation by average speed (m/s)
LINEAR_MAX_SPEED_MPS = 2.2352     # 5 mph
KALMAN_MAX_SPEED_MPS = 8.9408     # 20 mph


@dataclass(frozen=True)
class PredictionAccuracyEntry:
    """Outcome of one prediction checked against a later sample."""

    peer_id: str
    model: PredictionModel
    predicted_lat: float
    predicted_lon: float
    actual_lat: float
    actual_lon: float
    error_m: float
    confidence: float
    horizon_minutes: float
    actual_timestamp: int

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'model': self.model.name,
            'predicted_lat': self.predicted_lat,
            'predicted_lon': self.predicted_lon,
            'actual_lat': self.actual_lat,
            'actual_lon': self.actual_lon,
            'error_m': self.error_m,
            'confidence': self.confidence,
            'horizon_minutes': self.horizon_minutes,
            'actual_timestamp': self.actual_timestamp,
        }


@dataclass
class PredictionStats:
    """Aggregate view of current predictions."""

    total_predictions: int = 0
    average_confidence: float = 0.0
    model_distribution: Dict[str, int] = field(default_factory=dict)
    total_peers: int = 0
    peers_with_predictions: int = 0
    success_rate: float = 0.0
    confidence_distribution: Dict[str, int] = field(default_factory=lambda: {'High': 0, 'Medium': 0, 'Low': 0})
    average_speed_mps: float = 0.0
    average_error_m: Optional[float] = None
    recommended_model: PredictionModel = PredictionModel.LINEAR

    def to_dict(self) -> dict:
        return {
            'total_predictions': self.total_predictions,
            'average_confidence': self.average_confidence,
            'model_distribution': dict(self.model_distribution),
            'total_peers': self.total_peers,
            'peers_with_predictions': self.peers_with_predictions,
            'success_rate': self.success_rate,
            'confidence_distribution': dict(self.confidence_distribution),
            'average_speed_mps': self.average_speed_mps,
            'average_error_m': self.average_error_m,
            'recommended_model': self.recommended_model.name,
        }


def confidence_bucket(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return 'High'
    if confidence >= MEDIUM_CONFIDENCE:
        return 'Medium'
    return 'Low'


def recommend_model(average_speed_mps: float) -> PredictionModel:
    """Slow peers suit LINEAR, moderate KALMAN_FILTER, fast PARTICLE_FILTER."""
    if average_speed_mps < LINEAR_MAX_SPEED_MPS:
        return PredictionModel.LINEAR
    if average_speed_mps < KALMAN_MAX_SPEED_MPS:
        return PredictionModel.KALMAN_FILTER
    return PredictionModel.PARTICLE_FILTER


def expected_position_at(prediction: LocationPrediction, timestamp: int):
    """Position the prediction implies at timestamp (straight path, clamped to [apex, target])."""
    if prediction.last_known_lat is None or prediction.last_sample_timestamp is None:
        return prediction.latitude, prediction.longitude

    span = prediction.target_timestamp - prediction.last_sample_timestamp
    if span <= 0:
        return prediction.latitude, prediction.longitude

    fraction = min(max((timestamp - prediction.last_sample_timestamp) / span, 0.0), 1.0)
    start = (prediction.last_known_lat, prediction.last_known_lon)
    total = haversine_m(start[0], start[1], prediction.latitude, prediction.longitude)
    if total == 0.0:
        return start
    bearing = initial_bearing_deg(start[0], start[1], prediction.latitude, prediction.longitude)
    return destination_point(start[0], start[1], total * fraction, bearing)


def build_stats(predictions: Iterable[LocationPrediction], total_peers: int,
                average_error_m: Optional[float]) -> PredictionStats:
    """Aggregate statistics over current predictions."""
    predictions = list(predictions)
    stats = PredictionStats(total_peers=total_peers, average_error_m=average_error_m)
    if not predictions:
        return stats

    valid = [p for p in predictions if p.is_valid]
    stats.total_predictions = len(predictions)
    stats.peers_with_predictions = len({p.peer_id for p in valid})
    stats.success_rate = len(valid) / len(predictions)

    for p in predictions:
        name = p.prediction_model.name
        stats.model_distribution[name] = stats.model_distribution.get(name, 0) + 1
        stats.confidence_distribution[confidence_bucket(p.confidence)] += 1

    stats.average_confidence = statistics.mean(p.confidence for p in predictions)

    speeds = [p.velocity.speed for p in valid if p.velocity is not None]
    if speeds:
        stats.average_speed_mps = statistics.mean(speeds)
    stats.recommended_model = recommend_model(stats.average_speed_mps)
    return stats


class AccuracyTracker:
    """
    Bounded log of prediction errors.

    Usage:
        tracker = AccuracyTracker()
        tracker.record(previous_prediction, new_sample)
        tracker.mean_error_m(PredictionModel.KALMAN_FILTER)
    """

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self.metrics = get_metrics()
        self._lock = threading.Lock()
        self._entries: Deque[PredictionAccuracyEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, prediction: LocationPrediction, sample: LocationSample) -> Optional[PredictionAccuracyEntry]:
        """Evaluate a prediction against a newly observed sample."""
        if not prediction.is_valid or prediction.peer_id != sample.peer_id:
            return None

        lat, lon = expected_position_at(prediction, sample.timestamp)
        error = haversine_m(lat, lon, sample.latitude, sample.longitude)
        entry = PredictionAccuracyEntry(
            peer_id=sample.peer_id,
            model=prediction.prediction_model,
            predicted_lat=lat,
            predicted_lon=lon,
            actual_lat=sample.latitude,
            actual_lon=sample.longitude,
            error_m=error,
            confidence=prediction.confidence,
            horizon_minutes=prediction.horizon_s / 60.0,
            actual_timestamp=sample.timestamp,
        )

        with self._lock:
            self._entries.append(entry)
        self.metrics.record_histogram('prediction_error_m', error)
        logger.debug(f"Accuracy {sample.peer_id} ({prediction.prediction_model.name}): error={error:.1f}m")
        return entry

    def entries(self, peer_id: Optional[str] = None) -> List[PredictionAccuracyEntry]:
        with self._lock:
            return [e for e in self._entries if peer_id is None or e.peer_id == peer_id]

    def mean_error_m(self, model: Optional[PredictionModel] = None) -> Optional[float]:
        errors = [e.error_m for e in self.entries() if model is None or e.model == model]
        return statistics.mean(errors) if errors else None

    def summary(self) -> Dict[str, dict]:
        """Per-model count and mean/median error."""
        by_model: Dict[str, List[float]] = {}
        for entry in self.entries():
            by_model.setdefault(entry.model.name, []).append(entry.error_m)
        return {
            name: {
                'count': len(errors),
                'mean_error_m': statistics.mean(errors),
                'median_error_m': statistics.median(errors),
            }
            for name, errors in by_model.items()
        }

    def forget(self, peer_id: str):
        with self._lock:
            kept = [e for e in self._entries if e.peer_id != peer_id]
            self._entries = deque(kept, maxlen=self.max_entries)

    def clear(self):
        with self._lock:
            self._entries.clear()
