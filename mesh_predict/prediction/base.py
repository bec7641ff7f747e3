"""
Predictor capability and shared window preparation.

Every motion model satisfies PeerLocationPredictor; the selector dispatches
on PredictionModel. Models are independent implementations, not subclasses.
"""

import logging
from typing import Callable, List, Optional, Protocol, Sequence, Union

from mesh_predict.errors import InsufficientHistoryError
from mesh_predict.proto import (
    ConfidenceCone,
    LocationPrediction,
    LocationSample,
    PeerLocationHistory,
    PredictionConfig,
    PredictionModel,
    create_zero_confidence,
)
from mesh_predict.prediction.motion import MAX_PLAUSIBLE_SPEED_MPS, filter_gps_jumps

logger = logging.getLogger(__name__)

HistoryLike = Union[PeerLocationHistory, Sequence[LocationSample]]
Clock = Callable[[], int]


class PeerLocationPredictor(Protocol):
    """Capability shared by all motion models."""

    model: PredictionModel

    def predict(self, history: HistoryLike, config: PredictionConfig,
                target_timestamp: Optional[int] = None,
                now_ms: Optional[int] = None) -> LocationPrediction:
        ...

    def confidence_cone(self, prediction: LocationPrediction, history: HistoryLike,
                        config: PredictionConfig) -> ConfidenceCone:
        ...

    def forget(self, peer_id: str) -> bool:
        ...


def peer_id_of(history: HistoryLike) -> str:
    peer_id = getattr(history, 'peer_id', '')
    if not peer_id and len(history) > 0:
        peer_id = _samples(history)[-1].peer_id
    return peer_id


def _samples(history: HistoryLike) -> Sequence[LocationSample]:
    if isinstance(history, PeerLocationHistory):
        return history.entries
    return history


def recent_samples(history: HistoryLike, max_age_minutes: float, now_ms: int) -> Sequence[LocationSample]:
    """Samples within max_age_minutes of now_ms."""
    if isinstance(history, PeerLocationHistory):
        return history.window(max_age_minutes, now_ms)
    cutoff = now_ms - int(max_age_minutes * 60_000)
    return [s for s in history if s.timestamp >= cutoff]


def last_known(history: HistoryLike) -> Optional[LocationSample]:
    samples = _samples(history)
    return samples[-1] if len(samples) else None


def prediction_window(history: HistoryLike, config: PredictionConfig, now_ms: int,
                      max_speed_mps: float = MAX_PLAUSIBLE_SPEED_MPS) -> List[LocationSample]:
    """
    Recent, jump-filtered samples for a prediction.

    Raises:
        InsufficientHistoryError: fewer than config.min_history_entries remain
    """
    recent = recent_samples(history, config.max_history_age_minutes, now_ms)
    window = filter_gps_jumps(recent, max_speed_mps)
    if len(window) < config.min_history_entries:
        raise InsufficientHistoryError(peer_id_of(history), len(window), config.min_history_entries)
    return window


def zero_confidence_prediction(history: HistoryLike, model: PredictionModel, config: PredictionConfig,
                               now_ms: int, target_timestamp: Optional[int] = None) -> LocationPrediction:
    """Zero-confidence prediction anchored at the last known position (if any)."""
    last = last_known(history)
    if target_timestamp is None:
        base = last.timestamp if last is not None else now_ms
        target_timestamp = base + config.horizon_ms
    return create_zero_confidence(
        peer_id=peer_id_of(history),
        model=model,
        now_ms=now_ms,
        target_timestamp=target_timestamp,
        last_known=(last.latitude, last.longitude) if last is not None else None,
        last_sample_timestamp=last.timestamp if last is not None else None,
    )
