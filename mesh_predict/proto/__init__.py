"""
Data model for peer location prediction.

Defines the input sample, per-peer history, prediction outputs and
configuration. All records serialize field-for-field via to_dict/from_dict.
"""

from .location_sample import LocationSample
from .peer_history import HistoryWindow, PeerLocationHistory
from .prediction import (
    KalmanState,
    LocationPrediction,
    MovementPattern,
    Particle,
    PredictionConfig,
    PredictionModel,
    VelocityVector,
    create_zero_confidence,
)
from .confidence_cone import ConfidenceCone

__all__ = [
    'ConfidenceCone',
    'HistoryWindow',
    'KalmanState',
    'LocationPrediction',
    'LocationSample',
    'MovementPattern',
    'Particle',
    'PeerLocationHistory',
    'PredictionConfig',
    'PredictionModel',
    'VelocityVector',
    'create_zero_confidence',
]
