"""
Prediction Module: movement classification, motion models, cones.

Key classes:
- MovementClassifier: pattern + noise scale from recent motion
- LinearPredictor: great-circle extrapolation (and fallback)
- KalmanPredictor: per-peer constant-velocity Kalman filter
- ParticlePredictor: per-peer resampling particle filter
- ConfidenceConeGenerator: model-specific uncertainty envelopes
- PredictorSelector: model -> predictor dispatch
"""

from .base import PeerLocationPredictor, prediction_window
from .movement_classifier import ClassifierConfig, MovementClassifier, MovementProfile
from .state_arena import PeerStateArena
from .cone_generator import ConeConfig, ConfidenceConeGenerator
from .linear_predictor import LinearPredictor, LinearPredictorConfig
from .kalman_predictor import KalmanPredictor, KalmanPredictorConfig, KalmanTrack
from .particle_predictor import (
    NoiseProfile,
    ParticleCloud,
    ParticlePredictor,
    ParticlePredictorConfig,
    normalize_log_weights,
    systematic_resample,
)
from .predictor_selector import PredictorSelector

__all__ = [
    'ClassifierConfig',
    'ConeConfig',
    'ConfidenceConeGenerator',
    'KalmanPredictor',
    'KalmanPredictorConfig',
    'KalmanTrack',
    'LinearPredictor',
    'LinearPredictorConfig',
    'MovementClassifier',
    'MovementProfile',
    'NoiseProfile',
    'ParticleCloud',
    'ParticlePredictor',
    'ParticlePredictorConfig',
    'PeerLocationPredictor',
    'PeerStateArena',
    'PredictorSelector',
    'normalize_log_weights',
    'prediction_window',
    'systematic_resample',
]
