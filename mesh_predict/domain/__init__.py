"""
Domain Module: engine orchestration and prediction accuracy.
"""

from .accuracy_tracker import (
    AccuracyTracker,
    PredictionAccuracyEntry,
    PredictionStats,
    build_stats,
    recommend_model,
)
from .prediction_engine import (
    BatchRecomputeJob,
    EngineConfig,
    PeerPrediction,
    PredictionEngine,
    create_default_engine,
)

__all__ = [
    'AccuracyTracker',
    'BatchRecomputeJob',
    'EngineConfig',
    'PeerPrediction',
    'PredictionAccuracyEntry',
    'PredictionEngine',
    'PredictionStats',
    'build_stats',
    'create_default_engine',
    'recommend_model',
]
